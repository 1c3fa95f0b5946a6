"""Data access repositories with constructor-injected async sessions."""

import datetime
from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comms_shared.db.models import NotificationDelivery
from comms_shared.enums import DeliveryStatus


class DeliveryRecordRepository:
    """Data access for the notification_deliveries table.

    Transaction boundaries belong to the caller; methods only flush.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, delivery: NotificationDelivery) -> NotificationDelivery:
        """Add a new delivery row and flush to populate defaults."""
        self._session.add(delivery)
        await self._session.flush()
        return delivery

    async def get_by_id(
        self, delivery_id: UUID, *, for_update: bool = False
    ) -> NotificationDelivery | None:
        """Fetch a delivery by primary key, optionally row-locking it."""
        stmt = select(NotificationDelivery).where(NotificationDelivery.id == delivery_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.scalars(stmt)
        return result.first()

    async def get_by_ids(self, delivery_ids: Sequence[UUID]) -> list[NotificationDelivery]:
        """Fetch deliveries for a set of ids (unordered)."""
        if not delivery_ids:
            return []
        stmt = select(NotificationDelivery).where(
            NotificationDelivery.id.in_(list(delivery_ids))
        )
        result = await self._session.scalars(stmt)
        return list(result.all())

    async def get_by_provider_message_id(
        self, provider_message_id: str, *, for_update: bool = False
    ) -> NotificationDelivery | None:
        """Look up the delivery a provider callback refers to."""
        stmt = select(NotificationDelivery).where(
            NotificationDelivery.provider_message_id == provider_message_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.scalars(stmt)
        return result.first()

    async def update_fields(
        self,
        delivery: NotificationDelivery,
        status: str,
        *,
        increment_retry: bool = False,
        **fields: Any,
    ) -> NotificationDelivery:
        """Apply a status change and related column values to a loaded row."""
        delivery.status = status
        for name, value in fields.items():
            setattr(delivery, name, value)
        if increment_retry:
            delivery.retry_count += 1
        await self._session.flush()
        return delivery

    async def get_due_retries(
        self, now: datetime.datetime, limit: int = 100
    ) -> list[NotificationDelivery]:
        """Fetch deliveries due for a re-attempt.

        Selects where status is PENDING, next_retry_at <= now and
        retry_count < max_retries. Ordered oldest-first, capped by limit.
        """
        stmt = (
            select(NotificationDelivery)
            .where(
                NotificationDelivery.status == DeliveryStatus.PENDING,
                NotificationDelivery.next_retry_at <= now,
                NotificationDelivery.retry_count < NotificationDelivery.max_retries,
            )
            .order_by(NotificationDelivery.next_retry_at.asc())
            .limit(limit)
        )
        result = await self._session.scalars(stmt)
        return list(result.all())
