"""Delivery record store: persisted, per-record serialized state.

Two implementations share one contract and one set of transition rules:
``SqlDeliveryRecordStore`` (SQLAlchemy async sessions) and
``InMemoryDeliveryRecordStore`` (tests and local runs).
"""

import asyncio
import datetime
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Hashable, Sequence
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comms_shared.db.models import NotificationDelivery, utcnow
from comms_shared.db.repositories import DeliveryRecordRepository
from comms_shared.enums import DeliveryStatus, can_transition, is_terminal
from comms_shared.errors import (
    InvalidTransitionError,
    RecordNotFoundError,
    TerminalStatusError,
)
from comms_shared.schemas import DeliveryRecord, NotificationRequest

Clock = Callable[[], datetime.datetime]

UPDATABLE_FIELDS = frozenset(
    {
        "provider_message_id",
        "provider_response",
        "cost",
        "currency",
        "failure_reason",
        "next_retry_at",
        "sent_at",
        "delivered_at",
    }
)


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def check_transition(record_id: UUID, current: str, new: str) -> None:
    """Raise if a record in *current* status may not move to *new*."""
    if is_terminal(current):
        raise TerminalStatusError(record_id, current)
    if not can_transition(current, new):
        raise InvalidTransitionError(record_id, current, new)


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


def _is_due(record: Any, now: datetime.datetime | None) -> bool:
    """Pending, scheduled for a re-attempt and (when *now* is given) due."""
    if record.status != DeliveryStatus.PENDING or record.next_retry_at is None:
        return False
    if record.retry_count >= record.max_retries:
        return False
    return now is None or record.next_retry_at <= now


class DeliveryRecordStore(ABC):
    """Persistence contract for delivery records.

    Records are never deleted.  Updates to one record are serialized, and
    every status change is checked against the delivery state machine:
    leaving a terminal status raises ``TerminalStatusError``, any other
    disallowed move raises ``InvalidTransitionError``, unknown ids raise
    ``RecordNotFoundError``.
    """

    @abstractmethod
    async def create(
        self,
        request: NotificationRequest,
        *,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        failure_reason: str | None = None,
        max_retries: int | None = None,
        currency: str = "USD",
    ) -> DeliveryRecord:
        """Persist a new record with ``retry_count=0`` and zero cost."""

    @abstractmethod
    async def update_status(
        self,
        record_id: UUID,
        status: DeliveryStatus,
        *,
        increment_retry: bool = False,
        **fields: Any,
    ) -> DeliveryRecord:
        """Move a record to *status* and set the given columns atomically."""

    @abstractmethod
    async def get(self, record_id: UUID) -> DeliveryRecord | None: ...

    @abstractmethod
    async def list_by_ids(self, record_ids: Sequence[UUID]) -> list[DeliveryRecord]:
        """Return records in the order of *record_ids*, skipping unknown ids."""

    @abstractmethod
    async def find_by_provider_message_id(
        self, provider_message_id: str
    ) -> DeliveryRecord | None: ...

    @abstractmethod
    async def claim_retry(
        self, record_id: UUID, now: datetime.datetime | None = None
    ) -> DeliveryRecord | None:
        """Take a scheduled re-attempt so no other worker runs it.

        Clears ``next_retry_at`` on a pending record whose retry is due at
        *now* (any scheduled retry when *now* is None) and returns the
        claimed record.  Returns None when there is nothing to claim.
        """

    @abstractmethod
    async def list_due_retries(
        self, now: datetime.datetime, limit: int = 100
    ) -> list[DeliveryRecord]:
        """Pending records whose ``next_retry_at`` has passed, oldest first."""

    @abstractmethod
    async def archive(self, record_id: UUID) -> DeliveryRecord:
        """Stamp ``archived_at`` on a terminal record; status is unchanged."""


class SqlDeliveryRecordStore(DeliveryRecordStore):
    """Store backed by the ``notification_deliveries`` table.

    Each operation runs in its own transaction.  Rows are loaded with
    ``SELECT ... FOR UPDATE`` under an in-process per-id lock, so writers
    in this process queue up and writers in other processes wait on the
    row lock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._locks = KeyedLock()

    @asynccontextmanager
    async def _repository(self) -> AsyncIterator[DeliveryRecordRepository]:
        async with self._session_factory() as session, session.begin():
            yield DeliveryRecordRepository(session)

    async def create(
        self,
        request: NotificationRequest,
        *,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        failure_reason: str | None = None,
        max_retries: int | None = None,
        currency: str = "USD",
    ) -> DeliveryRecord:
        now = self._clock()
        delivery = NotificationDelivery(
            id=uuid.uuid4(),
            channel=request.channel,
            recipient_address=request.recipient_address,
            subject=request.subject,
            body=request.body,
            template_id=request.template_id,
            request_metadata=dict(request.metadata),
            priority=request.priority,
            batch_id=request.batch_id,
            status=status,
            cost=Decimal("0"),
            currency=currency,
            failure_reason=failure_reason,
            retry_count=0,
            max_retries=max_retries or request.max_retries,
            created_at=now,
            updated_at=now,
        )
        async with self._repository() as repo:
            await repo.create(delivery)
            return DeliveryRecord.model_validate(delivery)

    async def update_status(
        self,
        record_id: UUID,
        status: DeliveryStatus,
        *,
        increment_retry: bool = False,
        **fields: Any,
    ) -> DeliveryRecord:
        _check_fields(fields)
        async with self._locks.hold(record_id), self._repository() as repo:
            delivery = await repo.get_by_id(record_id, for_update=True)
            if delivery is None:
                raise RecordNotFoundError(record_id)
            check_transition(record_id, delivery.status, status)
            await repo.update_fields(
                delivery,
                status,
                increment_retry=increment_retry,
                updated_at=self._clock(),
                **fields,
            )
            return DeliveryRecord.model_validate(delivery)

    async def get(self, record_id: UUID) -> DeliveryRecord | None:
        async with self._repository() as repo:
            delivery = await repo.get_by_id(record_id)
            return DeliveryRecord.model_validate(delivery) if delivery else None

    async def list_by_ids(self, record_ids: Sequence[UUID]) -> list[DeliveryRecord]:
        async with self._repository() as repo:
            rows = {d.id: d for d in await repo.get_by_ids(list(set(record_ids)))}
            return [
                DeliveryRecord.model_validate(rows[record_id])
                for record_id in record_ids
                if record_id in rows
            ]

    async def find_by_provider_message_id(
        self, provider_message_id: str
    ) -> DeliveryRecord | None:
        async with self._repository() as repo:
            delivery = await repo.get_by_provider_message_id(provider_message_id)
            return DeliveryRecord.model_validate(delivery) if delivery else None

    async def claim_retry(
        self, record_id: UUID, now: datetime.datetime | None = None
    ) -> DeliveryRecord | None:
        async with self._locks.hold(record_id), self._repository() as repo:
            delivery = await repo.get_by_id(record_id, for_update=True)
            if delivery is None or not _is_due(delivery, now):
                return None
            await repo.update_fields(
                delivery,
                delivery.status,
                next_retry_at=None,
                updated_at=self._clock(),
            )
            return DeliveryRecord.model_validate(delivery)

    async def list_due_retries(
        self, now: datetime.datetime, limit: int = 100
    ) -> list[DeliveryRecord]:
        async with self._repository() as repo:
            rows = await repo.get_due_retries(now, limit=limit)
            return [DeliveryRecord.model_validate(d) for d in rows]

    async def archive(self, record_id: UUID) -> DeliveryRecord:
        async with self._locks.hold(record_id), self._repository() as repo:
            delivery = await repo.get_by_id(record_id, for_update=True)
            if delivery is None:
                raise RecordNotFoundError(record_id)
            if not is_terminal(delivery.status):
                raise InvalidTransitionError(record_id, delivery.status, "archived")
            if delivery.archived_at is None:
                now = self._clock()
                await repo.update_fields(
                    delivery, delivery.status, archived_at=now, updated_at=now
                )
            return DeliveryRecord.model_validate(delivery)


class InMemoryDeliveryRecordStore(DeliveryRecordStore):
    """Dict-backed store with the same locking and transition rules."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._records: dict[UUID, DeliveryRecord] = {}
        self._clock = clock
        self._locks = KeyedLock()

    def __len__(self) -> int:
        return len(self._records)

    async def create(
        self,
        request: NotificationRequest,
        *,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        failure_reason: str | None = None,
        max_retries: int | None = None,
        currency: str = "USD",
    ) -> DeliveryRecord:
        now = self._clock()
        record = DeliveryRecord(
            id=uuid.uuid4(),
            channel=request.channel,
            recipient_address=request.recipient_address,
            subject=request.subject,
            body=request.body,
            template_id=request.template_id,
            request_metadata=dict(request.metadata),
            priority=request.priority,
            batch_id=request.batch_id,
            status=status,
            currency=currency,
            failure_reason=failure_reason,
            max_retries=max_retries or request.max_retries,
            created_at=now,
            updated_at=now,
        )
        self._records[record.id] = record
        return record

    def _require(self, record_id: UUID) -> DeliveryRecord:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def _replace(self, record: DeliveryRecord, **changes: Any) -> DeliveryRecord:
        updated = record.model_copy(update={**changes, "updated_at": self._clock()})
        self._records[record.id] = updated
        return updated

    async def update_status(
        self,
        record_id: UUID,
        status: DeliveryStatus,
        *,
        increment_retry: bool = False,
        **fields: Any,
    ) -> DeliveryRecord:
        _check_fields(fields)
        async with self._locks.hold(record_id):
            record = self._require(record_id)
            check_transition(record_id, record.status, status)
            if increment_retry:
                fields["retry_count"] = record.retry_count + 1
            if fields.get("cost") is not None:
                fields["cost"] = Decimal(fields["cost"])
            return self._replace(record, status=DeliveryStatus(status), **fields)

    async def get(self, record_id: UUID) -> DeliveryRecord | None:
        return self._records.get(record_id)

    async def list_by_ids(self, record_ids: Sequence[UUID]) -> list[DeliveryRecord]:
        return [self._records[i] for i in record_ids if i in self._records]

    async def find_by_provider_message_id(
        self, provider_message_id: str
    ) -> DeliveryRecord | None:
        for record in self._records.values():
            if record.provider_message_id == provider_message_id:
                return record
        return None

    async def claim_retry(
        self, record_id: UUID, now: datetime.datetime | None = None
    ) -> DeliveryRecord | None:
        async with self._locks.hold(record_id):
            record = self._records.get(record_id)
            if record is None or not _is_due(record, now):
                return None
            return self._replace(record, next_retry_at=None)

    async def list_due_retries(
        self, now: datetime.datetime, limit: int = 100
    ) -> list[DeliveryRecord]:
        due = [r for r in self._records.values() if _is_due(r, now)]
        due.sort(key=lambda r: r.next_retry_at)
        return due[:limit]

    async def archive(self, record_id: UUID) -> DeliveryRecord:
        async with self._locks.hold(record_id):
            record = self._require(record_id)
            if not record.is_terminal:
                raise InvalidTransitionError(record_id, record.status, "archived")
            if record.archived_at is not None:
                return record
            return self._replace(record, archived_at=self._clock())
