"""SQLAlchemy ORM models for notification delivery tracking."""

import datetime
import uuid
from decimal import Decimal

from sqlalchemy import Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from comms_shared.db.base import Base
from comms_shared.db.types import JSONBCompatible, UTCDateTime
from comms_shared.enums import DeliveryStatus, Priority
from comms_shared.schemas import DEFAULT_MAX_RETRIES


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class NotificationDelivery(Base):
    """One row per logical send. Retries mutate the row, never fork it."""

    __tablename__ = "notification_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(200), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # "metadata" is reserved on declarative classes
    request_metadata: Mapped[dict] = mapped_column(
        "metadata", JSONBCompatible, nullable=False, default=dict
    )
    priority: Mapped[str] = mapped_column(
        String(16), nullable=False, default=Priority.NORMAL
    )
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DeliveryStatus.PENDING, index=True
    )
    provider_message_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    provider_response: Mapped[dict | None] = mapped_column(
        JSONBCompatible, nullable=True
    )
    cost: Mapped[Decimal] = mapped_column(
        Numeric(10, 4, asdecimal=True), nullable=False, default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_RETRIES
    )
    next_retry_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    sent_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    delivered_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    archived_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_notification_deliveries_channel_status", "channel", "status"),
        Index("ix_notification_deliveries_batch_id", "batch_id"),
    )
