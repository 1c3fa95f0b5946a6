"""Pydantic models crossing component boundaries: requests and record snapshots."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from comms_shared.enums import Channel, DeliveryStatus, Priority, is_terminal

DEFAULT_MAX_RETRIES = 3


class NotificationRequest(BaseModel):
    """One logical notification to a single recipient on a single channel.

    ``recipient_address`` is only trimmed here.  Syntactic validation is
    channel specific and belongs to the channel provider, so a malformed
    address still produces a ``failed`` delivery record instead of a
    validation error at construction time.
    """

    model_config = ConfigDict(frozen=True)

    channel: Channel
    recipient_address: str
    body: str
    subject: str | None = None
    template_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    # Total attempts, the first one included.
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    batch_id: str | None = None

    @field_validator("recipient_address", mode="before")
    @classmethod
    def _strip_address(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value


class DeliveryRecord(BaseModel):
    """Immutable snapshot of one persisted delivery row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    channel: Channel
    recipient_address: str
    body: str
    subject: str | None = None
    template_id: str | None = None
    request_metadata: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    batch_id: str | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    provider_message_id: str | None = None
    provider_response: dict[str, Any] | None = None
    cost: Decimal = Decimal("0")
    currency: str = "USD"
    failure_reason: str | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    next_retry_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_request(self) -> NotificationRequest:
        """Rebuild the request this record was created from (for re-attempts)."""
        return NotificationRequest(
            channel=self.channel,
            recipient_address=self.recipient_address,
            body=self.body,
            subject=self.subject,
            template_id=self.template_id,
            metadata=dict(self.request_metadata),
            priority=self.priority,
            max_retries=self.max_retries,
            batch_id=self.batch_id,
        )
