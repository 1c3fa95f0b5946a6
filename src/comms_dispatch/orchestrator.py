"""Dispatch orchestrator: drives one notification through its delivery states.

    pending --attempt--> sent | pending (retry scheduled) | failed
    sent    --callback--> delivered | failed
    pending --cancel--> cancelled

Provider outcomes are turned into record state here; callers only ever see
``DeliveryRecord`` snapshots, never a raw provider error.
"""

import asyncio
import datetime
import logging
from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from comms_shared.db.models import utcnow
from comms_shared.enums import DeliveryStatus
from comms_shared.errors import PartialBatchFailure, TerminalStatusError
from comms_shared.log import get_logger
from comms_shared.schemas import DeliveryRecord, NotificationRequest

from comms_dispatch.config import DispatchConfig
from comms_dispatch.providers import ProviderRegistry
from comms_dispatch.providers.base import (
    INVALID_ADDRESS,
    ChannelProvider,
    ProviderResult,
    Sleep,
)
from comms_dispatch.store import Clock, DeliveryRecordStore

CANCELLED_BEFORE_DISPATCH = "cancelled before dispatch"


class RateLimiterLike(Protocol):
    async def acquire(self, channel: str) -> bool: ...


class StatusPublisherLike(Protocol):
    def publish_status(self, record: DeliveryRecord) -> None: ...


def backoff_seconds(attempt: int, schedule: Sequence[float]) -> float:
    """Return backoff seconds for the given attempt number (1-based).

    Falls back to the last value in *schedule* when attempt exceeds the
    length of the list.
    """
    idx = min(max(attempt, 1) - 1, len(schedule) - 1)
    return schedule[idx]


class DispatchOrchestrator:
    """Validates, persists, sends and retries single notifications.

    In ``deferred`` retry mode a failed attempt schedules an asyncio task
    that sleeps the backoff and re-attempts; in ``polled`` mode only
    ``next_retry_at`` is persisted and a ``RetryPoller`` (or the Celery
    beat sweep) calls :meth:`retry` later.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: DeliveryRecordStore,
        config: DispatchConfig | None = None,
        *,
        rate_limiter: RateLimiterLike | None = None,
        status_publisher: StatusPublisherLike | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utcnow,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._config = config or DispatchConfig()
        self._rate_limiter = rate_limiter
        self._status_publisher = status_publisher
        self._sleep = sleep
        self._clock = clock
        self._log = get_logger(__name__, logger)
        self._retry_tasks: dict[UUID, asyncio.Task[None]] = {}
        self._send_slots: dict[str, asyncio.Semaphore] = {}
        self._closed = False

    @property
    def store(self) -> DeliveryRecordStore:
        return self._store

    @property
    def pending_retries(self) -> int:
        """Number of deferred re-attempts currently scheduled in-process."""
        return len(self._retry_tasks)

    async def dispatch(self, request: NotificationRequest) -> DeliveryRecord:
        """Send one notification and return the record after the first attempt.

        Raises KeyError if no provider is registered for the channel.
        """
        provider = self._registry.get(request.channel)
        if not provider.validate_address(request.recipient_address):
            return await self._reject_invalid(request)

        record = await self._store.create(
            request,
            max_retries=self._max_retries(request),
            currency=self._config.currency,
        )
        return await self._attempt(record, provider)

    async def dispatch_multicast(
        self, requests: Sequence[NotificationRequest]
    ) -> list[DeliveryRecord]:
        """Send one multicast call for a list of requests on a multicast channel.

        Each recipient still gets its own record; failed recipients are
        retried individually.
        """
        if not requests:
            return []
        channels = {r.channel for r in requests}
        if len(channels) != 1:
            raise ValueError(f"Multicast requires a single channel, got {sorted(channels)}")
        provider = self._registry.get(requests[0].channel)
        if not provider.supports_multicast:
            raise ValueError(f"{provider.channel} does not support multicast")

        records: list[DeliveryRecord | None] = [None] * len(requests)
        pending: list[int] = []
        for index, request in enumerate(requests):
            if provider.validate_address(request.recipient_address):
                records[index] = await self._store.create(
                    request,
                    max_retries=self._max_retries(request),
                    currency=self._config.currency,
                )
                pending.append(index)
            else:
                records[index] = await self._reject_invalid(request)

        if not pending:
            return [r for r in records if r is not None]

        if not await self._acquire_slot(provider.channel):
            for index in pending:
                records[index] = await self._defer_rate_limited(records[index])
            return [r for r in records if r is not None]

        batch = [records[i].to_request() for i in pending]
        try:
            async with self._send_slot(provider):
                outcome = await provider.send_multicast(batch)
            results = list(outcome.results)
        except Exception as exc:
            self._log.exception(
                "Multicast provider error", extra={"channel": str(provider.channel)}
            )
            reason = str(exc) or type(exc).__name__
            results = [ProviderResult.failure(reason) for _ in batch]
        else:
            if outcome.is_partial:
                self._log.info(
                    "Multicast partially delivered",
                    extra={
                        "channel": str(provider.channel),
                        "reason": str(
                            PartialBatchFailure(
                                outcome.success_count, outcome.failure_count
                            )
                        ),
                    },
                )

        applied = await asyncio.gather(
            *(self._apply_result(records[i], r) for i, r in zip(pending, results))
        )
        for index, record in zip(pending, applied):
            records[index] = record
        return [r for r in records if r is not None]

    async def retry(
        self, record_id: UUID, *, now: datetime.datetime | None = None
    ) -> DeliveryRecord | None:
        """Re-attempt a scheduled record.

        The record is claimed first, so concurrent callers (deferred task,
        poller, another worker) re-attempt it at most once.  Returns None
        when the record was not due or no longer pending.
        """
        record = await self._store.claim_retry(record_id, now)
        if record is None:
            self._log.debug("Nothing to retry", extra={"record_id": str(record_id)})
            return None
        provider = self._registry.get(record.channel)
        return await self._attempt(record, provider)

    async def confirm_delivery(
        self,
        provider_message_id: str,
        delivered: bool,
        reason: str | None = None,
    ) -> DeliveryRecord | None:
        """Apply a provider delivery callback to a sent record.

        Duplicate callbacks for a record that is already terminal leave it
        unchanged.  Returns None for an unknown provider message id.
        """
        record = await self._store.find_by_provider_message_id(provider_message_id)
        if record is None:
            self._log.warning(
                "Callback for unknown provider message",
                extra={"provider_message_id": provider_message_id},
            )
            return None
        if record.is_terminal:
            self._log.info(
                "Duplicate delivery callback ignored",
                extra={"record_id": str(record.id), "status": str(record.status)},
            )
            return record

        if delivered:
            status = DeliveryStatus.DELIVERED
            fields = {"delivered_at": self._clock()}
        else:
            status = DeliveryStatus.FAILED
            fields = {"failure_reason": reason or "provider reported failure"}
        try:
            record = await self._store.update_status(record.id, status, **fields)
        except TerminalStatusError:
            return await self._store.get(record.id)

        self._log.info(
            "Delivery confirmed",
            extra={"record_id": str(record.id), "status": str(record.status)},
        )
        self._publish(record)
        return record

    async def cancel(self, record_id: UUID) -> DeliveryRecord:
        """Cancel a pending record and any deferred re-attempt it has.

        Raises RecordNotFoundError, TerminalStatusError or
        InvalidTransitionError (a sent record cannot be cancelled).
        """
        record = await self._store.update_status(
            record_id, DeliveryStatus.CANCELLED, next_retry_at=None
        )
        task = self._retry_tasks.pop(record_id, None)
        if task is not None:
            task.cancel()
        self._log.info("Delivery cancelled", extra={"record_id": str(record_id)})
        self._publish(record)
        return record

    async def record_cancelled(self, request: NotificationRequest) -> DeliveryRecord:
        """Persist a request that was never issued as ``cancelled``."""
        record = await self._store.create(
            request,
            status=DeliveryStatus.CANCELLED,
            failure_reason=CANCELLED_BEFORE_DISPATCH,
            max_retries=self._max_retries(request),
            currency=self._config.currency,
        )
        self._publish(record)
        return record

    async def record_failed(
        self, request: NotificationRequest, reason: str
    ) -> DeliveryRecord:
        """Persist a request that could not be dispatched at all as ``failed``."""
        record = await self._store.create(
            request,
            status=DeliveryStatus.FAILED,
            failure_reason=reason,
            max_retries=self._max_retries(request),
            currency=self._config.currency,
        )
        self._publish(record)
        return record

    async def drain(self) -> None:
        """Wait until no deferred re-attempt is outstanding."""
        while self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding deferred re-attempts; their records stay pending."""
        self._closed = True
        tasks = list(self._retry_tasks.values())
        self._retry_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _max_retries(self, request: NotificationRequest) -> int:
        if "max_retries" in request.model_fields_set:
            return request.max_retries
        return self._config.max_retries

    async def _reject_invalid(self, request: NotificationRequest) -> DeliveryRecord:
        record = await self._store.create(
            request,
            status=DeliveryStatus.FAILED,
            failure_reason=INVALID_ADDRESS,
            max_retries=self._max_retries(request),
            currency=self._config.currency,
        )
        self._log.warning(
            "Invalid recipient address",
            extra={
                "record_id": str(record.id),
                "channel": str(request.channel),
                "recipient": request.recipient_address,
            },
        )
        self._publish(record)
        return record

    def _send_slot(self, provider: ChannelProvider) -> asyncio.Semaphore:
        # At most batch_size sends per channel in flight, retries included.
        slot = self._send_slots.get(provider.channel)
        if slot is None:
            slot = asyncio.Semaphore(provider.settings.batch_size)
            self._send_slots[provider.channel] = slot
        return slot

    async def _acquire_slot(self, channel: str) -> bool:
        if self._rate_limiter is None:
            return True
        try:
            return await self._rate_limiter.acquire(channel)
        except Exception:
            # Fail open: a limiter outage must not stall delivery.
            self._log.exception("Rate limiter error", extra={"channel": str(channel)})
            return True

    async def _defer_rate_limited(self, record: DeliveryRecord) -> DeliveryRecord:
        delay = self._config.rate_limit_retry_seconds
        record = await self._store.update_status(
            record.id,
            DeliveryStatus.PENDING,
            next_retry_at=self._clock() + datetime.timedelta(seconds=delay),
        )
        self._log.info(
            "Rate limited, rescheduling",
            extra={"record_id": str(record.id), "delay_seconds": delay},
        )
        self._schedule_retry(record.id, delay)
        return record

    async def _attempt(
        self, record: DeliveryRecord, provider: ChannelProvider
    ) -> DeliveryRecord:
        if not await self._acquire_slot(record.channel):
            return await self._defer_rate_limited(record)
        try:
            async with self._send_slot(provider):
                result = await provider.send(record.to_request())
        except Exception as exc:
            self._log.exception(
                "Provider error",
                extra={"record_id": str(record.id), "channel": str(record.channel)},
            )
            result = ProviderResult.failure(str(exc) or type(exc).__name__)
        return await self._apply_result(record, result)

    async def _apply_result(
        self, record: DeliveryRecord, result: ProviderResult
    ) -> DeliveryRecord:
        log_ctx = {
            "record_id": str(record.id),
            "channel": str(record.channel),
            "attempt": record.retry_count + 1,
        }
        now = self._clock()
        try:
            if result.success:
                record = await self._store.update_status(
                    record.id,
                    DeliveryStatus.SENT,
                    provider_message_id=result.provider_message_id,
                    provider_response=result.raw_response,
                    cost=result.cost if result.cost is not None else Decimal("0"),
                    sent_at=now,
                    failure_reason=None,
                    next_retry_at=None,
                )
                self._log.info(
                    "Delivery sent",
                    extra={**log_ctx, "provider_message_id": result.provider_message_id},
                )
                self._publish(record)
                return record

            reason = result.error_message or "unknown provider error"
            attempts = record.retry_count + 1
            if result.retryable and attempts < record.max_retries:
                delay = backoff_seconds(attempts, self._config.retry_backoff_seconds)
                record = await self._store.update_status(
                    record.id,
                    DeliveryStatus.PENDING,
                    increment_retry=True,
                    failure_reason=reason,
                    provider_response=result.raw_response or None,
                    cost=Decimal("0"),
                    next_retry_at=now + datetime.timedelta(seconds=delay),
                )
                self._log.warning(
                    "Delivery failed, scheduling retry",
                    extra={**log_ctx, "backoff_seconds": delay, "reason": reason},
                )
                self._schedule_retry(record.id, delay)
                return record

            record = await self._store.update_status(
                record.id,
                DeliveryStatus.FAILED,
                increment_retry=True,
                failure_reason=reason,
                provider_response=result.raw_response or None,
                cost=Decimal("0"),
                next_retry_at=None,
            )
        except TerminalStatusError:
            # Cancelled while the attempt was in flight.
            self._log.info("Record finished during attempt", extra=log_ctx)
            current = await self._store.get(record.id)
            return current if current is not None else record

        self._log.error(
            "Delivery permanently failed", extra={**log_ctx, "reason": reason}
        )
        self._publish(record)
        return record

    def _schedule_retry(self, record_id: UUID, delay: float) -> None:
        if self._config.retry_mode != "deferred" or self._closed:
            return
        task = asyncio.create_task(self._deferred_retry(record_id, delay))
        self._retry_tasks[record_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._retry_tasks.get(record_id) is done:
                del self._retry_tasks[record_id]

        task.add_done_callback(_forget)

    async def _deferred_retry(self, record_id: UUID, delay: float) -> None:
        await self._sleep(delay)
        try:
            await self.retry(record_id)
        except Exception:
            self._log.exception(
                "Deferred retry failed", extra={"record_id": str(record_id)}
            )

    def _publish(self, record: DeliveryRecord) -> None:
        if self._status_publisher is None:
            return
        try:
            self._status_publisher.publish_status(record)
        except Exception:
            self._log.exception(
                "Status publish failed", extra={"record_id": str(record.id)}
            )
