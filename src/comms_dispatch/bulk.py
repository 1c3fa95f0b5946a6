"""Bulk dispatch: per-channel chunking with mandatory inter-batch delays."""

import asyncio
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from comms_shared.enums import Channel, DeliveryStatus
from comms_shared.log import get_logger
from comms_shared.schemas import DeliveryRecord, NotificationRequest

from comms_dispatch.orchestrator import DispatchOrchestrator
from comms_dispatch.providers import ProviderRegistry
from comms_dispatch.providers.base import ChannelProvider, Sleep, chunked


@dataclass(frozen=True, slots=True)
class BulkSummary:
    total: int
    by_status: dict[str, int] = field(default_factory=dict)
    total_cost: Decimal = Decimal("0")

    def count(self, status: DeliveryStatus) -> int:
        return self.by_status.get(status, 0)

    def as_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "total_cost": str(self.total_cost),
        }


def summarize(records: Iterable[DeliveryRecord]) -> BulkSummary:
    """Count records per status and add up their cost."""
    records = list(records)
    statuses = Counter(str(r.status) for r in records)
    return BulkSummary(
        total=len(records),
        by_status=dict(statuses),
        total_cost=sum((r.cost for r in records), Decimal("0")),
    )


class BulkDispatchCoordinator:
    """Dispatches many requests while honouring each channel's batch limits.

    Requests are grouped by channel.  Groups run concurrently; inside a
    group, chunks of ``batch_size`` are sent one after another with the
    channel's ``batch_delay_seconds`` between them, so at most
    ``batch_size`` sends per channel are in flight.  Multicast channels
    send each chunk as one multicast call.
    """

    def __init__(
        self,
        orchestrator: DispatchOrchestrator,
        registry: ProviderRegistry,
        *,
        sleep: Sleep = asyncio.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._registry = registry
        self._sleep = sleep
        self._log = get_logger(__name__, logger)

    async def dispatch_bulk(
        self,
        requests: Sequence[NotificationRequest],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[DeliveryRecord]:
        """Dispatch *requests* and return one record per request, in input order.

        Setting *cancel_event* stops new chunks from being issued; requests
        never issued come back as ``cancelled`` records.  Raises KeyError
        before sending anything if a channel has no provider.
        """
        groups: dict[Channel, list[int]] = {}
        for index, request in enumerate(requests):
            groups.setdefault(request.channel, []).append(index)
        providers = {channel: self._registry.get(channel) for channel in groups}

        results: list[DeliveryRecord | None] = [None] * len(requests)
        await asyncio.gather(
            *(
                self._dispatch_group(
                    providers[channel], indices, requests, results, cancel_event
                )
                for channel, indices in groups.items()
            )
        )
        records = [r for r in results if r is not None]

        summary = summarize(records)
        self._log.info(
            "Bulk dispatch finished",
            extra={
                "total": summary.total,
                "by_status": summary.by_status,
                "failed": summary.count(DeliveryStatus.FAILED),
                "total_cost": str(summary.total_cost),
                "channels": sorted(str(c) for c in groups),
            },
        )
        return records

    async def _dispatch_group(
        self,
        provider: ChannelProvider,
        indices: list[int],
        requests: Sequence[NotificationRequest],
        results: list[DeliveryRecord | None],
        cancel_event: asyncio.Event | None,
    ) -> None:
        settings = provider.settings
        chunks = chunked(indices, settings.batch_size)
        for position, chunk in enumerate(chunks):
            if cancel_event is not None and cancel_event.is_set():
                skipped = [i for c in chunks[position:] for i in c]
                self._log.info(
                    "Bulk dispatch cancelled",
                    extra={"channel": str(provider.channel), "skipped": len(skipped)},
                )
                for index in skipped:
                    results[index] = await self._orchestrator.record_cancelled(
                        requests[index]
                    )
                return

            batch = [requests[i] for i in chunk]
            if provider.supports_multicast:
                records = await self._dispatch_multicast_chunk(batch)
            else:
                records = await asyncio.gather(*(self._dispatch_one(r) for r in batch))
            for index, record in zip(chunk, records):
                results[index] = record

            if position < len(chunks) - 1:
                await self._sleep(settings.batch_delay_seconds)

    async def _dispatch_multicast_chunk(
        self, batch: Sequence[NotificationRequest]
    ) -> list[DeliveryRecord]:
        try:
            return await self._orchestrator.dispatch_multicast(batch)
        except Exception:
            self._log.exception(
                "Multicast dispatch error, sending individually",
                extra={"channel": str(batch[0].channel), "count": len(batch)},
            )
            return list(await asyncio.gather(*(self._dispatch_one(r) for r in batch)))

    async def _dispatch_one(self, request: NotificationRequest) -> DeliveryRecord:
        try:
            return await self._orchestrator.dispatch(request)
        except Exception as exc:
            self._log.exception(
                "Dispatch error", extra={"channel": str(request.channel)}
            )
            return await self._orchestrator.record_failed(
                request, str(exc) or type(exc).__name__
            )
