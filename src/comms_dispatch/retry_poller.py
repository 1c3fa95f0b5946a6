"""Durable retry scheduling: re-attempt records whose next_retry_at has passed."""

import asyncio
import logging

from comms_shared.db.models import utcnow
from comms_shared.log import get_logger

from comms_dispatch.orchestrator import DispatchOrchestrator
from comms_dispatch.providers.base import Sleep
from comms_dispatch.store import Clock, DeliveryRecordStore


class RetryPoller:
    """Polls the store for due retries and hands them to the orchestrator.

    Only ``next_retry_at`` lives in the database, so scheduled re-attempts
    survive process restarts.  Records are claimed by the orchestrator
    before each attempt, which makes running several pollers safe.
    """

    def __init__(
        self,
        orchestrator: DispatchOrchestrator,
        store: DeliveryRecordStore,
        *,
        interval_seconds: float = 5.0,
        batch_size: int = 100,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._clock = clock
        self._sleep = sleep
        self._log = get_logger(__name__, logger)

    async def poll_once(self) -> int:
        """Re-attempt every record due now; return how many were attempted."""
        now = self._clock()
        due = await self._store.list_due_retries(now, limit=self._batch_size)
        if not due:
            return 0

        outcomes = await asyncio.gather(
            *(self._orchestrator.retry(r.id, now=now) for r in due),
            return_exceptions=True,
        )
        attempted = 0
        for record, outcome in zip(due, outcomes):
            if isinstance(outcome, Exception):
                self._log.error(
                    "Retry failed",
                    exc_info=outcome,
                    extra={"record_id": str(record.id)},
                )
            elif outcome is not None:
                attempted += 1

        self._log.info(
            "Processed due retries", extra={"due": len(due), "attempted": attempted}
        )
        return attempted

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until *stop_event* is set."""
        self._log.info("Retry poller started", extra={"interval": self._interval})
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except Exception:
                self._log.exception("Retry poll failed")
            await self._sleep(self._interval)
        self._log.info("Retry poller stopped")
