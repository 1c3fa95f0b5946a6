"""Celery tasks wrapping the dispatch entry points for queue consumers."""

import logging
from typing import Any

from comms_shared.schemas import NotificationRequest

from comms_dispatch.bulk import summarize
from comms_dispatch.celery import app
from comms_dispatch.runtime import DispatchRuntime

logger = logging.getLogger(__name__)


def _runtime() -> DispatchRuntime:
    return app.conf._runtime


@app.task(name="comms_dispatch.tasks.dispatch_notification")
def dispatch_notification(request: dict[str, Any]) -> dict[str, Any]:
    """Dispatch one notification and return the record after the first attempt.

    *request* is a ``NotificationRequest`` in JSON form.  Failed attempts
    are rescheduled through ``next_retry_at`` and picked up by
    ``process_due_retries``.
    """
    runtime = _runtime()
    notification = NotificationRequest.model_validate(request)
    record = runtime.run(runtime.orchestrator.dispatch(notification))
    logger.info(
        "Notification dispatched",
        extra={"record_id": str(record.id), "status": str(record.status)},
    )
    return record.model_dump(mode="json")


@app.task(name="comms_dispatch.tasks.dispatch_bulk")
def dispatch_bulk(requests: list[dict[str, Any]]) -> dict[str, Any]:
    """Dispatch a batch of notifications; returns record ids and a summary."""
    runtime = _runtime()
    notifications = [NotificationRequest.model_validate(r) for r in requests]
    records = runtime.run(runtime.coordinator.dispatch_bulk(notifications))
    return {
        "record_ids": [str(r.id) for r in records],
        "summary": summarize(records).as_dict(),
    }


@app.task(name="comms_dispatch.tasks.process_due_retries")
def process_due_retries() -> int:
    """Periodic sweep re-attempting every record whose retry is due."""
    runtime = _runtime()
    return runtime.run(runtime.poller.poll_once())


@app.task(name="comms_dispatch.tasks.confirm_delivery")
def confirm_delivery(
    provider_message_id: str, delivered: bool, reason: str | None = None
) -> dict[str, Any] | None:
    """Apply a provider delivery callback."""
    runtime = _runtime()
    record = runtime.run(
        runtime.orchestrator.confirm_delivery(provider_message_id, delivered, reason)
    )
    if record is None:
        return None
    return record.model_dump(mode="json")


def enqueue_notification(request: NotificationRequest, countdown: float = 0) -> None:
    """Send a dispatch task to the queue matching the request priority."""
    app.send_task(
        "comms_dispatch.tasks.dispatch_notification",
        kwargs={"request": request.model_dump(mode="json")},
        queue=str(request.priority),
        countdown=countdown,
    )
