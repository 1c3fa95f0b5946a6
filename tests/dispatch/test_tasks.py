"""Tests for the Celery task wrappers, run eagerly against an in-memory runtime."""

import asyncio
import random
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from comms_shared.enums import Channel, Priority
from comms_shared.schemas import NotificationRequest

from comms_dispatch import runtime as runtime_module
from comms_dispatch import tasks
from comms_dispatch.bulk import BulkDispatchCoordinator
from comms_dispatch.orchestrator import DispatchOrchestrator
from comms_dispatch.providers import create_default_registry
from comms_dispatch.retry_poller import RetryPoller
from comms_dispatch.runtime import DispatchRuntime
from comms_dispatch.store import InMemoryDeliveryRecordStore

from helpers import ADDRESSES, FakeClock, make_config


@pytest.fixture()
def runtime(
    monkeypatch: pytest.MonkeyPatch, clock: FakeClock
) -> Generator[DispatchRuntime, None, None]:
    config = make_config(success_rate=1.0, retry_mode="polled")
    registry = create_default_registry(config, rng=random.Random(7))
    store = InMemoryDeliveryRecordStore(clock=clock)
    orchestrator = DispatchOrchestrator(registry, store, config, clock=clock)
    runtime = DispatchRuntime(
        loop=asyncio.new_event_loop(),
        registry=registry,
        orchestrator=orchestrator,
        coordinator=BulkDispatchCoordinator(orchestrator, registry),
        poller=RetryPoller(orchestrator, store, clock=clock),
    )
    monkeypatch.setattr(tasks, "_runtime", lambda: runtime)
    yield runtime
    runtime.close()


def _payload(channel: Channel = Channel.SMS, **overrides: object) -> dict:
    payload = {
        "channel": str(channel),
        "recipient_address": ADDRESSES[channel],
        "body": "School closes early today",
    }
    payload.update(overrides)
    return payload


class TestDispatchNotificationTask:
    def test_returns_record_json(self, runtime: DispatchRuntime) -> None:
        result = tasks.dispatch_notification(_payload())

        assert result["status"] == "sent"
        assert result["channel"] == "sms"
        assert result["cost"] == "0.01"
        assert result["provider_message_id"].startswith("sim_sms_")

    def test_invalid_address_recorded(self, runtime: DispatchRuntime) -> None:
        result = tasks.dispatch_notification(_payload(recipient_address="nope"))

        assert result["status"] == "failed"
        assert result["failure_reason"] == "invalid address"


class TestDispatchBulkTask:
    def test_summary(self, runtime: DispatchRuntime) -> None:
        requests = [_payload(Channel.EMAIL) for _ in range(3)]
        requests.append(_payload(Channel.TELEGRAM, recipient_address="@nobody"))

        result = tasks.dispatch_bulk(requests)

        assert len(result["record_ids"]) == 4
        assert result["summary"]["total"] == 4
        assert result["summary"]["by_status"] == {"sent": 3, "failed": 1}


class TestConfirmDeliveryTask:
    def test_delivered(self, runtime: DispatchRuntime) -> None:
        sent = tasks.dispatch_notification(_payload(Channel.PUSH))

        result = tasks.confirm_delivery(sent["provider_message_id"], True)

        assert result["status"] == "delivered"
        assert result["id"] == sent["id"]

    def test_unknown(self, runtime: DispatchRuntime) -> None:
        assert tasks.confirm_delivery("missing", False, "bounced") is None


class TestProcessDueRetriesTask:
    def test_nothing_due(self, runtime: DispatchRuntime) -> None:
        assert tasks.process_due_retries() == 0


class TestEnqueueNotification:
    def test_routes_by_priority(self, monkeypatch: pytest.MonkeyPatch) -> None:
        send_task = MagicMock()
        monkeypatch.setattr(tasks.app, "send_task", send_task)
        request = NotificationRequest(
            channel=Channel.SMS,
            recipient_address=ADDRESSES[Channel.SMS],
            body="Exam results are out",
            priority=Priority.HIGH,
        )

        tasks.enqueue_notification(request, countdown=5)

        args, kwargs = send_task.call_args
        assert args == ("comms_dispatch.tasks.dispatch_notification",)
        assert kwargs["queue"] == "high"
        assert kwargs["countdown"] == 5
        assert kwargs["kwargs"]["request"]["body"] == "Exam results are out"


class TestCreateRuntime:
    def test_rate_limiter_connects_with_configured_url(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
        monkeypatch.setenv("REDIS_HOST", "cache.internal")
        monkeypatch.setenv("REDIS_DB", "2")
        engine = MagicMock()
        engine.dispose = AsyncMock()
        redis_cls = MagicMock()
        redis_cls.from_url.return_value.aclose = AsyncMock()
        monkeypatch.setattr(
            runtime_module, "create_db_engine", MagicMock(return_value=engine)
        )
        monkeypatch.setattr(runtime_module, "create_session_factory", MagicMock())
        monkeypatch.setattr(runtime_module, "KafkaStatusPublisher", MagicMock())
        monkeypatch.setattr(runtime_module, "Redis", redis_cls)

        created = runtime_module.create_runtime(make_config(success_rate=1.0))
        try:
            redis_cls.from_url.assert_called_once_with("redis://cache.internal:6379/2")
            assert created.rate_limiter is not None
        finally:
            created.close()
        redis_cls.from_url.return_value.aclose.assert_awaited_once()
