"""Tests for the delivery record stores (in-memory and SQL share one suite)."""

import asyncio
import datetime
import uuid
from collections.abc import Callable
from decimal import Decimal

import pytest

from comms_shared.enums import Channel, DeliveryStatus
from comms_shared.errors import (
    InvalidTransitionError,
    RecordNotFoundError,
    TerminalStatusError,
)
from comms_shared.schemas import NotificationRequest

from comms_dispatch.store import (
    DeliveryRecordStore,
    InMemoryDeliveryRecordStore,
    KeyedLock,
    SqlDeliveryRecordStore,
)

from helpers import FakeClock


@pytest.fixture(params=["memory", "sql"])
def store(
    request: pytest.FixtureRequest,
    memory_store: InMemoryDeliveryRecordStore,
    sql_store: SqlDeliveryRecordStore,
) -> DeliveryRecordStore:
    return memory_store if request.param == "memory" else sql_store


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_serializes_same_key(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("r1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self) -> None:
        locks = KeyedLock()
        async with locks.hold("r1"):
            async with locks.hold("r2"):
                assert len(locks) == 2


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_pending(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
        clock: FakeClock,
    ) -> None:
        request = make_request(
            Channel.EMAIL, subject="Trip", metadata={"cc": ["x@y.io"]}, batch_id="b1"
        )

        record = await store.create(request)

        assert isinstance(record.id, uuid.UUID)
        assert record.status == DeliveryStatus.PENDING
        assert record.retry_count == 0
        assert record.max_retries == 3
        assert record.cost == Decimal("0")
        assert record.subject == "Trip"
        assert record.request_metadata == {"cc": ["x@y.io"]}
        assert record.batch_id == "b1"
        assert record.created_at == clock.now

    @pytest.mark.asyncio
    async def test_create_failed_with_reason(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(
            make_request(),
            status=DeliveryStatus.FAILED,
            failure_reason="invalid address",
            max_retries=5,
        )

        assert record.status == DeliveryStatus.FAILED
        assert record.failure_reason == "invalid address"
        assert record.max_retries == 5

    @pytest.mark.asyncio
    async def test_get_returns_created(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request())

        assert await store.get(record.id) == record
        assert await store.get(uuid.uuid4()) is None


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_pending_to_sent(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
        clock: FakeClock,
    ) -> None:
        record = await store.create(make_request())
        clock.advance(5)

        updated = await store.update_status(
            record.id,
            DeliveryStatus.SENT,
            provider_message_id="sim_sms_1",
            provider_response={"status": "sent"},
            cost=Decimal("0.01"),
            sent_at=clock.now,
        )

        assert updated.status == DeliveryStatus.SENT
        assert updated.cost == Decimal("0.01")
        assert updated.provider_response == {"status": "sent"}
        assert updated.sent_at == clock.now
        assert updated.updated_at == clock.now
        assert updated.created_at == record.created_at

    @pytest.mark.asyncio
    async def test_increment_retry(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request())

        once = await store.update_status(
            record.id, DeliveryStatus.PENDING, increment_retry=True
        )
        twice = await store.update_status(
            record.id, DeliveryStatus.PENDING, increment_retry=True
        )

        assert (once.retry_count, twice.retry_count) == (1, 2)

    @pytest.mark.asyncio
    async def test_terminal_record_rejects_changes(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request(), status=DeliveryStatus.FAILED)

        with pytest.raises(TerminalStatusError):
            await store.update_status(record.id, DeliveryStatus.SENT)
        assert await store.get(record.id) == record

    @pytest.mark.asyncio
    async def test_invalid_transition(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request())

        with pytest.raises(InvalidTransitionError):
            await store.update_status(record.id, DeliveryStatus.DELIVERED)

    @pytest.mark.asyncio
    async def test_unknown_record(self, store: DeliveryRecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            await store.update_status(uuid.uuid4(), DeliveryStatus.SENT)

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request())

        with pytest.raises(ValueError):
            await store.update_status(record.id, DeliveryStatus.SENT, channel="email")


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_by_ids_keeps_request_order(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        a = await store.create(make_request())
        b = await store.create(make_request())
        c = await store.create(make_request())

        records = await store.list_by_ids([c.id, uuid.uuid4(), a.id, b.id])

        assert [r.id for r in records] == [c.id, a.id, b.id]

    @pytest.mark.asyncio
    async def test_find_by_provider_message_id(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request())
        await store.update_status(
            record.id, DeliveryStatus.SENT, provider_message_id="SM42"
        )

        found = await store.find_by_provider_message_id("SM42")

        assert found is not None
        assert found.id == record.id
        assert await store.find_by_provider_message_id("SM0") is None

    @pytest.mark.asyncio
    async def test_list_due_retries(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
        clock: FakeClock,
    ) -> None:
        due_late = await store.create(make_request())
        due_early = await store.create(make_request())
        not_due = await store.create(make_request())
        await store.create(make_request())
        await store.update_status(
            due_late.id, DeliveryStatus.PENDING, next_retry_at=clock.now
        )
        await store.update_status(
            due_early.id,
            DeliveryStatus.PENDING,
            next_retry_at=clock.now - datetime.timedelta(seconds=30),
        )
        await store.update_status(
            not_due.id,
            DeliveryStatus.PENDING,
            next_retry_at=clock.now + datetime.timedelta(seconds=30),
        )

        due = await store.list_due_retries(clock.now)

        assert [r.id for r in due] == [due_early.id, due_late.id]


class TestClaimRetry:
    @pytest.mark.asyncio
    async def test_claim_clears_schedule_once(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
        clock: FakeClock,
    ) -> None:
        record = await store.create(make_request())
        await store.update_status(
            record.id, DeliveryStatus.PENDING, next_retry_at=clock.now
        )

        first = await store.claim_retry(record.id, clock.now)
        second = await store.claim_retry(record.id, clock.now)

        assert first is not None
        assert first.next_retry_at is None
        assert second is None

    @pytest.mark.asyncio
    async def test_not_due_yet(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
        clock: FakeClock,
    ) -> None:
        record = await store.create(make_request())
        clock.advance(60)
        await store.update_status(
            record.id, DeliveryStatus.PENDING, next_retry_at=clock.now
        )
        clock.advance(-30)

        assert await store.claim_retry(record.id, clock.now) is None
        # Without a deadline any scheduled retry can be claimed.
        assert await store.claim_retry(record.id) is not None

    @pytest.mark.asyncio
    async def test_unscheduled_or_unknown(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request())

        assert await store.claim_retry(record.id) is None
        assert await store.claim_retry(uuid.uuid4()) is None


class TestArchive:
    @pytest.mark.asyncio
    async def test_archive_terminal_keeps_status(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
        clock: FakeClock,
    ) -> None:
        record = await store.create(make_request(), status=DeliveryStatus.FAILED)

        archived = await store.archive(record.id)
        again = await store.archive(record.id)

        assert archived.status == DeliveryStatus.FAILED
        assert archived.archived_at == clock.now
        assert again.archived_at == archived.archived_at

    @pytest.mark.asyncio
    async def test_archive_pending_rejected(
        self,
        store: DeliveryRecordStore,
        make_request: Callable[..., NotificationRequest],
    ) -> None:
        record = await store.create(make_request())

        with pytest.raises(InvalidTransitionError):
            await store.archive(record.id)

    @pytest.mark.asyncio
    async def test_archive_unknown(self, store: DeliveryRecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            await store.archive(uuid.uuid4())
