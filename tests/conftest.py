"""Shared test fixtures: fake time, in-memory stores and SQLite databases."""

import random
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from comms_shared.db.base import create_all, create_db_engine, create_session_factory
from comms_shared.enums import Channel
from comms_shared.schemas import NotificationRequest

from comms_dispatch.config import DispatchConfig
from comms_dispatch.providers import ProviderRegistry, create_default_registry
from comms_dispatch.store import InMemoryDeliveryRecordStore, SqlDeliveryRecordStore

from helpers import ADDRESSES, FakeClock, SleepRecorder


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def make_request() -> Callable[..., NotificationRequest]:
    """Factory for requests with a valid address for the channel."""

    def _make(channel: Channel = Channel.SMS, **overrides: Any) -> NotificationRequest:
        fields: dict[str, Any] = {
            "channel": channel,
            "recipient_address": ADDRESSES[channel],
            "body": "Sports day moved to Friday at 10:00",
        }
        fields.update(overrides)
        return NotificationRequest(**fields)

    return _make


@pytest.fixture()
def registry_factory(
    sleep_recorder: SleepRecorder,
) -> Callable[[DispatchConfig], ProviderRegistry]:
    """Simulated providers with a seeded RNG and the recording sleep."""

    def _make(config: DispatchConfig) -> ProviderRegistry:
        return create_default_registry(
            config, rng=random.Random(42), sleep=sleep_recorder
        )

    return _make


@pytest.fixture()
def memory_store(clock: FakeClock) -> InMemoryDeliveryRecordStore:
    return InMemoryDeliveryRecordStore(clock=clock)


@pytest_asyncio.fixture()
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite database per test."""
    engine = create_db_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture()
def sql_store(
    session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> SqlDeliveryRecordStore:
    return SqlDeliveryRecordStore(session_factory, clock=clock)
