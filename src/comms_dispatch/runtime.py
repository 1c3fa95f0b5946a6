"""Long-lived dispatch components for a worker process.

Celery tasks are synchronous, so each worker process owns one event loop
and runs every coroutine on it; asyncpg connections and the httpx pool
stay bound to that loop for the life of the process.
"""

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from comms_shared.config import KafkaConfig, PostgresConfig, RedisConfig
from comms_shared.db.base import create_db_engine, create_session_factory

from comms_dispatch.bulk import BulkDispatchCoordinator
from comms_dispatch.config import DispatchConfig, RateLimitConfig
from comms_dispatch.orchestrator import DispatchOrchestrator
from comms_dispatch.providers import ProviderRegistry, create_default_registry
from comms_dispatch.rate_limiter import RateLimiter
from comms_dispatch.retry_poller import RetryPoller
from comms_dispatch.status_publisher import KafkaStatusPublisher
from comms_dispatch.store import SqlDeliveryRecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DispatchRuntime:
    loop: asyncio.AbstractEventLoop
    registry: ProviderRegistry
    orchestrator: DispatchOrchestrator
    coordinator: BulkDispatchCoordinator
    poller: RetryPoller
    status_publisher: KafkaStatusPublisher | None = None
    rate_limiter: RateLimiter | None = None
    engine: AsyncEngine | None = None

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        return self.loop.run_until_complete(coro)

    def close(self) -> None:
        """Release every resource and close the loop."""
        self.run(self.orchestrator.close())
        self.run(self.registry.aclose())
        if self.rate_limiter is not None:
            self.run(self.rate_limiter.aclose())
        if self.engine is not None:
            self.run(self.engine.dispose())
        if self.status_publisher is not None:
            self.status_publisher.close()
        self.loop.close()


def create_runtime(config: DispatchConfig | None = None) -> DispatchRuntime:
    """Build the production component graph from environment configuration.

    Worker processes run tasks to completion one at a time, so retries
    always use the polled mode: a deferred asyncio task would only make
    progress while some later task happens to be running the loop.
    """
    config = (config or DispatchConfig()).model_copy(update={"retry_mode": "polled"})
    loop = asyncio.new_event_loop()

    pg_config = PostgresConfig()
    engine = create_db_engine(
        pg_config.dsn,
        pool_size=pg_config.pool_size,
        max_overflow=pg_config.max_overflow,
        pool_pre_ping=True,
    )
    store = SqlDeliveryRecordStore(create_session_factory(engine))

    rate_limiter = None
    rate_limit_config = RateLimitConfig()
    if rate_limit_config.enabled:
        redis_config = RedisConfig()
        rate_limiter = RateLimiter(
            Redis.from_url(redis_config.url),
            rate_limit_config,
        )

    status_publisher = KafkaStatusPublisher(KafkaConfig())
    registry = create_default_registry(config)
    orchestrator = DispatchOrchestrator(
        registry,
        store,
        config,
        rate_limiter=rate_limiter,
        status_publisher=status_publisher,
    )
    logger.info(
        "Dispatch runtime created",
        extra={
            "simulate": config.simulate,
            "rate_limited": rate_limiter is not None,
            "channels": registry.channels,
        },
    )
    return DispatchRuntime(
        loop=loop,
        registry=registry,
        orchestrator=orchestrator,
        coordinator=BulkDispatchCoordinator(orchestrator, registry),
        poller=RetryPoller(
            orchestrator,
            store,
            interval_seconds=config.retry_poll_interval_seconds,
            batch_size=config.retry_poll_batch_size,
        ),
        status_publisher=status_publisher,
        rate_limiter=rate_limiter,
        engine=engine,
    )
