"""Database foundation: declarative base class, async engine and session factories."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""


def create_db_engine(dsn: str, **kwargs: object) -> AsyncEngine:
    """Create an async SQLAlchemy engine from a DSN string.

    Services should pass ``pool_pre_ping=True`` in production to handle
    stale connections after PostgreSQL restarts.
    """
    return create_async_engine(dsn, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async_sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attribute access valid after commit,
    which the store relies on when it snapshots rows into DeliveryRecord
    models outside the transaction.
    """
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables (tests and local runs; production uses Alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
