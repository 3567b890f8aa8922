"""
experiment_sdk.tier0_core.data
───────────────────────────────
Async SQLAlchemy plumbing for the SQL-backed definition and event stores:
declarative base, engine construction, transactional session scope.

Stack: SQLAlchemy 2.x async + aiosqlite (dev/test)
Configure via: DATABASE_URL, DATABASE_POOL_SIZE, DATABASE_MAX_OVERFLOW
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from experiment_sdk.tier0_core.config import EngineConfig


class Base(DeclarativeBase):
    """All store tables inherit from this base."""
    pass


def create_engine(config: EngineConfig) -> AsyncEngine:
    """Build an async engine from config. Callers own its lifecycle."""
    url = config.database_url
    kwargs: dict[str, Any] = {}

    # SQLite doesn't support pool settings
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = config.database_pool_size
        kwargs["max_overflow"] = config.database_max_overflow

    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all store tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a transactional session.
    Commits on clean exit, rolls back on exception, always closes.

    Usage:
        async with session_scope(factory) as session:
            session.add(row)
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


__all__ = [
    "Base",
    "create_engine",
    "create_session_factory",
    "create_schema",
    "session_scope",
]
