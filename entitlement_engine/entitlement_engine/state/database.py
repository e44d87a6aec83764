"""Engine construction and transactional session scopes.

The database URL decides the backend.  ``postgresql+asyncpg`` URLs get a
pooled engine with per-statement and lock timeouts applied server side;
``sqlite+aiosqlite`` URLs are delegated to :mod:`sqlite_adapter`.

Repositories never commit.  Callers either commit explicitly or wrap their
work in :func:`session_scope`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Server-side guards for PostgreSQL sessions, in milliseconds.
_STATEMENT_TIMEOUT_MS = 15_000
_LOCK_TIMEOUT_MS = 5_000


def get_engine(database_url: str, *, pool_size: int = 5, max_overflow: int = 10) -> AsyncEngine:
    """Build an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        SQLAlchemy URL.  ``sqlite`` URLs without a path (or with
        ``:memory:``) give an in-memory store.
    pool_size, max_overflow:
        PostgreSQL pool sizing; ignored for SQLite.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from entitlement_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={
            "server_settings": {
                "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info(
        "PostgreSQL engine ready for %s (pool %d+%d)",
        url.render_as_string(hide_password=True),
        pool_size,
        max_overflow,
    )
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Open a session, commit on clean exit, roll back on error."""
    session = factory()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()
