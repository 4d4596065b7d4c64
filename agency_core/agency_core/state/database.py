"""Async SQLAlchemy engine construction.

The URL scheme picks the backend:
  - ``postgresql+asyncpg://`` → pooled PostgreSQL engine with server-side
    statement and lock timeouts, so a stuck compare-and-set transition
    fails instead of holding row locks.
  - ``sqlite+aiosqlite://``   → SQLite engine from :mod:`sqlite_adapter`
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)


def sqlite_path(database_url: str) -> str:
    """Return the file path of a ``sqlite`` URL, or ``:memory:``."""
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 20,
    statement_timeout_ms: int = 30_000,
    lock_timeout_ms: int = 10_000,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size, max_overflow:
        PostgreSQL pool sizing.  Ignored for SQLite.
    statement_timeout_ms, lock_timeout_ms:
        PostgreSQL ``statement_timeout`` / ``lock_timeout`` for every
        connection.  Ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from agency_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={
            "server_settings": {
                "statement_timeout": str(statement_timeout_ms),
                "lock_timeout": str(lock_timeout_ms),
            }
        },
    )
    logger.info("Created PostgreSQL engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine
