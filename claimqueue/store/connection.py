"""
Database connection management.
Handles async SQLAlchemy engine and session factory creation for SqlStore.
"""

import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool

logger = logging.getLogger(__name__)


def is_sqlite(url: str) -> bool:
    """Check whether a database URL points at SQLite."""
    return url.startswith("sqlite")


def create_engine(
    url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    echo: bool = False,
) -> AsyncEngine:
    """
    Create the async database engine.

    PostgreSQL gets a pooled engine. SQLite gets WAL mode and a busy timeout
    so concurrent workers wait for the write lock instead of failing. An
    in-memory SQLite database lives in a single pooled connection that
    sessions take turns on, so every session sees the same data.

    Args:
        url: SQLAlchemy async database URL.
        pool_size: Connection pool size (PostgreSQL only).
        max_overflow: Pool overflow (PostgreSQL only).
        echo: Log SQL statements.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    if not is_sqlite(url):
        engine = create_async_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            echo=echo,
            pool_pre_ping=True,
        )
        logger.info("Database engine created", extra={"dialect": engine.dialect.name})
        return engine

    kwargs: dict = {
        "echo": echo,
        "connect_args": {"check_same_thread": False},
    }
    if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
        kwargs["poolclass"] = AsyncAdaptedQueuePool
        kwargs["pool_size"] = 1
        kwargs["max_overflow"] = 0

    engine = create_async_engine(url, **kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    logger.info("Database engine created", extra={"dialect": "sqlite"})
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to an engine.

    Args:
        engine: The async engine.

    Returns:
        The session factory.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
