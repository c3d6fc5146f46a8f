"""
Backing store module.
Contains the store contract and its in-memory and SQL implementations.
"""

from claimqueue.config import Settings, get_settings
from claimqueue.store.base import (
    SERVER_TIMESTAMP,
    BackingStore,
    Subscription,
    TransformResult,
)
from claimqueue.store.keys import generate_push_key
from claimqueue.store.memory import MemoryStore
from claimqueue.store.sql import SqlStore

MEMORY_URL = "memory://"


async def create_store(settings: Settings | None = None) -> BackingStore:
    """
    Build the store named by ``store_url``.

    ``memory://`` gives a MemoryStore; anything else is treated as an
    SQLAlchemy async URL, and the queue table is created if missing.

    Args:
        settings: Settings to use. Defaults to the cached settings.

    Returns:
        The ready-to-use store.
    """
    settings = settings or get_settings()

    if settings.store_url == MEMORY_URL:
        return MemoryStore()

    store = SqlStore(
        settings.store_url,
        pool_size=settings.store_pool_size,
        max_overflow=settings.store_max_overflow,
        poll_interval=settings.store_poll_interval_seconds,
        max_retries=settings.store_transform_max_retries,
        echo=settings.log_level == "DEBUG",
    )
    await store.create_schema()
    return store


__all__ = [
    "SERVER_TIMESTAMP",
    "BackingStore",
    "Subscription",
    "TransformResult",
    "MemoryStore",
    "SqlStore",
    "MEMORY_URL",
    "create_store",
    "generate_push_key",
]
