"""
Backing store contract.

The queue and the claim protocol need only the primitives defined here: an
ordered keyed collection with push, set/delete, partial update, an atomic
conditional transform, a live "first item" subscription, one-shot snapshots,
counts, and a server-assigned timestamp marker.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from claimqueue.constants import FIELD_PRIORITY


class _ServerTimestamp:
    """Marker replaced by the store's own clock when a write commits."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __deepcopy__(self, memo: dict) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()

# on_candidate(key, value)
CandidateCallback = Callable[[str, dict[str, Any]], None]
# on_error(error)
ErrorCallback = Callable[[Exception], None]
# transform(current) -> new value, or None to delete
TransformFunction = Callable[[dict[str, Any] | None], dict[str, Any] | None]


@dataclass(frozen=True)
class TransformResult:
    """
    Outcome of a conditional transform.

    Attributes:
        committed: True if the computed value was written (or the delete applied).
        value: The value actually committed, or the last value read when not committed.
    """

    committed: bool
    value: dict[str, Any] | None


class Subscription(ABC):
    """Handle for a live first-item subscription."""

    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop notifications. Safe to call more than once."""

    @abstractmethod
    def refresh(self) -> None:
        """Deliver the current first item again, even if it has not changed."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether notifications are still being delivered."""


def order_key(key: str, value: Any) -> tuple:
    """
    Sort key for entries of a collection.

    Entries without a priority come first, then ascending priority; ties are
    broken by key, which for pushed entries is insertion order.
    """
    priority = value.get(FIELD_PRIORITY) if isinstance(value, Mapping) else None
    if priority is None:
        return (0, 0, key)
    return (1, priority, key)


def contains_server_timestamp(value: Any) -> bool:
    """Check whether a value holds the server timestamp marker anywhere."""
    if value is SERVER_TIMESTAMP:
        return True
    if isinstance(value, Mapping):
        return any(contains_server_timestamp(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_server_timestamp(v) for v in value)
    return False


def resolve_server_timestamps(value: Any, now_ms: int) -> Any:
    """Replace every server timestamp marker in a value with ``now_ms``."""
    if value is SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, Mapping):
        return {k: resolve_server_timestamps(v, now_ms) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_timestamps(v, now_ms) for v in value]
    return value


def now_ms() -> int:
    """Local wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class BackingStore(ABC):
    """
    Abstract base class for backing stores.

    A collection is a named, ordered mapping of string keys to JSON-like
    records. Every method raises StoreError on a store or transport failure.
    """

    @abstractmethod
    async def push(self, collection: str, value: dict[str, Any]) -> str:
        """Append a value under a new time-ordered key and return the key."""

    @abstractmethod
    async def set(self, collection: str, key: str, value: dict[str, Any] | None) -> None:
        """Overwrite the value at key; None deletes it."""

    @abstractmethod
    async def update(self, collection: str, key: str, fields: Mapping[str, Any]) -> None:
        """
        Merge fields into the record at key, creating it if absent.

        A field whose value is None is removed from the record.
        """

    @abstractmethod
    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Read one record."""

    @abstractmethod
    async def clear(self, collection: str) -> None:
        """Delete every record in a collection."""

    @abstractmethod
    async def watch_first(
        self,
        collection: str,
        on_candidate: CandidateCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """
        Subscribe to the first item of a collection.

        ``on_candidate(key, value)`` is called whenever the identity of the
        first item changes, including at subscribe time when one exists.
        ``on_error`` is called at most once if the subscription fails; no
        further notifications follow it.
        """

    @abstractmethod
    async def conditional_transform(
        self,
        collection: str,
        key: str,
        transform: TransformFunction,
    ) -> TransformResult:
        """
        Atomically replace the value at key with ``transform(current)``.

        The write only happens if nobody else modified the value since it was
        read. ``transform`` may be called more than once.
        """

    @abstractmethod
    async def snapshot(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        """One consistent read of all entries, in order."""

    @abstractmethod
    async def count(self, collection: str) -> int:
        """Number of entries in a collection."""

    async def remove(self, collection: str, key: str) -> None:
        """Delete the record at key."""
        await self.set(collection, key, None)

    async def ping(self) -> None:
        """Check the store is reachable. Raises StoreError if not."""

    async def close(self) -> None:
        """Release connections and stop subscriptions."""
