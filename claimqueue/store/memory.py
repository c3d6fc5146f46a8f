"""
In-process backing store.

Every operation runs to completion without yielding to the event loop, so a
conditional transform is atomic with respect to every other coroutine in the
process. Notifications are delivered on the next loop iteration, never from
inside the mutating call.
"""

import asyncio
import copy
import itertools
import logging
from collections import defaultdict, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from claimqueue.errors import StoreError
from claimqueue.store.base import (
    BackingStore,
    CandidateCallback,
    ErrorCallback,
    Subscription,
    TransformFunction,
    TransformResult,
    now_ms,
    order_key,
    resolve_server_timestamps,
)
from claimqueue.store.keys import generate_push_key

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    seq: int
    value: dict[str, Any]


class _MemorySubscription(Subscription):
    """First-item subscription on a MemoryStore collection."""

    def __init__(
        self,
        store: "MemoryStore",
        collection: str,
        on_candidate: CandidateCallback,
        on_error: ErrorCallback | None,
    ):
        self._store = store
        self._collection = collection
        self._on_candidate = on_candidate
        self._on_error = on_error
        self._active = True
        self.last_seq: int | None = None

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._store._remove_subscription(self)

    def refresh(self) -> None:
        if self._active:
            self.last_seq = None
            self._store._notify_one(self)

    def deliver(self, key: str, value: dict[str, Any]) -> None:
        if self._active:
            self._on_candidate(key, value)

    def fail(self, error: Exception) -> None:
        if self._active:
            self.unsubscribe()
            if self._on_error is not None:
                self._on_error(error)


class MemoryStore(BackingStore):
    """
    Backing store kept in process memory.

    Suitable for a pool of workers sharing one event loop, for development,
    and for tests. Supports fault injection:

    - ``fail_next(operation)`` makes the next call of that operation raise
      StoreError.
    - ``conflict_next()`` makes the next conditional transform report a
      concurrent modification (not committed).
    - ``fail_subscriptions(collection)`` fails every live subscription.
    """

    def __init__(self, clock: Callable[[], int] | None = None):
        """
        Initialize an empty store.

        Args:
            clock: Returns the store time in epoch milliseconds. Used to
                resolve server timestamps.
        """
        self._collections: dict[str, dict[str, _Entry]] = defaultdict(dict)
        self._subscriptions: dict[str, list[_MemorySubscription]] = defaultdict(list)
        self._seq = itertools.count(1)
        self._clock = clock or now_ms
        self._faults: dict[str, deque[Exception]] = defaultdict(deque)
        self._conflicts = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def fail_next(
        self,
        operation: str,
        error: Exception | None = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` raise."""
        for _ in range(times):
            self._faults[operation].append(
                error or StoreError(f"injected failure in {operation}", operation)
            )

    def conflict_next(self, times: int = 1) -> None:
        """Make the next ``times`` conditional transforms lose to a concurrent writer."""
        self._conflicts += times

    def fail_subscriptions(self, collection: str, error: Exception | None = None) -> None:
        """Fail every live subscription on a collection."""
        error = error or StoreError("injected subscription failure", "watch_first")
        for subscription in list(self._subscriptions[collection]):
            subscription.fail(error)

    def _check(self, operation: str) -> None:
        if self._closed:
            raise StoreError("store is closed", operation)
        faults = self._faults.get(operation)
        if faults:
            error = faults.popleft()
            if isinstance(error, StoreError):
                raise error
            raise StoreError(str(error), operation) from error

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    async def push(self, collection: str, value: dict[str, Any]) -> str:
        self._check("push")
        key = generate_push_key()
        self._write(collection, key, value)
        return key

    async def set(self, collection: str, key: str, value: dict[str, Any] | None) -> None:
        self._check("set")
        if value is None:
            self._delete(collection, key)
        else:
            self._write(collection, key, value)

    async def update(self, collection: str, key: str, fields: Mapping[str, Any]) -> None:
        self._check("update")
        entry = self._collections[collection].get(key)
        merged = dict(entry.value) if entry else {}
        merged.update(copy.deepcopy(dict(fields)))
        merged = {k: v for k, v in merged.items() if v is not None}
        self._write(collection, key, merged)

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        self._check("get")
        entry = self._collections[collection].get(key)
        return copy.deepcopy(entry.value) if entry else None

    async def clear(self, collection: str) -> None:
        self._check("clear")
        if self._collections[collection]:
            self._collections[collection].clear()
            self._notify(collection)

    async def watch_first(
        self,
        collection: str,
        on_candidate: CandidateCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        self._check("watch_first")
        subscription = _MemorySubscription(self, collection, on_candidate, on_error)
        self._subscriptions[collection].append(subscription)
        self._notify_one(subscription)
        return subscription

    async def conditional_transform(
        self,
        collection: str,
        key: str,
        transform: TransformFunction,
    ) -> TransformResult:
        self._check("conditional_transform")
        entry = self._collections[collection].get(key)
        current = copy.deepcopy(entry.value) if entry else None

        if self._conflicts > 0:
            self._conflicts -= 1
            logger.debug(
                "Injected transform conflict",
                extra={"collection": collection, "key": key},
            )
            return TransformResult(committed=False, value=current)

        result = transform(copy.deepcopy(current))
        if result is None:
            self._delete(collection, key)
            return TransformResult(committed=True, value=None)

        self._write(collection, key, result)
        return TransformResult(committed=True, value=copy.deepcopy(self._collections[collection][key].value))

    async def snapshot(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        self._check("snapshot")
        return [(key, copy.deepcopy(entry.value)) for key, entry in self._ordered(collection)]

    async def count(self, collection: str) -> int:
        self._check("count")
        return len(self._collections[collection])

    async def ping(self) -> None:
        self._check("ping")

    async def close(self) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.unsubscribe()
        self._closed = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write(self, collection: str, key: str, value: Mapping[str, Any]) -> None:
        entries = self._collections[collection]
        resolved = resolve_server_timestamps(copy.deepcopy(dict(value)), self._clock())
        existing = entries.get(key)
        seq = existing.seq if existing else next(self._seq)
        entries[key] = _Entry(seq=seq, value=resolved)
        self._notify(collection)

    def _delete(self, collection: str, key: str) -> None:
        if self._collections[collection].pop(key, None) is not None:
            self._notify(collection)

    def _ordered(self, collection: str) -> list[tuple[str, _Entry]]:
        return sorted(
            self._collections[collection].items(),
            key=lambda item: order_key(item[0], item[1].value),
        )

    def _first(self, collection: str) -> tuple[str, _Entry] | None:
        entries = self._collections[collection]
        if not entries:
            return None
        return min(entries.items(), key=lambda item: order_key(item[0], item[1].value))

    def _notify(self, collection: str) -> None:
        for subscription in list(self._subscriptions[collection]):
            self._notify_one(subscription)

    def _notify_one(self, subscription: _MemorySubscription) -> None:
        first = self._first(subscription._collection)
        if first is None:
            subscription.last_seq = None
            return

        key, entry = first
        if subscription.last_seq == entry.seq:
            return

        subscription.last_seq = entry.seq
        loop = asyncio.get_running_loop()
        loop.call_soon(subscription.deliver, key, copy.deepcopy(entry.value))

    def _remove_subscription(self, subscription: _MemorySubscription) -> None:
        subscriptions = self._subscriptions[subscription._collection]
        if subscription in subscriptions:
            subscriptions.remove(subscription)
