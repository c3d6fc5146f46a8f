"""
Integration tests for the SQL backing store on SQLite.
"""

import asyncio
import time
from pathlib import Path

import pytest

from claimqueue.config import Settings
from claimqueue.errors import StoreError
from claimqueue.store import SERVER_TIMESTAMP, MemoryStore, SqlStore, create_store


class TestSqlStoreOperations:
    """Tests for reads and writes."""

    async def test_push_and_get(self, sql_store: SqlStore):
        """Test that push stores a value under a fresh key."""
        key = await sql_store.push("things", {"a": 1, "nested": {"b": [1, 2]}})

        assert len(key) == 20
        assert await sql_store.get("things", key) == {"a": 1, "nested": {"b": [1, 2]}}
        assert await sql_store.count("things") == 1

    async def test_set_overwrites_and_deletes(self, sql_store: SqlStore):
        """Test set as upsert, and None as delete."""
        await sql_store.set("things", "k", {"v": 1})
        await sql_store.set("things", "k", {"v": 2})

        assert await sql_store.get("things", "k") == {"v": 2}
        assert await sql_store.count("things") == 1

        await sql_store.set("things", "k", None)

        assert await sql_store.get("things", "k") is None

    async def test_update_merges_fields(self, sql_store: SqlStore):
        """Test field-by-field merge, with None removing a field."""
        await sql_store.set("things", "k", {"a": 1, "b": 2})
        await sql_store.update("things", "k", {"b": None, "c": 3})
        await sql_store.update("things", "new", {"x": 1})

        assert await sql_store.get("things", "k") == {"a": 1, "c": 3}
        assert await sql_store.get("things", "new") == {"x": 1}

    async def test_server_timestamp(self, sql_store: SqlStore):
        """Test that the marker is replaced by the database clock in milliseconds."""
        before = int(time.time() * 1000) - 60_000

        await sql_store.set("things", "k", {"at": SERVER_TIMESTAMP})

        stamped = (await sql_store.get("things", "k"))["at"]
        assert isinstance(stamped, int)
        assert before < stamped < before + 180_000

    async def test_snapshot_order(self, sql_store: SqlStore):
        """Test that entries without priority come first, then by priority, then key."""
        await sql_store.set("things", "c", {"priority": 5})
        await sql_store.set("things", "b", {"priority": 1})
        await sql_store.set("things", "z", {})
        await sql_store.set("things", "y", {})
        await sql_store.set("things", "a", {"priority": 3})

        keys = [key for key, _ in await sql_store.snapshot("things")]

        assert keys == ["y", "z", "b", "a", "c"]

    async def test_collections_are_separate(self, sql_store: SqlStore):
        """Test that the same key in two collections is two records."""
        await sql_store.set("one", "k", {"v": 1})
        await sql_store.set("two", "k", {"v": 2})

        await sql_store.clear("one")

        assert await sql_store.count("one") == 0
        assert await sql_store.get("two", "k") == {"v": 2}


class TestSqlStoreTransform:
    """Tests for conditional transforms."""

    async def test_transform_writes_result(self, sql_store: SqlStore):
        """Test a committed read-modify-write."""
        await sql_store.set("things", "k", {"n": 1})

        result = await sql_store.conditional_transform(
            "things", "k", lambda current: {"n": current["n"] + 1}
        )

        assert result.committed is True
        assert await sql_store.get("things", "k") == {"n": 2}

    async def test_transform_to_none_deletes(self, sql_store: SqlStore):
        """Test that returning None deletes the record."""
        await sql_store.set("things", "k", {"n": 1})

        result = await sql_store.conditional_transform("things", "k", lambda current: None)

        assert result.committed is True
        assert result.value is None
        assert await sql_store.get("things", "k") is None

    async def test_transform_creates_missing(self, sql_store: SqlStore):
        """Test that a transform may create a record."""
        result = await sql_store.conditional_transform(
            "things", "new", lambda current: {"created": current is None}
        )

        assert result.committed is True
        assert await sql_store.get("things", "new") == {"created": True}

    async def test_concurrent_increments(self, sql_store: SqlStore):
        """Test that racing transforms never lose an update."""
        await sql_store.set("things", "counter", {"n": 0})

        results = await asyncio.gather(
            *(
                sql_store.conditional_transform(
                    "things", "counter", lambda current: {"n": current["n"] + 1}
                )
                for _ in range(10)
            )
        )

        committed = sum(1 for result in results if result.committed)
        assert (await sql_store.get("things", "counter"))["n"] == committed

    async def test_concurrent_claims(self, sql_store: SqlStore):
        """Test that only one of several racing deletes reads the record."""
        await sql_store.set("things", "job", {"n": 1})
        claimed = []

        async def claim() -> None:
            seen = None

            def take(current):
                nonlocal seen
                seen = current
                return None

            result = await sql_store.conditional_transform("things", "job", take)
            if result.committed and seen is not None:
                claimed.append(seen)

        await asyncio.gather(*(claim() for _ in range(5)))

        assert claimed == [{"n": 1}]


class TestSqlStoreSubscriptions:
    """Tests for polling first-item subscriptions."""

    async def test_delivers_first_then_next(self, sql_store: SqlStore, wait_for):
        """Test delivery of the first item and of its successor after removal."""
        await sql_store.set("things", "b", {"priority": 2})
        await sql_store.set("things", "a", {"priority": 1})
        seen = []

        subscription = await sql_store.watch_first("things", lambda key, value: seen.append(key))
        await wait_for(lambda: seen == ["a"])

        await sql_store.remove("things", "a")
        await wait_for(lambda: seen == ["a", "b"])

        subscription.unsubscribe()
        assert subscription.active is False

    async def test_no_delivery_when_first_unchanged(self, sql_store: SqlStore, wait_for):
        """Test that a later item does not trigger another delivery."""
        await sql_store.set("things", "a", {"priority": 1})
        seen = []
        subscription = await sql_store.watch_first("things", lambda key, value: seen.append(key))
        await wait_for(lambda: seen == ["a"])

        await sql_store.set("things", "b", {"priority": 2})
        await asyncio.sleep(0.1)

        assert seen == ["a"]
        subscription.unsubscribe()

    async def test_rewritten_key_is_delivered_again(self, sql_store: SqlStore, wait_for):
        """Test that a key deleted and written again counts as a new first item."""
        await sql_store.set("things", "a", {})
        seen = []
        subscription = await sql_store.watch_first("things", lambda key, value: seen.append(key))
        await wait_for(lambda: seen == ["a"])

        await sql_store.remove("things", "a")
        await asyncio.sleep(0.05)
        await sql_store.set("things", "a", {})

        await wait_for(lambda: seen == ["a", "a"])
        subscription.unsubscribe()

    async def test_refresh_redelivers(self, sql_store: SqlStore, wait_for):
        """Test that refresh delivers an unchanged first item again."""
        await sql_store.set("things", "a", {})
        seen = []
        subscription = await sql_store.watch_first("things", lambda key, value: seen.append(key))
        await wait_for(lambda: seen == ["a"])

        subscription.refresh()

        await wait_for(lambda: seen == ["a", "a"])
        subscription.unsubscribe()

    async def test_close_stops_subscriptions(self, sqlite_url: str):
        """Test that closing the store ends every subscription."""
        store = SqlStore(sqlite_url, poll_interval=0.02)
        await store.create_schema()
        subscription = await store.watch_first("things", lambda key, value: None)

        await store.close()

        assert subscription.active is False


class TestSqlStoreErrors:
    """Tests for error mapping."""

    async def test_driver_errors_become_store_errors(self, tmp_path: Path):
        """Test that an unreachable database raises StoreError."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'queue.db'}"
        store = SqlStore(url)

        with pytest.raises(StoreError) as exc_info:
            await store.count("things")

        assert exc_info.value.operation == "count"
        await store.close()

    async def test_ping(self, sql_store: SqlStore):
        """Test that ping succeeds on a working database."""
        await sql_store.ping()


class TestCreateStore:
    """Tests for building a store from settings."""

    async def test_memory_url(self):
        """Test that the memory URL gives an in-memory store."""
        store = await create_store(Settings(store_url="memory://"))

        assert isinstance(store, MemoryStore)
        await store.close()

    async def test_sqlite_url(self, sqlite_url: str):
        """Test that a database URL gives a ready SQL store."""
        store = await create_store(
            Settings(store_url=sqlite_url, store_poll_interval_seconds=0.05)
        )

        assert isinstance(store, SqlStore)
        assert await store.count("anything") == 0
        await store.close()
