"""
SQL backing store.

Implements the store contract over one SQLAlchemy table, so workers on
different machines can share a PostgreSQL (or, for development, SQLite)
database with no other coordination channel.

Conditional transforms are optimistic compare-and-swap writes guarded by a
per-row version column. First-item subscriptions poll.
"""

import asyncio
import copy
import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from claimqueue.constants import FIELD_PRIORITY
from claimqueue.errors import StoreError
from claimqueue.store.base import (
    BackingStore,
    CandidateCallback,
    ErrorCallback,
    Subscription,
    TransformFunction,
    TransformResult,
    contains_server_timestamp,
    resolve_server_timestamps,
)
from claimqueue.store.connection import create_engine, create_session_factory, is_sqlite
from claimqueue.store.keys import generate_push_key
from claimqueue.store.models import Base, QueueEntry

logger = logging.getLogger(__name__)


def _priority_of(value: Mapping[str, Any]) -> float | None:
    priority = value.get(FIELD_PRIORITY)
    if isinstance(priority, bool) or not isinstance(priority, (int, float)):
        return None
    return float(priority)


class _PollingSubscription(Subscription):
    """
    First-item subscription that polls the database.

    The identity of the first item is its (seq, version) pair, so a key that
    was claimed and written again, or modified in place, is delivered again.
    """

    def __init__(
        self,
        store: "SqlStore",
        collection: str,
        on_candidate: CandidateCallback,
        on_error: ErrorCallback | None,
        interval: float,
    ):
        self._store = store
        self._collection = collection
        self._on_candidate = on_candidate
        self._on_error = on_error
        self._interval = interval
        self._active = True
        self._last: tuple[int, int] | None = None
        self._wake = asyncio.Event()
        self.task = asyncio.create_task(self._run())

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._wake.set()
            self._store._forget(self)

    def refresh(self) -> None:
        if self._active:
            self._last = None
            self._wake.set()

    async def _run(self) -> None:
        while self._active:
            self._wake.clear()
            try:
                first = await self._store._first(self._collection)
            except StoreError as e:
                if not self._active:
                    return
                logger.error(
                    "First-item subscription failed",
                    extra={"collection": self._collection, "error": str(e)},
                )
                self.unsubscribe()
                if self._on_error is not None:
                    self._on_error(e)
                return

            if not self._active:
                return

            if first is None:
                self._last = None
            else:
                key, value, identity = first
                if identity != self._last:
                    self._last = identity
                    self._on_candidate(key, value)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass


class SqlStore(BackingStore):
    """
    Backing store on a relational database via SQLAlchemy async.

    Every collection lives in the ``queue_entries`` table. Server timestamps
    come from the database clock, so workers on different machines agree.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        poll_interval: float = 0.5,
        max_retries: int = 25,
        echo: bool = False,
    ):
        """
        Initialize the store.

        Args:
            url: SQLAlchemy async database URL.
            pool_size: Connection pool size.
            max_overflow: Pool overflow.
            poll_interval: Seconds between first-item polls.
            max_retries: Attempts for a conditional write before giving up.
            echo: Log SQL statements.
        """
        self._url = url
        self._sqlite = is_sqlite(url)
        self._engine = create_engine(url, pool_size, max_overflow, echo)
        self._session_factory = create_session_factory(self._engine)
        self._poll_interval = poll_interval
        self._max_retries = max_retries
        self._subscriptions: set[_PollingSubscription] = set()

    @property
    def engine(self):
        """The underlying async engine."""
        return self._engine

    async def create_schema(self) -> None:
        """Create the queue table if it does not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Queue schema ready")

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession]:
        """Session that commits on success and maps driver errors to StoreError."""
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"{operation} failed: {e}", operation) from e

    def _insert(self):
        return sqlite_insert if self._sqlite else pg_insert

    async def _server_now_ms(self, session: AsyncSession) -> int:
        if self._sqlite:
            stmt = select(func.strftime("%Y-%m-%d %H:%M:%f", "now"))
        else:
            stmt = select(func.now())
        value = (await session.execute(stmt)).scalar_one()

        if isinstance(value, str):
            moment = datetime.fromisoformat(value).replace(tzinfo=timezone.utc)
        elif value.tzinfo is None:
            moment = value.replace(tzinfo=timezone.utc)
        else:
            moment = value
        return int(moment.timestamp() * 1000)

    async def _resolve(self, session: AsyncSession, value: dict[str, Any]) -> dict[str, Any]:
        if not contains_server_timestamp(value):
            return value
        return resolve_server_timestamps(value, await self._server_now_ms(session))

    async def _select_row(
        self,
        session: AsyncSession,
        collection: str,
        key: str,
    ) -> tuple[int, int, dict[str, Any]] | None:
        stmt = select(QueueEntry.seq, QueueEntry.version, QueueEntry.value).where(
            QueueEntry.collection == collection,
            QueueEntry.key == key,
        )
        row = (await session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row.seq, row.version, dict(row.value)

    async def _insert_row(
        self,
        session: AsyncSession,
        collection: str,
        key: str,
        value: dict[str, Any],
    ) -> bool:
        """Insert a new row. Returns False if another writer created the key first."""
        try:
            await session.execute(
                self._insert()(QueueEntry).values(
                    collection=collection,
                    key=key,
                    value=value,
                    priority=_priority_of(value),
                    version=1,
                )
            )
        except IntegrityError:
            await session.rollback()
            return False
        return True

    async def _swap_row(
        self,
        session: AsyncSession,
        seq: int,
        version: int,
        value: dict[str, Any] | None,
    ) -> bool:
        """Write or delete a row only if its version is unchanged."""
        guard = (QueueEntry.seq == seq, QueueEntry.version == version)
        if value is None:
            result = await session.execute(delete(QueueEntry).where(*guard))
        else:
            result = await session.execute(
                update(QueueEntry)
                .where(*guard)
                .values(value=value, priority=_priority_of(value), version=version + 1)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    async def push(self, collection: str, value: dict[str, Any]) -> str:
        key = generate_push_key()
        async with self._session("push") as session:
            value = await self._resolve(session, dict(value))
            if not await self._insert_row(session, collection, key, value):
                raise StoreError(f"push key collision on {key}", "push")
        return key

    async def set(self, collection: str, key: str, value: dict[str, Any] | None) -> None:
        async with self._session("set") as session:
            if value is None:
                await session.execute(
                    delete(QueueEntry).where(
                        QueueEntry.collection == collection,
                        QueueEntry.key == key,
                    )
                )
                return

            value = await self._resolve(session, dict(value))
            stmt = self._insert()(QueueEntry).values(
                collection=collection,
                key=key,
                value=value,
                priority=_priority_of(value),
                version=1,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["collection", "key"],
                set_={
                    "value": stmt.excluded.value,
                    "priority": stmt.excluded.priority,
                    "version": QueueEntry.version + 1,
                },
            )
            await session.execute(stmt)

    async def update(self, collection: str, key: str, fields: Mapping[str, Any]) -> None:
        for _ in range(self._max_retries):
            async with self._session("update") as session:
                row = await self._select_row(session, collection, key)
                merged = dict(row[2]) if row else {}
                merged.update(copy.deepcopy(dict(fields)))
                merged = {k: v for k, v in merged.items() if v is not None}
                merged = await self._resolve(session, merged)

                if row is None:
                    if await self._insert_row(session, collection, key, merged):
                        return
                    continue

                seq, version, _ = row
                if await self._swap_row(session, seq, version, merged):
                    return

        raise StoreError(
            f"update of {collection}/{key} lost {self._max_retries} races in a row",
            "update",
        )

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        async with self._session("get") as session:
            row = await self._select_row(session, collection, key)
        return row[2] if row else None

    async def clear(self, collection: str) -> None:
        async with self._session("clear") as session:
            await session.execute(
                delete(QueueEntry).where(QueueEntry.collection == collection)
            )

    async def watch_first(
        self,
        collection: str,
        on_candidate: CandidateCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        subscription = _PollingSubscription(
            self,
            collection,
            on_candidate,
            on_error,
            self._poll_interval,
        )
        self._subscriptions.add(subscription)
        return subscription

    async def conditional_transform(
        self,
        collection: str,
        key: str,
        transform: TransformFunction,
    ) -> TransformResult:
        current: dict[str, Any] | None = None

        for attempt in range(self._max_retries):
            async with self._session("conditional_transform") as session:
                row = await self._select_row(session, collection, key)
                current = row[2] if row else None
                result = transform(copy.deepcopy(current))

                if row is None:
                    if result is None:
                        return TransformResult(committed=True, value=None)
                    result = await self._resolve(session, dict(result))
                    if await self._insert_row(session, collection, key, result):
                        return TransformResult(committed=True, value=result)
                    continue

                seq, version, _ = row
                if result is not None:
                    result = await self._resolve(session, dict(result))
                if await self._swap_row(session, seq, version, result):
                    return TransformResult(committed=True, value=result)

            logger.debug(
                "Conditional transform raced, retrying",
                extra={"collection": collection, "key": key, "attempt": attempt + 1},
            )

        return TransformResult(committed=False, value=current)

    async def snapshot(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        stmt = (
            select(QueueEntry.key, QueueEntry.value)
            .where(QueueEntry.collection == collection)
            .order_by(QueueEntry.priority.asc().nulls_first(), QueueEntry.key.asc())
        )
        async with self._session("snapshot") as session:
            rows = (await session.execute(stmt)).all()
        return [(row.key, dict(row.value)) for row in rows]

    async def count(self, collection: str) -> int:
        stmt = (
            select(func.count())
            .select_from(QueueEntry)
            .where(QueueEntry.collection == collection)
        )
        async with self._session("count") as session:
            return (await session.execute(stmt)).scalar() or 0

    async def ping(self) -> None:
        async with self._session("ping") as session:
            await session.execute(select(1))

    async def close(self) -> None:
        subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.unsubscribe()
        await asyncio.gather(*(s.task for s in subscriptions), return_exceptions=True)
        await self._engine.dispose()
        logger.info("Store connection closed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _first(self, collection: str) -> tuple[str, dict[str, Any], tuple[int, int]] | None:
        stmt = (
            select(QueueEntry.key, QueueEntry.value, QueueEntry.seq, QueueEntry.version)
            .where(QueueEntry.collection == collection)
            .order_by(QueueEntry.priority.asc().nulls_first(), QueueEntry.key.asc())
            .limit(1)
        )
        async with self._session("watch_first") as session:
            row = (await session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row.key, dict(row.value), (row.seq, row.version)

    def _forget(self, subscription: _PollingSubscription) -> None:
        self._subscriptions.discard(subscription)
