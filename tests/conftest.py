"""
Pytest configuration and shared fixtures.
"""

import asyncio
import itertools
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from claimqueue.api.main import create_app
from claimqueue.queue import Queue
from claimqueue.store import MemoryStore, SqlStore
from claimqueue.types.job import Job
from claimqueue.worker.worker import Worker, WorkerListener


async def _wait_for(
    predicate: Callable[[], bool],
    timeout: float = 3.0,
    interval: float = 0.01,
) -> None:
    """Poll until predicate() is true, failing the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


class EventRecorder(WorkerListener):
    """Records every worker notification as (hook, worker name, detail)."""

    def __init__(self):
        self.events: list[tuple[str, str, Any]] = []

    async def on_start(self, worker: Worker, job: Job) -> None:
        self.events.append(("start", worker.name, job.id))

    async def on_success(self, worker: Worker, job: Job) -> None:
        self.events.append(("success", worker.name, job.id))

    async def on_failure(self, worker: Worker, job: Job, error: BaseException) -> None:
        self.events.append(("failure", worker.name, job.id))

    async def on_finish(self, worker: Worker, job: Job) -> None:
        self.events.append(("finish", worker.name, job.id))

    async def on_idle(self, worker: Worker) -> None:
        self.events.append(("idle", worker.name, None))

    async def on_error(self, worker: Worker, error: Exception) -> None:
        self.events.append(("error", worker.name, error))

    def of(self, hook: str) -> list[tuple[str, str, Any]]:
        return [event for event in self.events if event[0] == hook]

    def job_ids(self, hook: str) -> list[Any]:
        return [event[2] for event in self.of(hook)]


@pytest.fixture
def wait_for() -> Callable[..., Any]:
    """The polling helper, for tests that wait on asynchronous progress."""
    return _wait_for


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def clock() -> Callable[[], int]:
    """A store clock that ticks one millisecond per reading."""
    ticks = itertools.count(1_700_000_000_000)
    return lambda: next(ticks)


@pytest_asyncio.fixture
async def store(clock: Callable[[], int]) -> AsyncGenerator[MemoryStore]:
    """An in-memory backing store."""
    store = MemoryStore(clock=clock)
    yield store
    await store.close()


@pytest.fixture
def queue(store: MemoryStore) -> Queue:
    """A queue on the in-memory store."""
    return Queue(store, "test-queue")


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """A fresh SQLite database file for each test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


@pytest_asyncio.fixture
async def sql_store(sqlite_url: str) -> AsyncGenerator[SqlStore]:
    """A SQL backing store on SQLite with fast polling."""
    store = SqlStore(sqlite_url, poll_interval=0.02)
    await store.create_schema()
    yield store
    await store.close()


@pytest.fixture
def sql_queue(sql_store: SqlStore) -> Queue:
    """A queue on the SQL store."""
    return Queue(sql_store, "test-queue")


@pytest.fixture
def app(queue: Queue) -> FastAPI:
    """Create a FastAPI app serving the in-memory queue."""
    return create_app(queue=queue)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_job() -> dict[str, Any]:
    """Create a sample job."""
    return {
        "type": "echo",
        "message": "Hello, World!",
    }
