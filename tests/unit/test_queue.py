"""
Unit tests for the Queue.
"""

import asyncio

import pytest

from claimqueue.errors import JobError, StoreError
from claimqueue.queue import Queue, describe_error
from claimqueue.store import MemoryStore
from claimqueue.types.job import Job


class TestQueueEnqueue:
    """Tests for producer operations."""

    def test_partitions(self, queue: Queue):
        """Test the partition locations under the base."""
        assert queue.pending == "test-queue/pending"
        assert queue.started == "test-queue/started"

    async def test_enqueue_assigns_id(self, queue: Queue):
        """Test that a job without an id gets a store-generated one."""
        job = Job.coerce({"message": "hi"})

        job_id = await queue.enqueue(job)

        assert job.id == job_id
        assert len(job_id) == 20
        assert await queue.count_pending() == 1

    async def test_enqueue_mapping(self, queue: Queue):
        """Test that a plain mapping is accepted."""
        job_id = await queue.enqueue({"id": "job-1", "message": "hi"})

        assert job_id == "job-1"
        pending = await queue.list_pending()
        assert [job.payload for job in pending] == [{"message": "hi"}]

    async def test_duplicate_id_overwrites(self, queue: Queue):
        """Test that enqueueing the same id twice keeps the newer job."""
        await queue.enqueue({"id": "dup", "version": 1})
        await queue.enqueue({"id": "dup", "version": 2})

        pending = await queue.list_pending()

        assert len(pending) == 1
        assert pending[0].get("version") == 2

    async def test_enqueue_strips_metadata(self, queue: Queue):
        """Test that lifecycle fields are never written to pending."""
        await queue.enqueue({"id": "j", "startedAt": 1, "failedAt": 2, "error": "x"})

        assert await queue.store.get(queue.pending, "j") == {"id": "j"}

    async def test_pending_order(self, queue: Queue):
        """Test that pending jobs list in claim order."""
        await queue.enqueue({"id": "p5", "priority": 5})
        await queue.enqueue({"id": "p1", "priority": 1})
        await queue.enqueue({"id": "p3", "priority": 3})

        assert [job.id for job in await queue.list_pending()] == ["p1", "p3", "p5"]

    async def test_remove_and_clear(self, queue: Queue):
        """Test removing single jobs and resetting both partitions."""
        await queue.enqueue({"id": "a"})
        await queue.enqueue({"id": "b"})
        await queue.record_start(Job(id="c"))
        await queue.record_start(Job(id="d"))

        await queue.remove_pending("a")
        await queue.remove_started("c")

        assert await queue.count_pending() == 1
        assert await queue.count_started() == 1

        await queue.clear()

        assert await queue.count_pending() == 0
        assert await queue.count_started() == 0


class TestQueueRecording:
    """Tests for the worker reporting hooks."""

    async def test_record_start(self, queue: Queue):
        """Test that start writes the job with a store timestamp."""
        job = Job.coerce({"id": "j", "message": "hi", "priority": 4})

        await queue.record_start(job)

        record = await queue.store.get(queue.started, "j")
        assert record["message"] == "hi"
        assert record["priority"] == 4
        assert isinstance(record["startedAt"], int)
        assert "succeededAt" not in record
        assert "failedAt" not in record

    async def test_record_success(self, queue: Queue):
        """Test that success stamps succeededAt after startedAt."""
        job = Job(id="j")
        await queue.record_start(job)
        await queue.record_success(job)

        started = await queue.get_started("j")

        assert started.succeeded_at > started.started_at
        assert started.failed_at is None
        assert started.is_failed is False

    async def test_record_failure(self, queue: Queue):
        """Test that failure stamps failedAt and the error text."""
        job = Job(id="j")
        await queue.record_start(job)
        await queue.record_failure(job, ValueError("boom"))

        started = await queue.get_started("j")

        assert started.failed_at is not None
        assert started.error == "ValueError: boom"
        assert started.is_failed is True

    async def test_success_after_failure_clears_failure(self, queue: Queue):
        """Test that a job never holds both outcome timestamps."""
        job = Job(id="j")
        await queue.record_start(job)
        await queue.record_failure(job, "first try")
        await queue.record_start(job)
        await queue.record_success(job)

        record = await queue.store.get(queue.started, "j")

        assert "succeededAt" in record
        assert "failedAt" not in record
        assert "error" not in record

    async def test_record_requires_id(self, queue: Queue):
        """Test that recording a job without an id is rejected."""
        with pytest.raises(ValueError):
            await queue.record_start(Job())

    async def test_get_started_missing(self, queue: Queue):
        """Test that an unknown id reads as None."""
        assert await queue.get_started("nope") is None

    def test_describe_error(self):
        """Test how failure values become the stored error text."""
        assert describe_error(RuntimeError("bad")) == "RuntimeError: bad"
        assert describe_error(RuntimeError()) == "RuntimeError"
        assert describe_error(JobError("plain")) == "plain"
        assert describe_error("text") == "text"


class TestQueueRetry:
    """Tests for retrying failed jobs."""

    async def _fail(self, queue: Queue, job_id: str, **fields) -> None:
        job = Job.coerce({"id": job_id, **fields})
        await queue.record_start(job)
        await queue.record_failure(job, "boom")

    async def test_retry_round_trip(self, queue: Queue):
        """Test that a failed job goes back to pending with metadata reset."""
        await self._fail(queue, "j", message="hi", priority=2)

        retried = await queue.retry_failed_jobs()

        assert retried == 1
        assert await queue.get_started("j") is None
        assert await queue.store.get(queue.pending, "j") == {
            "id": "j",
            "message": "hi",
            "priority": 2,
        }

    async def test_retry_skips_unfailed_jobs(self, queue: Queue):
        """Test that running and succeeded jobs are left alone."""
        await queue.record_start(Job(id="running"))
        await queue.record_start(Job(id="done"))
        await queue.record_success(Job(id="done"))
        await self._fail(queue, "failed")

        retried = await queue.retry_failed_jobs()

        assert retried == 1
        assert await queue.count_started() == 2
        assert [job.id for job in await queue.list_pending()] == ["failed"]

    async def test_retry_max_jobs(self, queue: Queue):
        """Test that max_jobs bounds the number retried."""
        for job_id in ("a", "b", "c"):
            await self._fail(queue, job_id)

        assert await queue.retry_failed_jobs(max_jobs=2) == 2
        assert await queue.count_pending() == 2
        assert await queue.retry_failed_jobs() == 1

    async def test_retry_nothing(self, queue: Queue):
        """Test retrying with no failed jobs."""
        assert await queue.retry_failed_jobs() == 0

    async def test_overlapping_retries_retry_once(self, store: MemoryStore):
        """Test that two concurrent retry calls never enqueue a job twice."""
        first = Queue(store, "shared")
        second = Queue(store, "shared")
        for job_id in ("a", "b", "c"):
            await self._fail(first, job_id)

        counts = await asyncio.gather(
            first.retry_failed_jobs(),
            second.retry_failed_jobs(),
        )

        assert sum(counts) == 3
        assert await first.count_pending() == 3
        assert await first.count_started() == 0

    async def test_retry_restores_started_on_enqueue_failure(
        self,
        queue: Queue,
        store: MemoryStore,
    ):
        """Test that a failed re-enqueue leaves the failed job where it was."""
        await self._fail(queue, "j", message="hi")
        store.fail_next("set")

        with pytest.raises(StoreError):
            await queue.retry_failed_jobs()

        started = await queue.get_started("j")
        assert started.is_failed is True
        assert started.get("message") == "hi"
        assert await queue.count_pending() == 0

    async def test_failed_job_is_taken_once(self, queue: Queue):
        """Test that a second retry of the same snapshot entry is a no-op."""
        await self._fail(queue, "j")

        assert await queue._retry_one("j") is True
        assert await queue._retry_one("j") is False
        assert await queue.count_pending() == 1

    async def test_retry_invalid_record(self, queue: Queue, store: MemoryStore):
        """Test that a failed record that is not a job goes back to pending unchanged."""
        await queue.record_invalid("bad", {"id": 5, "message": "hi"}, ValueError("not a job"))

        assert await queue.list_started() == []
        assert await queue.get_started("bad") is None
        assert await queue.count_started() == 1

        assert await queue.retry_failed_jobs() == 1
        assert await store.get(queue.pending, "bad") == {"id": 5, "message": "hi"}
        assert await queue.count_started() == 0
