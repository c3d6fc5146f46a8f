"""
Queue bookkeeping over a backing store.

A Queue binds two partitions under one base location:

- ``{base}/pending``: unclaimed jobs, ordered by priority then insertion.
- ``{base}/started``: claimed jobs keyed by id, with outcome metadata.

It is the only code that writes lifecycle metadata to the started partition.
"""

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from claimqueue.constants import (
    DEFAULT_QUEUE_BASE,
    FIELD_ERROR,
    FIELD_FAILED_AT,
    FIELD_STARTED_AT,
    FIELD_SUCCEEDED_AT,
    METADATA_FIELDS,
    PENDING_PARTITION,
    SPAN_RETRY_FAILED,
    STARTED_PARTITION,
)
from claimqueue.errors import JobError, StoreError
from claimqueue.observability.metrics import get_metrics
from claimqueue.observability.tracing import traced
from claimqueue.store.base import SERVER_TIMESTAMP, BackingStore
from claimqueue.types.job import Job, is_failed_record

logger = logging.getLogger(__name__)


def describe_error(error: Any) -> str:
    """Render a job failure as the string stored in the ``error`` field."""
    if isinstance(error, JobError):
        return str(error)
    if isinstance(error, BaseException):
        message = str(error)
        name = type(error).__name__
        return f"{name}: {message}" if message else name
    return str(error)


def strip_metadata(value: Mapping[str, Any]) -> dict[str, Any]:
    """A raw record without its lifecycle metadata."""
    return {k: v for k, v in value.items() if k not in METADATA_FIELDS}


class Queue:
    """
    Handle on one queue's pending and started partitions.

    Holds no job state of its own; every method reads or writes the store.
    """

    def __init__(self, store: BackingStore, base: str = DEFAULT_QUEUE_BASE):
        """
        Initialize the queue.

        Args:
            store: The backing store shared by producers and workers.
            base: Base location; partitions live underneath it.
        """
        self.store = store
        self.base = base.rstrip("/")
        self.pending = f"{self.base}/{PENDING_PARTITION}"
        self.started = f"{self.base}/{STARTED_PARTITION}"
        self._metrics = get_metrics()

    def __repr__(self) -> str:
        return f"Queue(base={self.base!r})"

    # ------------------------------------------------------------------
    # Producer operations
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job | Mapping[str, Any]) -> str:
        """
        Add a job to the pending partition.

        A job without an id is pushed under a store-generated key, which then
        becomes its id. A job with an id is written under that id, replacing
        any pending job with the same id. Lifecycle metadata is never copied.

        Args:
            job: The job, or a mapping of its fields.

        Returns:
            The job id.
        """
        job = Job.coerce(job)
        record = job.to_pending_record()

        if job.id is None:
            job.id = await self.store.push(self.pending, record)
        else:
            await self.store.set(self.pending, job.id, record)

        self._metrics.record_job_enqueued(self.base)
        logger.debug(
            "Job enqueued",
            extra={"queue": self.base, "job_id": job.id, "priority": job.priority},
        )
        return job.id

    async def remove_pending(self, job_id: str) -> None:
        """Delete one job from the pending partition."""
        await self.store.remove(self.pending, job_id)

    async def remove_started(self, job_id: str) -> None:
        """Delete one job from the started partition."""
        await self.store.remove(self.started, job_id)

    async def clear_pending(self) -> None:
        await self.store.clear(self.pending)

    async def clear_started(self) -> None:
        await self.store.clear(self.started)

    async def clear(self) -> None:
        """Reset both partitions."""
        await self.clear_pending()
        await self.clear_started()
        logger.info("Queue cleared", extra={"queue": self.base})

    async def count_pending(self) -> int:
        return await self.store.count(self.pending)

    async def count_started(self) -> int:
        return await self.store.count(self.started)

    async def get_started(self, job_id: str) -> Job | None:
        """Read one started job, or None if there is none with that id or it is not a valid job."""
        value = await self.store.get(self.started, job_id)
        if value is None:
            return None
        return self._decode(job_id, value)

    async def list_pending(self) -> list[Job]:
        """Snapshot of the pending partition, in claim order."""
        entries = await self.store.snapshot(self.pending)
        jobs = (self._decode(key, value) for key, value in entries)
        return [job for job in jobs if job is not None]

    async def list_started(self) -> list[Job]:
        """Snapshot of the started partition."""
        entries = await self.store.snapshot(self.started)
        jobs = (self._decode(key, value) for key, value in entries)
        return [job for job in jobs if job is not None]

    def _decode(self, key: str, value: dict[str, Any]) -> Job | None:
        try:
            return Job.from_record(key, value)
        except ValidationError as e:
            logger.warning(
                "Skipping a record that is not a valid job",
                extra={"queue": self.base, "job_key": key, "error": str(e)},
            )
            return None

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_failed_jobs(self, max_jobs: int = 0) -> int:
        """
        Move failed jobs from started back to pending.

        Candidates come from one snapshot of the started partition. Each one
        is taken out of started with a conditional transform that only
        succeeds while the entry is still a failed job, so overlapping calls
        never retry the same job twice. The job is then enqueued under its
        original id with its metadata reset.

        Args:
            max_jobs: Stop after this many jobs. 0 means no limit.

        Returns:
            The number of jobs actually retried.

        Raises:
            StoreError: If the store fails. A job whose re-enqueue failed is
                put back into the started partition first.
        """
        with traced(SPAN_RETRY_FAILED, queue=self.base, max_jobs=max_jobs) as span:
            entries = await self.store.snapshot(self.started)
            retried = 0

            for key, value in entries:
                if max_jobs and retried >= max_jobs:
                    break
                if not is_failed_record(value):
                    continue
                if await self._retry_one(key):
                    retried += 1

            span.set_attribute("retried", retried)

        self._metrics.record_jobs_retried(self.base, retried)
        logger.info(
            "Retried failed jobs",
            extra={"queue": self.base, "retried": retried, "max_jobs": max_jobs},
        )
        return retried

    async def _retry_one(self, key: str) -> bool:
        taken: dict[str, Any] | None = None

        def take_if_failed(current: dict[str, Any] | None) -> dict[str, Any] | None:
            nonlocal taken
            taken = current
            if is_failed_record(current):
                return None
            return current

        result = await self.store.conditional_transform(self.started, key, take_if_failed)
        if not result.committed or not is_failed_record(taken):
            logger.debug(
                "Failed job already handled elsewhere",
                extra={"queue": self.base, "job_id": key},
            )
            return False

        try:
            try:
                await self.enqueue(Job.from_record(key, taken))
            except ValidationError:
                # Not decodable as a job: put the raw record back as it was claimed.
                await self.store.set(self.pending, key, strip_metadata(taken))
        except StoreError:
            logger.error(
                "Re-enqueue failed, restoring started entry",
                extra={"queue": self.base, "job_id": key},
            )
            await self.store.set(self.started, key, taken)
            raise
        return True

    # ------------------------------------------------------------------
    # Worker reporting
    # ------------------------------------------------------------------

    async def record_start(self, job: Job) -> None:
        """Write the claimed job into started with ``startedAt`` stamped."""
        await self._record(
            job,
            {
                FIELD_STARTED_AT: SERVER_TIMESTAMP,
                FIELD_SUCCEEDED_AT: None,
                FIELD_FAILED_AT: None,
                FIELD_ERROR: None,
            },
        )

    async def record_success(self, job: Job) -> None:
        """Stamp ``succeededAt`` on the started entry."""
        await self._record(
            job,
            {
                FIELD_SUCCEEDED_AT: SERVER_TIMESTAMP,
                FIELD_FAILED_AT: None,
                FIELD_ERROR: None,
            },
        )

    async def record_failure(self, job: Job, error: Any) -> None:
        """Stamp ``failedAt`` and the error on the started entry."""
        await self._record(
            job,
            {
                FIELD_FAILED_AT: SERVER_TIMESTAMP,
                FIELD_SUCCEEDED_AT: None,
                FIELD_ERROR: describe_error(error),
            },
        )

    async def record_invalid(self, key: str, value: Mapping[str, Any], error: Any) -> None:
        """
        Record a claimed pending entry that could not be read as a job.

        The raw record is written to started under its location key, stamped
        as started and failed, so it stays visible and can be retried.
        """
        record = strip_metadata(value)
        record.update(
            {
                FIELD_STARTED_AT: SERVER_TIMESTAMP,
                FIELD_FAILED_AT: SERVER_TIMESTAMP,
                FIELD_ERROR: describe_error(error),
            }
        )
        await self.store.set(self.started, key, record)

    async def _record(self, job: Job, metadata: dict[str, Any]) -> None:
        if job.id is None:
            raise ValueError("cannot record a job without an id")

        fields = job.to_pending_record()
        fields.update(metadata)
        await self.store.update(self.started, job.id, fields)
