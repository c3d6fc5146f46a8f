"""
Queue worker.

A worker performs jobs one at a time, as fast as it can claim them from a
queue's pending partition. Claims are optimistic: the worker deletes its
candidate with a conditional transform, and whoever's transform commits while
the job is still there owns it. Workers never block or talk to each other.

The worker subscribes to the first pending item. Each notification replaces
the current candidate and, if the worker is not busy, starts a claim. When a
claim is lost the worker waits for the next notification.
"""

import asyncio
import inspect
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from pydantic import ValidationError

from claimqueue.constants import (
    SPAN_CLAIM_JOB,
    SPAN_EXECUTE_JOB,
    ClaimOutcome,
    WorkerState,
)
from claimqueue.errors import JobError, StoreError, WorkerStateError
from claimqueue.observability.logging import job_log_context
from claimqueue.observability.metrics import get_metrics
from claimqueue.observability.tracing import traced
from claimqueue.queue import Queue
from claimqueue.store.base import Subscription
from claimqueue.types.job import Job

logger = logging.getLogger(__name__)

# done(error=None)
DoneCallback = Callable[..., None]
# perform_job(job, done), plain or coroutine function
PerformJob = Callable[[Job, DoneCallback], Awaitable[None] | None]

_worker_numbers = itertools.count(1)


class WorkerListener:
    """
    Receives a worker's outcome notifications.

    Subclass and override the hooks you need; the defaults do nothing. A hook
    that raises is logged and otherwise ignored.
    """

    async def on_start(self, worker: "Worker", job: Job) -> None:
        """A claimed job is about to be performed."""

    async def on_success(self, worker: "Worker", job: Job) -> None:
        """A job completed without error."""

    async def on_failure(self, worker: "Worker", job: Job, error: BaseException) -> None:
        """A job completed with an error."""

    async def on_finish(self, worker: "Worker", job: Job) -> None:
        """A job completed, either way."""

    async def on_idle(self, worker: "Worker") -> None:
        """The worker ran out of work after performing at least one job."""

    async def on_error(self, worker: "Worker", error: Exception) -> None:
        """The worker hit a store error and stopped for good."""


class Worker:
    """
    Claims and performs jobs from one queue, strictly one at a time.

    Attributes:
        queue: The queue jobs are claimed from and reported to.
        perform_job: Called as ``perform_job(job, done)``. It must call
            ``done()`` on success or ``done(error)`` on failure, exactly once.
            May be a coroutine function, in which case it is awaited; raising
            before calling ``done`` counts as a failure.
        name: Label used in logs.
        worker_id: Pool-assigned number, set by a Runner.
    """

    def __init__(
        self,
        queue: Queue,
        perform_job: PerformJob,
        listeners: Iterable[WorkerListener] = (),
        name: str | None = None,
    ):
        if not callable(perform_job):
            raise TypeError("perform_job must be callable")

        self.queue = queue
        self.perform_job = perform_job
        self.name = name or f"worker-{next(_worker_numbers)}"
        self.worker_id: int | None = None

        self._listeners: list[WorkerListener] = list(listeners)
        self._state = WorkerState.IDLE
        self._subscription: Subscription | None = None
        self._candidate: tuple[str, dict[str, Any]] | None = None
        self._current_job: Job | None = None
        self._busy = False
        self._stopped = False
        self._failed = False
        self._success_count = 0
        self._failure_count = 0
        self._task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._settled = asyncio.Event()
        self._settled.set()
        self._metrics = get_metrics()

    def __repr__(self) -> str:
        return f"<Worker {self.name} {self.queue.base} {self._state}>"

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_busy(self) -> bool:
        """True while claiming or performing a job."""
        return self._busy

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def current_job(self) -> Job | None:
        """The job being performed, if any."""
        return self._current_job

    def add_listener(self, listener: WorkerListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: WorkerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start watching the pending partition.

        Calling start on a worker that is already watching does nothing.

        Raises:
            WorkerStateError: If the worker was stopped.
        """
        if self._stopped:
            raise WorkerStateError(f"{self.name} was stopped and cannot be restarted")
        if self._subscription is not None:
            return

        self._state = WorkerState.WATCHING
        try:
            self._subscription = await self.queue.store.watch_first(
                self.queue.pending,
                self._on_candidate,
                self._on_subscription_error,
            )
        except StoreError as e:
            await self._fatal(e)
            return

        logger.info(
            "Worker started",
            extra={"worker": self.name, "queue": self.queue.base},
        )

    async def stop(self) -> None:
        """
        Stop claiming jobs.

        The subscription is cancelled at once. If a job is being claimed or
        performed, this returns after it has finished and been reported.
        Once this returns the worker performs no further job.
        """
        self._stopped = True
        self._candidate = None
        self._unsubscribe()

        if self._busy and self._task is not asyncio.current_task():
            logger.info(
                "Worker waiting for in-flight job before stopping",
                extra={"worker": self.name, "job_id": self._job_id()},
            )
            await self._settled.wait()

        if not self._busy:
            self._state = WorkerState.STOPPED
        logger.info(
            "Worker stopped",
            extra={
                "worker": self.name,
                "succeeded": self._success_count,
                "failed": self._failure_count,
            },
        )

    def _unsubscribe(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _job_id(self) -> str | None:
        return self._current_job.id if self._current_job else None

    # ------------------------------------------------------------------
    # Notifications from the store
    # ------------------------------------------------------------------

    def _on_candidate(self, key: str, value: dict[str, Any]) -> None:
        if self._stopped:
            return
        self._candidate = (key, value)
        self._try_to_work()

    def _on_subscription_error(self, error: Exception) -> None:
        self._subscription = None
        self._spawn(self._fatal(error))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Claim and run loop
    # ------------------------------------------------------------------

    def _try_to_work(self) -> None:
        if self._busy or self._stopped or self._candidate is None:
            return
        self._busy = True
        self._settled.clear()
        self._task = asyncio.create_task(self._work())

    async def _work(self) -> None:
        ran_job = False
        try:
            while self._candidate is not None and not self._stopped:
                key, _ = self._candidate
                self._candidate = None

                job = await self._claim(key)
                if job is None:
                    continue

                await self._run_job(job)
                ran_job = True

            if ran_job and not self._failed:
                logger.debug("Worker idle", extra={"worker": self.name})
                await self._emit("on_idle")
        except StoreError as e:
            await self._fatal(e)
        except Exception as e:
            logger.exception(
                "Unexpected error in worker loop",
                extra={"worker": self.name, "job_id": self._job_id()},
            )
            await self._fatal(e)
        finally:
            self._busy = False
            self._current_job = None
            self._state = WorkerState.STOPPED if self._stopped else WorkerState.WATCHING
            self._settled.set()

        self._try_to_work()

    async def _claim(self, key: str) -> Job | None:
        """
        Try to take ownership of the pending job at key.

        Returns:
            The claimed job, or None if another worker got there first.

        Raises:
            StoreError: If the store failed, as opposed to the race being lost.
        """
        self._state = WorkerState.CLAIMING
        claimed: dict[str, Any] | None = None

        def claim_job(current: dict[str, Any] | None) -> None:
            nonlocal claimed
            claimed = current
            return None

        with traced(SPAN_CLAIM_JOB, worker=self.name, queue=self.queue.base, job_key=key) as span:
            result = await self.queue.store.conditional_transform(
                self.queue.pending, key, claim_job
            )

            won = result.committed and claimed is not None
            span.set_attribute("outcome", (ClaimOutcome.WON if won else ClaimOutcome.LOST).value)

        if not won:
            self._metrics.record_claim(self.queue.base, ClaimOutcome.LOST)
            logger.debug(
                "Claim lost",
                extra={"worker": self.name, "job_key": key, "committed": result.committed},
            )
            if not result.committed and self._subscription is not None:
                # The first item may not have changed identity.
                self._subscription.refresh()
            return None

        self._metrics.record_claim(self.queue.base, ClaimOutcome.WON)
        try:
            job = Job.from_record(key, claimed)
        except ValidationError as e:
            logger.error(
                "Claimed a record that is not a valid job, recording it as failed",
                extra={"worker": self.name, "job_key": key, "record": claimed, "error": str(e)},
            )
            await self.queue.record_invalid(key, claimed, e)
            return None

        logger.debug("Claim won", extra={"worker": self.name, "job_id": job.id})
        return job

    async def _run_job(self, job: Job) -> None:
        self._current_job = job
        self._state = WorkerState.RUNNING

        with job_log_context(self.name, self.queue.base, job.id):
            try:
                await self.queue.record_start(job)
            except StoreError:
                logger.error(
                    "Could not record start of a claimed job, it must be re-enqueued by hand",
                    extra={"record": job.to_record()},
                )
                raise

            logger.info("Job started")
            await self._emit("on_start", job)

            start_time = time.monotonic()
            with traced(SPAN_EXECUTE_JOB, worker=self.name, job_id=job.id) as span:
                error = await self._perform(job)
                span.set_attribute("success", error is None)

            await self._finish_job(job, error, time.monotonic() - start_time)

    async def _perform(self, job: Job) -> BaseException | None:
        """Call perform_job and wait for its completion callback."""
        finished: asyncio.Future = asyncio.get_running_loop().create_future()

        def done(error: Any = None) -> None:
            if finished.done():
                logger.error(
                    "The completion callback given to perform_job was called more than once",
                    extra={"worker": self.name, "job_id": job.id},
                )
                return
            if error is not None and not isinstance(error, BaseException):
                error = JobError(str(error))
            finished.set_result(error)

        try:
            result = self.perform_job(job, done)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            if finished.done():
                logger.exception(
                    "perform_job raised after completing",
                    extra={"worker": self.name, "job_id": job.id},
                )
            else:
                finished.set_result(e)

        return await finished

    async def _finish_job(
        self,
        job: Job,
        error: BaseException | None,
        duration: float,
    ) -> None:
        if error is not None:
            self._failure_count += 1
            self._metrics.record_job_completed(self.queue.base, "failed", duration)
            logger.warning(
                "Job failed",
                extra={
                    "worker": self.name,
                    "job_id": job.id,
                    "error": str(error),
                    "duration": f"{duration:.3f}s",
                },
            )
            record = self.queue.record_failure(job, error)
            outcome: tuple[Any, ...] = ("on_failure", job, error)
        else:
            self._success_count += 1
            self._metrics.record_job_completed(self.queue.base, "succeeded", duration)
            logger.info(
                "Job succeeded",
                extra={"worker": self.name, "job_id": job.id, "duration": f"{duration:.3f}s"},
            )
            record = self.queue.record_success(job)
            outcome = ("on_success", job)

        # A failed write still reports the outcome before the error propagates.
        try:
            await record
        finally:
            await self._emit(*outcome)
            await self._emit("on_finish", job)
            self._current_job = None

    # ------------------------------------------------------------------
    # Errors and notifications
    # ------------------------------------------------------------------

    async def _fatal(self, error: Exception) -> None:
        if self._failed:
            return
        self._failed = True
        self._stopped = True
        self._candidate = None
        self._unsubscribe()
        if not self._busy:
            self._state = WorkerState.STOPPED

        self._metrics.record_worker_error(self.queue.base)
        logger.error(
            "Worker stopped after store error",
            extra={
                "worker": self.name,
                "queue": self.queue.base,
                "operation": getattr(error, "operation", None),
                "error": str(error),
            },
        )
        await self._emit("on_error", error)

    async def _emit(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                await getattr(listener, hook)(self, *args)
            except Exception:
                logger.exception(
                    "Worker listener raised",
                    extra={"worker": self.name, "hook": hook},
                )
