"""
Worker pool runner.

The Runner keeps a target number of workers running against a queue. It can
scale the pool up or down gracefully, and replaces any worker that stops
after a store error with a fresh one.

Run as a process with ``python -m claimqueue.runner.main``: workers perform
jobs with the handler registry, and stop cleanly on SIGTERM/SIGINT.
"""

import asyncio
import importlib
import itertools
import logging
import signal
from collections.abc import Callable

from prometheus_client import start_http_server

from claimqueue.config import get_settings
from claimqueue.errors import InvalidWorkerError
from claimqueue.observability.logging import setup_logging
from claimqueue.observability.metrics import get_metrics, setup_metrics
from claimqueue.observability.tracing import instrument_sqlalchemy, setup_tracing
from claimqueue.queue import Queue
from claimqueue.store import SqlStore, create_store
from claimqueue.types.job import Job
from claimqueue.worker.handlers import dispatch_job
from claimqueue.worker.worker import Worker, WorkerListener

logger = logging.getLogger(__name__)

# create_worker(worker_id) -> Worker
WorkerFactory = Callable[[int], Worker]


class _PoolListener(WorkerListener):
    """Watches pool members: logs their activity and replaces failed ones."""

    def __init__(self, runner: "Runner"):
        self._runner = runner

    async def on_start(self, worker: Worker, job: Job) -> None:
        logger.debug(
            "Pool worker started job",
            extra={"worker": worker.name, "worker_id": worker.worker_id, "job_id": job.id},
        )

    async def on_failure(self, worker: Worker, job: Job, error: BaseException) -> None:
        logger.info(
            "Pool worker job failed",
            extra={"worker": worker.name, "job_id": job.id, "error": str(error)},
        )

    async def on_idle(self, worker: Worker) -> None:
        logger.debug("Pool worker idle", extra={"worker": worker.name})

    async def on_error(self, worker: Worker, error: Exception) -> None:
        self._runner._schedule_replacement(worker, error)


class Runner:
    """
    Manages a dynamically sized pool of workers.

    Workers are kept oldest first; shrinking the pool stops the oldest ones.
    Pool membership only changes under one lock, but waiting for removed
    workers to finish their jobs happens outside it, so a worker that fails
    while a shrink is draining is still replaced at once.
    """

    def __init__(self, create_worker: WorkerFactory):
        """
        Initialize an empty pool.

        Args:
            create_worker: Called with a new worker id, must return an
                unstarted Worker.
        """
        self._factory = create_worker
        self._workers: list[Worker] = []
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._listener = _PoolListener(self)
        self._replacements: set[asyncio.Task] = set()
        # Bumped by every absolute resize; replacements scheduled earlier are void.
        self._generation = 0
        self._metrics = get_metrics()

    @property
    def workers(self) -> list[Worker]:
        """Pool members, oldest first."""
        return list(self._workers)

    @property
    def size(self) -> int:
        return len(self._workers)

    async def set_number_of_workers(self, count: int) -> list[Worker]:
        """
        Scale the pool to ``count`` workers.

        Replacements for failed workers that are still pending when this is
        called are dropped, so the pool ends up at exactly ``count``.

        Args:
            count: Target size. Negative values count as 0.

        Returns:
            When shrinking, the removed workers, once every one of them has
            stopped. When growing, the new workers, already started.
        """
        return await self._scale(lambda size: max(0, count), absolute=True)

    async def increment_workers(self, count: int = 1) -> list[Worker]:
        return await self._scale(lambda size: size + count)

    async def decrement_workers(self, count: int = 1) -> list[Worker]:
        return await self._scale(lambda size: max(0, size - count))

    async def stop_all_workers(self) -> list[Worker]:
        """Stop every worker; returns them once they have all stopped."""
        return await self.set_number_of_workers(0)

    def create_worker(self, worker_id: int) -> Worker:
        """
        Build one pool member with the factory and attach the pool listener.

        Raises:
            InvalidWorkerError: If the factory did not return a Worker.
        """
        worker = self._factory(worker_id)
        if not isinstance(worker, Worker):
            raise InvalidWorkerError(
                f"Worker factory returned {type(worker).__name__}, expected Worker"
            )

        worker.worker_id = worker_id
        worker.add_listener(self._listener)
        return worker

    async def replace_worker(self, worker: Worker) -> Worker | None:
        """
        Swap a worker that stopped on a store error for a fresh one.

        The failed worker leaves the pool immediately and is not stopped
        again; it already halted itself.

        Returns:
            The replacement, or None if the worker was no longer in the pool
            or no replacement could be built.
        """
        if not self._detach(worker):
            return None
        return await self._add_replacement(worker, self._generation)

    async def wait_for_replacements(self) -> None:
        """Wait until every scheduled replacement has run."""
        while self._replacements:
            await asyncio.gather(*self._replacements, return_exceptions=True)

    def _schedule_replacement(self, worker: Worker, error: Exception) -> None:
        logger.error(
            "Pool worker failed, replacing it",
            extra={"worker": worker.name, "worker_id": worker.worker_id, "error": str(error)},
        )
        if not self._detach(worker):
            return

        task = asyncio.create_task(self._add_replacement(worker, self._generation))
        self._replacements.add(task)
        task.add_done_callback(self._replacements.discard)

    def _detach(self, worker: Worker) -> bool:
        if worker not in self._workers:
            return False
        self._workers.remove(worker)
        self._metrics.set_active_workers(len(self._workers))
        return True

    async def _add_replacement(self, failed: Worker, generation: int) -> Worker | None:
        async with self._lock:
            if generation != self._generation:
                logger.info(
                    "Pool was resized after the failure, not replacing worker",
                    extra={"worker": failed.name, "worker_id": failed.worker_id},
                )
                return None

            try:
                [replacement] = await self._grow(1)
            except Exception:
                logger.exception(
                    "Could not build a replacement worker, pool is one short",
                    extra={"worker": failed.name, "worker_id": failed.worker_id},
                )
                return None

        self._metrics.record_worker_replaced()
        logger.warning(
            "Replaced failed worker",
            extra={
                "worker": failed.name,
                "worker_id": failed.worker_id,
                "replacement": replacement.name,
            },
        )
        return replacement

    async def _scale(self, target: Callable[[int], int], absolute: bool = False) -> list[Worker]:
        async with self._lock:
            if absolute:
                self._generation += 1

            size = len(self._workers)
            count = target(size)
            if count >= size:
                return await self._grow(count - size)

            removed = self._workers[: size - count]
            del self._workers[: size - count]
            self._metrics.set_active_workers(len(self._workers))

        logger.info(
            "Stopping workers",
            extra={"removed": len(removed), "remaining": len(self._workers)},
        )
        await asyncio.gather(*(worker.stop() for worker in removed))
        return removed

    async def _grow(self, change: int) -> list[Worker]:
        new_workers = [self.create_worker(next(self._ids)) for _ in range(change)]
        self._workers.extend(new_workers)
        self._metrics.set_active_workers(len(self._workers))

        for worker in new_workers:
            await worker.start()

        if new_workers:
            logger.info(
                "Started workers",
                extra={"added": len(new_workers), "total": len(self._workers)},
            )
        return new_workers


def load_handler_module(name: str | None) -> None:
    """Import the module that registers the application's job handlers."""
    if not name:
        return
    importlib.import_module(name)
    logger.info(f"Loaded handler module: {name}")


async def run_async() -> None:
    """Run a worker pool until SIGTERM/SIGINT."""
    setup_logging()
    setup_metrics()
    setup_tracing()

    settings = get_settings()
    load_handler_module(settings.handler_module)

    store = await create_store(settings)
    if isinstance(store, SqlStore) and settings.tracing_enabled:
        instrument_sqlalchemy(store.engine.sync_engine)

    queue = Queue(store, settings.queue_base)
    runner = Runner(
        lambda worker_id: Worker(queue, dispatch_job, name=f"worker-{worker_id}")
    )

    start_http_server(settings.prometheus_port)

    # Handle shutdown signals
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await runner.set_number_of_workers(settings.worker_count)
        logger.info(
            "Runner started",
            extra={"queue": queue.base, "workers": settings.worker_count},
        )

        await shutdown.wait()

        logger.info("Runner stopping, waiting for in-flight jobs")
        await runner.stop_all_workers()
    finally:
        await store.close()
        logger.info("Runner stopped")


def run() -> None:
    """Run the worker pool."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
