#!/usr/bin/env python3
"""Work a queue off with a pool of workers.

A Runner keeps ``--workers`` workers going and replaces any that stop on a
store error. Each job takes a random time of up to ``--max-delay`` seconds,
and every worker logs its starts, finishes and idle moments under its own
name.

Usage:
    # Five workers on the example database, until Ctrl-C
    python examples/many_workers.py

    # Make fifty jobs, work them off with eight workers, then exit
    python examples/many_workers.py --generate 50 --workers 8 --exit-when-idle
"""

import argparse
import asyncio
import logging
import random
import signal

from claimqueue.config import Settings, get_settings
from claimqueue.constants import WorkerState
from claimqueue.observability.logging import setup_logging
from claimqueue.queue import Queue
from claimqueue.runner.main import Runner
from claimqueue.store import MEMORY_URL, create_store
from claimqueue.types.job import Job
from claimqueue.worker.worker import Worker, WorkerListener

logger = logging.getLogger("examples.many_workers")

EXAMPLE_STORE_URL = "sqlite+aiosqlite:///claimqueue-example.db"


class ConsoleListener(WorkerListener):
    """Logs activity for every worker in the pool."""

    def __init__(self):
        self.idle = asyncio.Event()
        self.finished = 0

    async def on_start(self, worker: Worker, job: Job) -> None:
        logger.info(f"{worker.name} started job {job.get('count', job.id)}")

    async def on_finish(self, worker: Worker, job: Job) -> None:
        self.finished += 1
        logger.info(f"{worker.name} finished job {job.get('count', job.id)}")

    async def on_idle(self, worker: Worker) -> None:
        logger.info(f"{worker.name} is idle")
        self.idle.set()


async def run(
    store_url: str,
    queue_base: str,
    workers: int = 5,
    generate: int = 0,
    max_delay: float = 2.0,
    exit_when_idle: bool = False,
) -> int:
    """
    Run a pool until the queue drains or the process is told to stop.

    Returns:
        The number of jobs the pool finished.
    """
    store = await create_store(Settings(store_url=store_url))
    queue = Queue(store, queue_base)
    listener = ConsoleListener()

    async def perform(job: Job, done) -> None:
        await asyncio.sleep(random.uniform(0, max_delay))
        done()

    runner = Runner(
        lambda worker_id: Worker(queue, perform, listeners=[listener], name=f"worker-{worker_id}")
    )

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        for n in range(generate):
            await queue.enqueue({"count": n})

        await runner.set_number_of_workers(workers)
        while not shutdown.is_set():
            if exit_when_idle and await drained(queue, runner):
                break
            listener.idle.clear()
            try:
                await asyncio.wait_for(listener.idle.wait(), timeout=0.5)
            except TimeoutError:
                pass

        await runner.stop_all_workers()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await store.close()

    logger.info("Pool stopped", extra={"finished": listener.finished})
    return listener.finished


async def drained(queue: Queue, runner: Runner) -> bool:
    """No pending jobs and no pool member in the middle of one."""
    if await queue.count_pending():
        return False
    return all(
        worker.state in (WorkerState.IDLE, WorkerState.WATCHING) for worker in runner.workers
    )


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Work a queue off with a pool of workers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--store-url", default=settings.store_url, help="Backing store URL")
    parser.add_argument("--queue", default=settings.queue_base, help="Queue base name")
    parser.add_argument("--workers", type=int, default=5, help="Pool size")
    parser.add_argument("--generate", type=int, default=0, help="Jobs to enqueue before starting")
    parser.add_argument(
        "--max-delay",
        type=float,
        default=2.0,
        help="Longest time in seconds a job takes",
    )
    parser.add_argument(
        "--exit-when-idle",
        action="store_true",
        help="Stop once the queue is empty instead of waiting for more jobs",
    )
    args = parser.parse_args()

    store_url = EXAMPLE_STORE_URL if args.store_url == MEMORY_URL else args.store_url

    setup_logging(settings)
    asyncio.run(
        run(
            store_url,
            args.queue,
            args.workers,
            args.generate,
            args.max_delay,
            args.exit_when_idle,
        )
    )


if __name__ == "__main__":
    main()
