#!/usr/bin/env python3
"""Work a queue off with one worker.

The worker takes jobs one at a time, spends a random time of up to
``--max-delay`` seconds on each, and logs when it starts a job, finishes one
and runs out of work.

Usage:
    # Work off whatever generate_work.py left in the example database
    python examples/single_worker.py --exit-when-idle

    # Make ten jobs first and keep watching for more until Ctrl-C
    python examples/single_worker.py --generate 10

As with generate_work.py, a ``memory://`` store URL is swapped for the
example SQLite database so separate processes share one queue.
"""

import argparse
import asyncio
import logging
import random
import signal

from claimqueue.config import Settings, get_settings
from claimqueue.observability.logging import setup_logging
from claimqueue.queue import Queue
from claimqueue.store import MEMORY_URL, create_store
from claimqueue.types.job import Job
from claimqueue.worker.worker import Worker, WorkerListener

logger = logging.getLogger("examples.single_worker")

EXAMPLE_STORE_URL = "sqlite+aiosqlite:///claimqueue-example.db"


class ConsoleListener(WorkerListener):
    """Logs worker activity and signals when the worker runs dry."""

    def __init__(self):
        self.idle = asyncio.Event()

    async def on_start(self, worker: Worker, job: Job) -> None:
        logger.info(f"started job {job.get('count', job.id)}")

    async def on_finish(self, worker: Worker, job: Job) -> None:
        logger.info(f"finished job {job.get('count', job.id)}")

    async def on_idle(self, worker: Worker) -> None:
        logger.info("idle")
        self.idle.set()


def random_delay(max_delay: float):
    """A job function that completes after a random pause."""

    async def perform(job: Job, done) -> None:
        await asyncio.sleep(random.uniform(0, max_delay))
        done()

    return perform


async def run(
    store_url: str,
    queue_base: str,
    generate: int = 0,
    max_delay: float = 2.0,
    exit_when_idle: bool = False,
) -> Worker:
    """
    Run one worker until it goes idle or the process is told to stop.

    Returns:
        The stopped worker, for its success and failure counts.
    """
    store = await create_store(Settings(store_url=store_url))
    queue = Queue(store, queue_base)
    listener = ConsoleListener()
    worker = Worker(queue, random_delay(max_delay), listeners=[listener], name="worker")

    try:
        for n in range(generate):
            await queue.enqueue({"count": n})

        if exit_when_idle and await queue.count_pending() == 0:
            logger.info("Queue is empty, nothing to do")
        else:
            await worker.start()
            await wait_until_done(listener.idle, exit_when_idle)
            await worker.stop()
    finally:
        await store.close()

    logger.info(
        "Worker stopped",
        extra={"succeeded": worker.success_count, "failed": worker.failure_count},
    )
    return worker


async def wait_until_done(idle: asyncio.Event, exit_when_idle: bool) -> None:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        waits = [asyncio.ensure_future(shutdown.wait())]
        if exit_when_idle:
            waits.append(asyncio.ensure_future(idle.wait()))
        _, pending = await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Work a queue off with one worker.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--store-url", default=settings.store_url, help="Backing store URL")
    parser.add_argument("--queue", default=settings.queue_base, help="Queue base name")
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
        run(store_url, args.queue, args.generate, args.max_delay, args.exit_when_idle)
    )


if __name__ == "__main__":
    main()
