#!/usr/bin/env python3
"""Fill a queue with numbered test jobs.

Clears the queue, then enqueues ``--count`` jobs one every ``--interval``
seconds. Each job carries its sequence number and the time it was made.

Usage:
    # Thirty jobs into the example SQLite database
    python examples/generate_work.py

    # Against Postgres, a hundred jobs as fast as possible
    STORE_URL=postgresql+asyncpg://localhost/claimqueue \\
        python examples/generate_work.py --count 100 --interval 0

A ``memory://`` store lives only as long as this process, so the script
falls back to ``sqlite+aiosqlite:///claimqueue-example.db`` when the
configured store is in memory. Run ``single_worker.py`` or
``many_workers.py`` afterwards against the same URL to work the jobs off.
"""

import argparse
import asyncio
import logging
import time

from claimqueue.config import Settings, get_settings
from claimqueue.observability.logging import setup_logging
from claimqueue.queue import Queue
from claimqueue.store import MEMORY_URL, create_store

logger = logging.getLogger("examples.generate_work")

EXAMPLE_STORE_URL = "sqlite+aiosqlite:///claimqueue-example.db"


async def generate_work(queue: Queue, count: int = 30, interval: float = 0.01) -> list[str]:
    """Clear the queue and enqueue ``count`` jobs; returns their ids in order."""
    await queue.clear()

    ids = []
    for n in range(count):
        job_id = await queue.enqueue({"count": n, "time": int(time.time() * 1000)})
        ids.append(job_id)
        logger.info(f"generated job {n + 1}", extra={"job_id": job_id})
        if interval:
            await asyncio.sleep(interval)
    return ids


async def run(store_url: str, queue_base: str, count: int, interval: float) -> list[str]:
    store = await create_store(Settings(store_url=store_url))
    try:
        return await generate_work(Queue(store, queue_base), count, interval)
    finally:
        await store.close()


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Fill a queue with numbered test jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--store-url", default=settings.store_url, help="Backing store URL")
    parser.add_argument("--queue", default=settings.queue_base, help="Queue base name")
    parser.add_argument("--count", type=int, default=30, help="Number of jobs to enqueue")
    parser.add_argument(
        "--interval",
        type=float,
        default=0.01,
        help="Seconds to wait between jobs",
    )
    args = parser.parse_args()

    store_url = EXAMPLE_STORE_URL if args.store_url == MEMORY_URL else args.store_url

    setup_logging(settings)
    asyncio.run(run(store_url, args.queue, args.count, args.interval))


if __name__ == "__main__":
    main()
