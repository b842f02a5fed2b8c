"""
Process pending meeting jobs from the command line

    python -m owlnotes.tools.process_jobs --init-db
    python -m owlnotes.tools.process_jobs --loop --interval 30
"""

import argparse
import asyncio
import sys

from owlnotes.db import create_tables, dispose_engine
from owlnotes.db.jobs import JobStatus
from owlnotes.logger import logger
from owlnotes.settings import settings
from owlnotes.worker.poller import build_poller


def print_progress(message: str) -> None:
    print(message, file=sys.stderr)


async def process_jobs(
    max_jobs: int | None = None,
    loop: bool = False,
    interval: int | None = None,
    init_db: bool = False,
) -> int:
    """Returns the number of jobs that ended up failed."""
    interval = interval or settings.JOB_POLL_INTERVAL
    failed = 0
    try:
        if init_db:
            await create_tables()
            print_progress("Database tables created")

        poller = build_poller()
        while True:
            jobs = await poller.poll(max_jobs=max_jobs)
            for job in jobs:
                if job.status == JobStatus.FAILED:
                    failed += 1
                    print_progress(f"Job {job.id} failed: {job.error}")
                else:
                    print_progress(f"Job {job.id} {job.status}")
            if not loop:
                break
            logger.debug("Sleeping before next poll", interval=interval)
            await asyncio.sleep(interval)
    finally:
        await dispose_engine()
    return failed


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Process pending meeting jobs")
    parser.add_argument(
        "--max-jobs",
        type=int,
        default=None,
        help="Stop after this many jobs in a polling round",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep polling every --interval seconds",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between polling rounds (default JOB_POLL_INTERVAL)",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables before polling",
    )
    args = parser.parse_args()

    failed = asyncio.run(
        process_jobs(
            max_jobs=args.max_jobs,
            loop=args.loop,
            interval=args.interval,
            init_db=args.init_db,
        )
    )
    sys.exit(1 if failed else 0)
