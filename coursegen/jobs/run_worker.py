#!/usr/bin/env python3
"""
Standalone stage worker process.

Run this as a separate process from the web server so long generation
calls never block API requests.

Usage:
    python -m coursegen.jobs.run_worker
    python -m coursegen.jobs.run_worker --queues course-structure quiz
"""

import argparse
import asyncio
import signal

from coursegen.config import config
from coursegen.database.client import verify_supabase_connection
from coursegen.jobs.queue import close_queue, get_queue
from coursegen.jobs.worker import build_worker
from coursegen.utils.logging import configure_logging, worker_logger as logger


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the course generation stage worker")
    parser.add_argument(
        "--queues",
        nargs="+",
        default=None,
        help="Queues to consume (default: WORKER_QUEUES)"
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Jobs run concurrently per poll (default: WORKER_CONCURRENCY)"
    )
    return parser.parse_args(argv)


async def main(argv=None):
    """Run the stage worker as a standalone process."""
    args = parse_args(argv)
    configure_logging(config.LOG_LEVEL)

    logger.info(
        "Starting standalone stage worker",
        job_db=config.job_db_path,
        queues=args.queues or config.worker_queue_names,
        poll_interval=config.WORKER_POLL_INTERVAL,
    )

    if not verify_supabase_connection():
        logger.warning("Supabase is not reachable; jobs will retry until it is")

    queue = await get_queue()
    worker = build_worker(queue, queue_names=args.queues, concurrency=args.concurrency)

    # Handle shutdown signals gracefully
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum, frame):
        logger.info("Received shutdown signal", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        worker.start()
        await shutdown_event.wait()
    finally:
        worker.shutdown()
        await close_queue()
        logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
