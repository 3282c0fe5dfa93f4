#!/usr/bin/env python3
"""
Webhook Worker - Delivers queued webhook jobs.

Run with: python scripts/run_webhook_worker.py

Jobs live in the database, so a crashed worker loses nothing: jobs it left
in progress are requeued on the next start. Multiple workers can run
concurrently; claims use SELECT FOR UPDATE SKIP LOCKED.

Usage:
    python scripts/run_webhook_worker.py
    python scripts/run_webhook_worker.py --concurrency 20 --poll-interval 0.5
"""

import asyncio
import signal
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from gim.core.config import settings  # noqa: E402
from gim.core.errors import init_sentry  # noqa: E402
from gim.core.logging_config import get_logger  # noqa: E402
from gim.db import create_db_and_tables, engine  # noqa: E402
from gim.services.webhook_worker import run_worker  # noqa: E402

logger = get_logger("webhook_worker")


async def main(concurrency: int, poll_interval: float) -> None:
    stop_event = asyncio.Event()

    def handle_shutdown():
        logger.info("Shutdown requested, finishing current batch")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown)

    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()

    try:
        await run_worker(engine, stop_event, poll_interval=poll_interval, concurrency=concurrency)
    finally:
        logger.info("Cleanup complete")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Webhook Worker - Deliver queued webhook jobs")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.WORKER_CONCURRENCY,
        help=f"Jobs worked in parallel per batch (default: {settings.WORKER_CONCURRENCY})",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=settings.WORKER_POLL_INTERVAL_SECONDS,
        help=f"Seconds to wait when the queue is empty (default: {settings.WORKER_POLL_INTERVAL_SECONDS})",
    )
    args = parser.parse_args()

    asyncio.run(main(args.concurrency, args.poll_interval))
