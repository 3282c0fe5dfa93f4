"""
Webhook delivery worker.

Claims due jobs from the delivery queue and runs one signed attempt per
claim. Success completes the job; failure hands it back to the queue which
reschedules it with backoff or fails it permanently at its ceiling.

Several workers may run against the same database; claims use
SELECT ... FOR UPDATE SKIP LOCKED so a job is worked by one worker at a time.
"""

import asyncio
from datetime import datetime
from typing import Dict, Optional

import httpx
import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session

from gim.core.config import settings
from gim.models.delivery_job import DeliveryJob
from gim.services.delivery_queue import (
    claim_due_jobs,
    complete_job,
    fail_job,
    get_queue_stats,
    reset_stale_jobs,
)
from gim.services.webhooks import deliver_one

logger = structlog.get_logger(__name__)


async def process_job(session: Session, job: DeliveryJob, client: httpx.AsyncClient) -> bool:
    """
    Run one delivery attempt for a claimed job.

    Returns:
        True if the subscriber acknowledged the delivery
    """
    try:
        await deliver_one(session, job, client)
    except Exception as e:
        session.rollback()
        fail_job(session, job.id, f"{type(e).__name__}: {e}")
        return False

    complete_job(session, job.id)
    return True


async def process_next_batch(
    engine: Engine,
    client: httpx.AsyncClient,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Claim up to `limit` due jobs and work them concurrently.

    Each job gets its own session so one failing delivery cannot poison the
    transaction of another.

    Returns:
        {"claimed": N, "succeeded": N, "failed": N}
    """
    limit = limit or settings.WORKER_CONCURRENCY
    with Session(engine) as session:
        jobs = claim_due_jobs(session, limit, now=now)

    if not jobs:
        return {"claimed": 0, "succeeded": 0, "failed": 0}

    async def _run(job: DeliveryJob) -> bool:
        with Session(engine) as job_session:
            return await process_job(job_session, job, client)

    results = await asyncio.gather(*(_run(job) for job in jobs))
    succeeded = sum(1 for ok in results if ok)
    return {"claimed": len(jobs), "succeeded": succeeded, "failed": len(jobs) - succeeded}


async def run_worker(
    engine: Engine,
    stop_event: asyncio.Event,
    client: Optional[httpx.AsyncClient] = None,
    poll_interval: Optional[float] = None,
    concurrency: Optional[int] = None,
) -> Dict[str, int]:
    """
    Poll the queue until `stop_event` is set.

    Jobs left IN_PROGRESS by a crashed worker are returned to the queue on
    start. Returns running totals when stopped.
    """
    poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
    concurrency = concurrency or settings.WORKER_CONCURRENCY

    with Session(engine) as session:
        reset = reset_stale_jobs(session, timeout_minutes=settings.WORKER_STALE_JOB_MINUTES)
        if reset:
            logger.info("Recovered stale delivery jobs", count=reset)
        logger.info("Webhook worker starting", queue=get_queue_stats(session), concurrency=concurrency)

    owns_client = client is None
    client = client or httpx.AsyncClient()
    totals = {"processed": 0, "succeeded": 0, "failed": 0}
    idle_count = 0

    try:
        while not stop_event.is_set():
            try:
                batch = await process_next_batch(engine, client, limit=concurrency)
            except Exception as e:
                logger.error("Webhook worker batch failed", error=str(e))
                batch = {"claimed": 0, "succeeded": 0, "failed": 0}

            if batch["claimed"]:
                idle_count = 0
                totals["processed"] += batch["claimed"]
                totals["succeeded"] += batch["succeeded"]
                totals["failed"] += batch["failed"]
                continue

            idle_count += 1
            # Roughly once a minute at the default poll interval
            if idle_count % 60 == 1:
                logger.debug("Delivery queue idle", totals=totals)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
    finally:
        if owns_client:
            await client.aclose()
        logger.info("Webhook worker stopped", **totals)

    return totals
