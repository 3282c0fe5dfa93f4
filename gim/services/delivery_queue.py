"""
Delivery Queue Service

Persistent, delayable job queue for webhook deliveries. Jobs are stored in
the database, survive application restarts, and are retried with
exponential backoff up to their own attempt ceiling.

Usage:
    from gim.services.delivery_queue import (
        enqueue_job,
        claim_next_job,
        complete_job,
        fail_job,
        reset_stale_jobs,
    )

    with Session(engine) as session:
        job = enqueue_job(session, delivery_id=1, url=..., secret=..., ...)

        # Worker claims next due job
        job = claim_next_job(session)
        if job:
            try:
                ...  # deliver
                complete_job(session, job.id)
            except Exception as e:
                fail_job(session, job.id, str(e))

        # On startup, reset any stale in-progress jobs
        reset_stale_jobs(session, timeout_minutes=10)
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func
from sqlmodel import Session, select

from gim.core.config import settings
from gim.core.typing import as_utc, col, utc_now
from gim.models.delivery_job import DeliveryJob, JobStatus
from gim.models.webhook import DeliveryStatus, WebhookDelivery

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 1000


def backoff_delay(attempts: int, base_seconds: float) -> float:
    """Delay before the next attempt after `attempts` failures: base * 2^(attempts-1)."""
    return base_seconds * (2 ** max(0, attempts - 1))


def _fail_delivery(session: Session, job: DeliveryJob, error: str, now: datetime) -> None:
    # The job is terminal, so its delivery must be too
    delivery = session.get(WebhookDelivery, job.delivery_id)
    if delivery is None or delivery.is_terminal:
        return
    delivery.status = DeliveryStatus.FAILED
    delivery.error_message = error[:MAX_ERROR_LENGTH]
    delivery.updated_at = now
    session.add(delivery)


def enqueue_job(
    session: Session,
    delivery_id: int,
    url: str,
    secret: str,
    event_type: str,
    payload: Dict[str, Any],
    timeout_seconds: float = 10.0,
    max_attempts: int = 3,
    delay_seconds: float = 0.0,
    now: Optional[datetime] = None,
) -> DeliveryJob:
    """
    Enqueue a delivery job.

    Args:
        session: Database session
        delivery_id: WebhookDelivery this job works
        url: Subscriber endpoint
        secret: HMAC secret of the subscription
        event_type: Event name
        payload: Event data snapshot
        timeout_seconds: Per-attempt HTTP timeout
        max_attempts: Attempt ceiling (copied from the subscription)
        delay_seconds: Earliest claim is now + delay
        now: Override current time (tests)

    Returns:
        The created DeliveryJob
    """
    now = now or utc_now()
    job = DeliveryJob(
        delivery_id=delivery_id,
        url=url,
        secret=secret,
        event_type=event_type,
        payload=payload,
        timeout_seconds=timeout_seconds,
        max_attempts=max_attempts,
        available_at=now + timedelta(seconds=delay_seconds),
    )
    session.add(job)
    session.commit()
    session.refresh(job)

    logger.debug("Delivery job enqueued", job_id=job.id, delivery_id=delivery_id, max_attempts=max_attempts)
    return job


def _due_jobs_query(now: datetime):
    # Order by available_at ASC (oldest due first), FOR UPDATE to prevent double claims
    return (
        select(DeliveryJob)
        .where(
            col(DeliveryJob.status) == JobStatus.PENDING,
            col(DeliveryJob.available_at) <= now,
            col(DeliveryJob.attempts) < col(DeliveryJob.max_attempts),
        )
        .order_by(col(DeliveryJob.available_at).asc(), col(DeliveryJob.id).asc())
        .with_for_update(skip_locked=True)
    )


def _claim(session: Session, job: DeliveryJob, now: datetime) -> None:
    job.status = JobStatus.IN_PROGRESS
    job.attempts += 1
    job.started_at = now
    job.updated_at = now
    session.add(job)


def claim_next_job(session: Session, now: Optional[datetime] = None) -> Optional[DeliveryJob]:
    """
    Claim the next due job for processing.

    Atomically moves the job to IN_PROGRESS and increments its attempt count.

    Returns:
        The claimed DeliveryJob, or None if nothing is due
    """
    now = now or utc_now()
    job = session.exec(_due_jobs_query(now).limit(1)).first()
    if not job:
        return None

    _claim(session, job, now)
    session.commit()
    session.refresh(job)

    logger.info(
        "Claimed delivery job",
        job_id=job.id,
        delivery_id=job.delivery_id,
        attempt=job.attempts,
        max_attempts=job.max_attempts,
    )
    return job


def claim_due_jobs(session: Session, limit: int, now: Optional[datetime] = None) -> List[DeliveryJob]:
    """Claim up to `limit` due jobs in one transaction."""
    now = now or utc_now()
    jobs = list(session.exec(_due_jobs_query(now).limit(limit)).all())
    for job in jobs:
        _claim(session, job, now)
    if jobs:
        session.commit()
        for job in jobs:
            session.refresh(job)
        logger.info("Claimed delivery jobs", count=len(jobs))
    return jobs


def complete_job(session: Session, job_id: int) -> Optional[DeliveryJob]:
    job = session.get(DeliveryJob, job_id)
    if not job:
        logger.warning("Delivery job not found for completion", job_id=job_id)
        return None

    now = utc_now()
    job.status = JobStatus.COMPLETED
    job.completed_at = now
    job.updated_at = now
    job.last_error = None

    session.add(job)
    session.commit()
    session.refresh(job)

    logger.info("Delivery job completed", job_id=job.id, delivery_id=job.delivery_id, attempts=job.attempts)
    return job


def fail_job(
    session: Session,
    job_id: int,
    error: str,
    backoff_base_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Optional[DeliveryJob]:
    """
    Mark a job attempt as failed.

    If attempts < max_attempts the job returns to PENDING with available_at
    pushed out by exponential backoff. Otherwise it is permanently FAILED and
    never claimed again, and its delivery is marked FAILED in the same
    transaction if it is not terminal yet.

    Returns:
        The updated DeliveryJob, or None if not found
    """
    job = session.get(DeliveryJob, job_id)
    if not job:
        logger.warning("Delivery job not found for failure", job_id=job_id)
        return None

    now = now or utc_now()
    base = backoff_base_seconds if backoff_base_seconds is not None else settings.WEBHOOK_BACKOFF_BASE_SECONDS
    job.last_error = error[:MAX_ERROR_LENGTH]
    job.updated_at = now

    if job.attempts >= job.max_attempts:
        job.status = JobStatus.FAILED
        job.completed_at = now
        _fail_delivery(session, job, error, now)
        logger.warning(
            "Delivery job permanently failed",
            job_id=job.id,
            delivery_id=job.delivery_id,
            attempts=job.attempts,
            error=error[:100],
        )
    else:
        delay = backoff_delay(job.attempts, base)
        job.status = JobStatus.PENDING
        job.started_at = None
        job.available_at = now + timedelta(seconds=delay)
        logger.info(
            "Delivery job failed, will retry",
            job_id=job.id,
            delivery_id=job.delivery_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            retry_in_seconds=delay,
            error=error[:100],
        )

    session.add(job)
    session.commit()
    session.refresh(job)
    return job


def reset_stale_jobs(session: Session, timeout_minutes: int = 10) -> int:
    """
    Return jobs stuck IN_PROGRESS longer than timeout_minutes to the queue.

    A worker that died mid-attempt has used up that attempt; jobs that have
    already hit their ceiling are failed instead of requeued.

    Returns:
        Number of jobs reset or failed
    """
    now = utc_now()
    cutoff = now - timedelta(minutes=timeout_minutes)

    stale_jobs = [
        job
        for job in session.exec(select(DeliveryJob).where(col(DeliveryJob.status) == JobStatus.IN_PROGRESS)).all()
        if job.started_at is not None and as_utc(job.started_at) < cutoff
    ]

    message = f"Job timed out after {timeout_minutes} minutes"
    for job in stale_jobs:
        job.last_error = message
        job.updated_at = now
        job.started_at = None
        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = now
            _fail_delivery(session, job, message, now)
        else:
            job.status = JobStatus.PENDING
            job.available_at = now
        session.add(job)

    if stale_jobs:
        session.commit()
        logger.warning("Reset stale delivery jobs", count=len(stale_jobs))

    return len(stale_jobs)


def get_queue_stats(session: Session) -> dict[str, int]:
    """Counts per status: {"pending": N, "in_progress": N, "completed": N, "failed": N}."""
    stats: dict[str, int] = {status.value: 0 for status in JobStatus}

    rows = session.exec(
        select(DeliveryJob.status, func.count()).group_by(col(DeliveryJob.status))
    ).all()
    for status, count in rows:
        key = status.value if isinstance(status, JobStatus) else str(status)
        stats[key] = count

    return stats
