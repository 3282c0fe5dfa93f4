"""
Delivery Job Model

Durable, delayable job queue for webhook deliveries. Jobs survive restarts;
a failed job is rescheduled by pushing available_at into the future until
its attempt ceiling is reached.

Usage:
    from gim.models.delivery_job import DeliveryJob, JobStatus

    job = DeliveryJob(delivery_id=1, url=..., secret=..., event_type=..., payload={...})
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, Index, JSON
from sqlmodel import Field, SQLModel

from gim.core.typing import utc_now


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryJob(SQLModel, table=True):
    """
    One queued webhook delivery.

    Carries everything the worker needs (target, secret, timeout, payload
    snapshot) so delivery never re-reads the subscription.

    Attributes:
        delivery_id: WebhookDelivery being worked
        attempts: Times the job has been claimed
        max_attempts: Ceiling copied from the subscription
        available_at: Earliest time the job may be claimed (delay/backoff)
        last_error: Error from the most recent failed attempt
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    delivery_id: int = Field(foreign_key="webhookdelivery.id", index=True)
    url: str = Field(max_length=2048)
    secret: str = Field(max_length=128)
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    timeout_seconds: float = Field(default=10.0)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    available_at: datetime = Field(default_factory=utc_now)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    __table_args__ = (
        # Claim query: status + available_at
        Index("ix_deliveryjob_queue", "status", "available_at"),
        # Stale job detection
        Index("ix_deliveryjob_stale", "status", "started_at"),
    )


__all__ = ["DeliveryJob", "JobStatus"]
