"""
Webhook subscription and delivery models.

- WebhookSubscription: a client's endpoint subscribed to event types
- WebhookDelivery: one event sent to one subscription (many attempts)
- WebhookDeliveryAttempt: outcome of a single signed POST

A delivery's payload is a snapshot taken when the event fired and is never
rewritten. Once a delivery reaches SUCCESS or FAILED it is terminal.

Usage:
    from gim.models.webhook import WebhookDelivery, DeliveryStatus

    if delivery.status == DeliveryStatus.PENDING:
        ...
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, Index, JSON
from sqlmodel import Field, SQLModel

from gim.core.typing import utc_now


class WebhookEventType(str, Enum):
    """Event types a client may subscribe to."""

    MEMBER_CREATED = "member.created"
    MEMBER_UPDATED = "member.updated"
    MEMBER_DELETED = "member.deleted"
    CHECKIN_COMPLETED = "checkin.completed"
    CLASS_BOOKED = "class.booked"
    CLASS_CANCELLED = "class.cancelled"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_OVERDUE = "payment.overdue"
    PAYMENT_FAILED = "payment.failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookSubscription(SQLModel, table=True):
    """
    Attributes:
        client_id: Owning API client
        url: Target endpoint (receives POST)
        secret: Shared HMAC secret, shown to the client once at registration
        events: Subscribed event type names
        max_attempts: Delivery attempt ceiling per event
        timeout_seconds: Per-attempt HTTP timeout
        is_active: Inactive subscriptions receive nothing
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(index=True)
    url: str = Field(max_length=2048)
    secret: str = Field(max_length=128)
    events: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    max_attempts: int = Field(default=3)
    timeout_seconds: float = Field(default=10.0)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def subscribes_to(self, event_type: str) -> bool:
        return self.is_active and event_type in (self.events or [])


class WebhookDelivery(SQLModel, table=True):
    """
    Attributes:
        subscription_id: Target subscription
        event_type: Event name sent in X-Webhook-Event
        payload: Event data snapshot captured at trigger time
        status: pending -> success | failed
        attempts: Attempts made so far (never exceeds max_attempts)
        max_attempts: Subscription's ceiling at creation time
        http_status: Last HTTP status (None on transport error/timeout)
        error_message: Last error text
        signature: Last computed X-Webhook-Signature
        response_time_ms: Latency of the last attempt
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: int = Field(foreign_key="webhooksubscription.id", index=True)
    event_type: str = Field(index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    http_status: Optional[int] = None
    error_message: Optional[str] = None
    signature: Optional[str] = None
    response_time_ms: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    delivered_at: Optional[datetime] = None

    __table_args__ = (Index("ix_webhookdelivery_subscription_status", "subscription_id", "status"),)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


class WebhookDeliveryAttempt(SQLModel, table=True):
    """One signed POST for a delivery. Written for every attempt, success or not."""

    id: Optional[int] = Field(default=None, primary_key=True)
    delivery_id: int = Field(foreign_key="webhookdelivery.id", index=True)
    attempt_number: int
    http_status: Optional[int] = None
    error_message: Optional[str] = None
    signature: str
    response_time_ms: float
    succeeded: bool = False
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "WebhookEventType",
    "DeliveryStatus",
    "WebhookSubscription",
    "WebhookDelivery",
    "WebhookDeliveryAttempt",
]
