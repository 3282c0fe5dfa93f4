from .circuit_breaker_state import CircuitBreakerState
from .delivery_job import DeliveryJob, JobStatus
from .rate_limit_counter import RateLimitCounter
from .webhook import (
    DeliveryStatus,
    WebhookDelivery,
    WebhookDeliveryAttempt,
    WebhookEventType,
    WebhookSubscription,
)

__all__ = [
    "CircuitBreakerState",
    "DeliveryJob",
    "JobStatus",
    "RateLimitCounter",
    "DeliveryStatus",
    "WebhookDelivery",
    "WebhookDeliveryAttempt",
    "WebhookEventType",
    "WebhookSubscription",
]
