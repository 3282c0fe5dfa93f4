"""
Webhook Service

Manages webhook subscriptions, fans domain events out to subscribers and
performs signed HTTP deliveries.

Delivery contract (per attempt):
    POST <subscription.url>
    Content-Type: application/json
    X-Webhook-Event: <event type>
    X-Webhook-Signature: hex(HMAC-SHA256(secret, body))
    body = {"event": ..., "timestamp": <ISO-8601, per attempt>, "data": <payload snapshot>}

The timestamp is regenerated for every attempt, so the signature is
recomputed every time and never cached.

Usage:
    from gim.services.webhooks import trigger_event

    with Session(engine) as session:
        trigger_event(session, "payment.overdue", {"member_id": 42, "amount": 350})
"""

import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import structlog
from sqlalchemy import delete, func
from sqlmodel import Session, select

from gim.core.config import settings
from gim.core.errors import AppError, ErrorKind
from gim.core.typing import col, utc_now
from gim.models.delivery_job import DeliveryJob
from gim.models.webhook import (
    DeliveryStatus,
    WebhookDelivery,
    WebhookDeliveryAttempt,
    WebhookEventType,
    WebhookSubscription,
)
from gim.services.delivery_queue import enqueue_job

logger = structlog.get_logger(__name__)

SUPPORTED_EVENTS = frozenset(event.value for event in WebhookEventType)

MAX_ERROR_LENGTH = 500


class WebhookDeliveryError(AppError):
    """A delivery attempt got a non-2xx response or no response at all."""

    def __init__(self, delivery_id: int, message: str, http_status: Optional[int] = None):
        kind = ErrorKind.EXTERNAL_API if http_status is not None else ErrorKind.NETWORK
        super().__init__(
            message,
            kind,
            status_code=502,
            metadata={"delivery_id": delivery_id, "http_status": http_status},
        )
        self.delivery_id = delivery_id
        self.http_status = http_status


# ============================================
# Signing
# ============================================


def build_envelope(event_type: str, payload: Dict[str, Any], timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    timestamp = timestamp or utc_now()
    return {
        "event": event_type,
        "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
        "data": payload,
    }


def serialize_envelope(envelope: Dict[str, Any]) -> bytes:
    """Exact bytes that are signed and sent."""
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


def _as_bytes(body: Union[bytes, str, Dict[str, Any]]) -> bytes:
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return serialize_envelope(body)


def generate_signature(secret: str, body: Union[bytes, str, Dict[str, Any]]) -> str:
    """HMAC-SHA256 of the serialized body, hex encoded."""
    return hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: Union[bytes, str, Dict[str, Any]], signature: str) -> bool:
    """Constant-time signature check."""
    if not signature or not secret:
        return False
    expected = generate_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


# ============================================
# Subscription management
# ============================================


def generate_secret() -> str:
    return secrets.token_hex(32)


def register_webhook(
    session: Session,
    client_id: str,
    url: str,
    events: Sequence[str],
    max_attempts: Optional[int] = None,
    timeout_seconds: Optional[float] = None,
) -> WebhookSubscription:
    """
    Register a subscription. Unknown event names are dropped.

    Raises:
        AppError(VALIDATION): none of the requested events are supported
    """
    valid_events = [event for event in dict.fromkeys(events) if event in SUPPORTED_EVENTS]
    if not valid_events:
        raise AppError("No valid events specified", ErrorKind.VALIDATION, status_code=400)

    subscription = WebhookSubscription(
        client_id=client_id,
        url=url,
        secret=generate_secret(),
        events=valid_events,
        max_attempts=max_attempts or settings.WEBHOOK_DEFAULT_MAX_ATTEMPTS,
        timeout_seconds=timeout_seconds or settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS,
    )
    session.add(subscription)
    session.commit()
    session.refresh(subscription)

    logger.info("Webhook registered", subscription_id=subscription.id, client_id=client_id, events=valid_events)
    return subscription


def list_webhooks(session: Session, client_id: str) -> List[WebhookSubscription]:
    stmt = (
        select(WebhookSubscription)
        .where(col(WebhookSubscription.client_id) == client_id)
        .order_by(col(WebhookSubscription.created_at).desc())
    )
    return list(session.exec(stmt).all())


def get_webhook(session: Session, subscription_id: int, client_id: str) -> Optional[WebhookSubscription]:
    subscription = session.get(WebhookSubscription, subscription_id)
    if subscription is None or subscription.client_id != client_id:
        return None
    return subscription


def delete_webhook(session: Session, subscription_id: int, client_id: str) -> bool:
    """
    Delete a client's subscription together with its delivery history.

    Returns:
        False if the subscription does not exist or belongs to another client
    """
    subscription = get_webhook(session, subscription_id, client_id)
    if subscription is None:
        return False

    delivery_ids = select(WebhookDelivery.id).where(col(WebhookDelivery.subscription_id) == subscription_id)
    session.execute(delete(WebhookDeliveryAttempt).where(col(WebhookDeliveryAttempt.delivery_id).in_(delivery_ids)))
    session.execute(delete(DeliveryJob).where(col(DeliveryJob.delivery_id).in_(delivery_ids)))
    session.execute(delete(WebhookDelivery).where(col(WebhookDelivery.subscription_id) == subscription_id))
    session.delete(subscription)
    session.commit()

    logger.info("Webhook deleted", subscription_id=subscription_id, client_id=client_id)
    return True


def get_webhook_stats(session: Session, subscription_id: int) -> Dict[str, Any]:
    counts = {status: 0 for status in DeliveryStatus}
    rows = session.exec(
        select(WebhookDelivery.status, func.count())
        .where(col(WebhookDelivery.subscription_id) == subscription_id)
        .group_by(col(WebhookDelivery.status))
    ).all()
    for status, count in rows:
        counts[DeliveryStatus(status)] = count

    avg_response_time = session.exec(
        select(func.avg(WebhookDelivery.response_time_ms)).where(
            col(WebhookDelivery.subscription_id) == subscription_id,
            col(WebhookDelivery.response_time_ms).is_not(None),
        )
    ).one()

    total = sum(counts.values())
    finished = counts[DeliveryStatus.SUCCESS] + counts[DeliveryStatus.FAILED]
    return {
        "total_deliveries": total,
        "successful_deliveries": counts[DeliveryStatus.SUCCESS],
        "failed_deliveries": counts[DeliveryStatus.FAILED],
        "pending_deliveries": counts[DeliveryStatus.PENDING],
        "avg_response_time": round(float(avg_response_time or 0.0), 2),
        "success_rate": round(counts[DeliveryStatus.SUCCESS] / finished * 100, 2) if finished else 0.0,
    }


# ============================================
# Dispatch
# ============================================


def queue_delivery(
    session: Session,
    subscription: WebhookSubscription,
    event_type: str,
    payload: Dict[str, Any],
) -> WebhookDelivery:
    """Create the pending delivery record and its queue job."""
    delivery = WebhookDelivery(
        subscription_id=subscription.id,
        event_type=event_type,
        payload=payload,
        max_attempts=subscription.max_attempts,
    )
    session.add(delivery)
    session.commit()
    session.refresh(delivery)

    enqueue_job(
        session,
        delivery_id=delivery.id,
        url=subscription.url,
        secret=subscription.secret,
        event_type=event_type,
        payload=payload,
        timeout_seconds=subscription.timeout_seconds,
        max_attempts=subscription.max_attempts,
    )

    logger.debug("Webhook delivery queued", delivery_id=delivery.id, subscription_id=subscription.id)
    return delivery


def trigger_event(session: Session, event_type: str, payload: Dict[str, Any]) -> List[WebhookDelivery]:
    """
    Fan `event_type` out to every active subscription listening for it.

    Each subscription gets its own delivery + job; a failure queueing one
    subscription is logged and does not stop the others.

    Returns:
        The deliveries that were queued
    """
    if event_type not in SUPPORTED_EVENTS:
        logger.warning("Triggering unsupported webhook event", event_type=event_type)

    active = session.exec(select(WebhookSubscription).where(col(WebhookSubscription.is_active).is_(True))).all()
    subscriptions = [sub for sub in active if sub.subscribes_to(event_type)]

    if not subscriptions:
        logger.debug("No webhooks subscribed to event", event_type=event_type)
        return []

    logger.info("Triggering webhooks for event", event_type=event_type, subscriptions=len(subscriptions))

    # Snapshot the payload once; later mutation by the caller must not leak into deliveries
    snapshot = json.loads(json.dumps(payload, default=str))

    deliveries = []
    for subscription in subscriptions:
        try:
            deliveries.append(queue_delivery(session, subscription, event_type, snapshot))
        except Exception as e:
            session.rollback()
            logger.error(
                "Failed to queue webhook delivery",
                subscription_id=subscription.id,
                event_type=event_type,
                error=str(e),
            )
    return deliveries


# ============================================
# Delivery
# ============================================


async def deliver_one(session: Session, job: DeliveryJob, client: httpx.AsyncClient) -> WebhookDelivery:
    """
    Perform one signed delivery attempt for a claimed job.

    On 2xx the delivery becomes SUCCESS. On any other status or transport
    error the attempt is recorded and WebhookDeliveryError is raised so the
    queue schedules the next attempt; on the job's last attempt the
    delivery is marked FAILED first. Terminal deliveries are returned
    untouched (at-least-once redelivery of the same job is harmless).
    """
    delivery = session.get(WebhookDelivery, job.delivery_id)
    if delivery is None:
        raise AppError(f"Delivery {job.delivery_id} not found", ErrorKind.BUSINESS, status_code=404)

    if delivery.is_terminal:
        logger.info("Delivery already terminal, skipping", delivery_id=delivery.id, status=delivery.status.value)
        return delivery

    attempt_number = min(job.attempts, delivery.max_attempts)
    envelope = build_envelope(job.event_type, job.payload)
    body = serialize_envelope(envelope)
    signature = generate_signature(job.secret, body)
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Signature": signature,
        "X-Webhook-Event": job.event_type,
        "User-Agent": settings.WEBHOOK_USER_AGENT,
    }

    http_status: Optional[int] = None
    error: Optional[str] = None
    start_time = time.perf_counter()
    try:
        response = await client.post(job.url, content=body, headers=headers, timeout=job.timeout_seconds)
        http_status = response.status_code
        if not response.is_success:
            error = f"HTTP {http_status}: {response.text[:MAX_ERROR_LENGTH]}"
    except httpx.TimeoutException as e:
        error = f"Timeout after {job.timeout_seconds}s: {type(e).__name__}"
    except httpx.HTTPError as e:
        error = f"{type(e).__name__}: {e}"
    response_time_ms = round((time.perf_counter() - start_time) * 1000, 2)

    now = utc_now()
    session.add(
        WebhookDeliveryAttempt(
            delivery_id=delivery.id,
            attempt_number=attempt_number,
            http_status=http_status,
            error_message=error[:MAX_ERROR_LENGTH] if error else None,
            signature=signature,
            response_time_ms=response_time_ms,
            succeeded=error is None,
        )
    )
    delivery.attempts = attempt_number
    delivery.http_status = http_status
    delivery.signature = signature
    delivery.response_time_ms = response_time_ms
    delivery.updated_at = now

    if error is None:
        delivery.status = DeliveryStatus.SUCCESS
        delivery.error_message = None
        delivery.delivered_at = now
        session.add(delivery)
        session.commit()
        session.refresh(delivery)
        logger.info(
            "Webhook delivered",
            delivery_id=delivery.id,
            attempt=attempt_number,
            http_status=http_status,
            response_time_ms=response_time_ms,
        )
        return delivery

    delivery.error_message = error[:MAX_ERROR_LENGTH]
    if attempt_number >= delivery.max_attempts:
        delivery.status = DeliveryStatus.FAILED
    session.add(delivery)
    session.commit()

    logger.warning(
        "Webhook delivery attempt failed",
        delivery_id=delivery.id,
        attempt=attempt_number,
        max_attempts=delivery.max_attempts,
        http_status=http_status,
        error=error[:200],
        final=delivery.status == DeliveryStatus.FAILED,
    )
    raise WebhookDeliveryError(delivery.id, error, http_status)
