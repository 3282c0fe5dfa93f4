"""
Webhook subscription endpoints.

The calling client is identified by the X-Client-ID header; a client only
sees and deletes its own subscriptions.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, HttpUrl
from sqlmodel import Session

from gim.api import deps
from gim.db import get_session
from gim.models.webhook import WebhookEventType
from gim.services import webhooks as webhook_service

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# ============== SCHEMAS ==============


class WebhookCreate(BaseModel):
    url: HttpUrl
    events: List[str] = Field(min_length=1)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=60)


class WebhookOut(BaseModel):
    id: int
    url: str
    events: List[str]
    max_attempts: int
    timeout_seconds: float
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookCreated(WebhookOut):
    # Only returned once, at registration
    secret: str


class WebhookStats(BaseModel):
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    pending_deliveries: int
    avg_response_time: float
    success_rate: float


# ============== ENDPOINTS ==============


@router.post("", response_model=WebhookCreated, status_code=status.HTTP_201_CREATED)
def create_webhook(
    webhook_in: WebhookCreate,
    session: Session = Depends(get_session),
    client_id: str = Depends(deps.get_client_id),
) -> Any:
    """Register a webhook. The signing secret is only shown in this response."""
    subscription = webhook_service.register_webhook(
        session,
        client_id=client_id,
        url=str(webhook_in.url),
        events=webhook_in.events,
        max_attempts=webhook_in.max_attempts,
        timeout_seconds=webhook_in.timeout_seconds,
    )
    return WebhookCreated.model_validate(subscription)


@router.get("", response_model=List[WebhookOut])
def list_webhooks(
    session: Session = Depends(get_session),
    client_id: str = Depends(deps.get_client_id),
) -> Any:
    return webhook_service.list_webhooks(session, client_id)


@router.get("/events")
def list_events() -> Dict[str, List[str]]:
    """Event types available for subscription."""
    return {"events": [event.value for event in WebhookEventType]}


@router.get("/{webhook_id}/stats", response_model=WebhookStats)
def get_webhook_stats(
    webhook_id: int,
    session: Session = Depends(get_session),
    client_id: str = Depends(deps.get_client_id),
) -> Any:
    if webhook_service.get_webhook(session, webhook_id, client_id) is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook_service.get_webhook_stats(session, webhook_id)


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook(
    webhook_id: int,
    session: Session = Depends(get_session),
    client_id: str = Depends(deps.get_client_id),
) -> None:
    if not webhook_service.delete_webhook(session, webhook_id, client_id):
        raise HTTPException(status_code=404, detail="Webhook not found")
