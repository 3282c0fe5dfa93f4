"""
Unified error taxonomy with Sentry integration.

Provides:
- A closed set of error kinds (ErrorKind) carried by every AppError
- CircuitOpenError, raised only when a breaker short-circuits a call
- normalize_error() to turn arbitrary exceptions into AppError
- Sentry error tracking (when configured) with structured logging fallback

Usage:
    raise AppError("Invalid phone number", ErrorKind.VALIDATION, status_code=400)

    # Capture an exception
    capture_exception(exc, context={"delivery_id": 123})

    # Capture a message (non-exception event)
    capture_message("Circuit opened for payments", level="warning")
"""

import logging
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sqlalchemy.exc import SQLAlchemyError

from gim.core.context import get_client_id, get_context_dict, get_request_id

logger = structlog.get_logger(__name__)

__all__ = [
    "ErrorKind",
    "AppError",
    "CircuitOpenError",
    "RETRYABLE_KINDS",
    "normalize_error",
    "init_sentry",
    "capture_exception",
    "capture_message",
]


class ErrorKind(str, Enum):
    """Classification of a failure. Drives retry policy and escalation."""

    NETWORK = "network"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    BUSINESS = "business"
    SYSTEM = "system"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.EXTERNAL_API, ErrorKind.DATABASE})


class AppError(Exception):
    """
    Operational error with an explicit kind discriminant.

    Attributes:
        message: Human-readable description (also the aggregation key)
        kind: ErrorKind classification
        status_code: HTTP status to surface when the error reaches a route
        metadata: Free-form context; the aggregator adds "aggregated_count"
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.SYSTEM,
        status_code: int = 500,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.timestamp = datetime.now(timezone.utc)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "type": self.kind.value,
            "status_code": self.status_code,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class CircuitOpenError(AppError):
    """
    The breaker for `service` is open; the operation was never invoked.

    Distinct from the wrapped operation's own errors so callers can degrade
    gracefully (skip a notification) instead of retrying immediately.
    """

    def __init__(self, service: str, retry_after: float):
        super().__init__(
            f"Circuit breaker OPEN for {service}. Service temporarily unavailable.",
            ErrorKind.EXTERNAL_API,
            status_code=503,
            metadata={"service": service, "retry_after": retry_after},
        )
        self.service = service
        self.retry_after = retry_after


def normalize_error(exc: BaseException) -> AppError:
    """
    Convert any exception into an AppError.

    AppErrors pass through untouched. httpx timeouts/transport failures map
    to NETWORK, HTTP status errors to EXTERNAL_API, SQLAlchemy errors to
    DATABASE, anything else to SYSTEM.
    """
    if isinstance(exc, AppError):
        return exc

    metadata = {"original_error": type(exc).__name__}
    if isinstance(exc, httpx.HTTPStatusError):
        metadata["http_status"] = exc.response.status_code
        return AppError(str(exc), ErrorKind.EXTERNAL_API, 502, metadata)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return AppError(str(exc) or type(exc).__name__, ErrorKind.NETWORK, 503, metadata)
    if isinstance(exc, SQLAlchemyError):
        return AppError(str(exc), ErrorKind.DATABASE, 500, metadata)
    return AppError(str(exc) or "Unknown error", ErrorKind.SYSTEM, 500, metadata)


_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN (from project settings)
        environment: Environment name (production, staging, development)
        traces_sample_rate: Percentage of transactions to trace (0.0-1.0)
        release: Release version (defaults to GIT_COMMIT_SHA)

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    if not release:
        release = os.environ.get("GIT_COMMIT_SHA")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            ignore_errors=[KeyboardInterrupt, SystemExit],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, release=release)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop health-check noise and tag events with request context."""
    if "request" in event:
        url = event["request"].get("url", "")
        if "/health" in url:
            return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    client_id = get_client_id()
    if client_id:
        event.setdefault("user", {})["id"] = client_id

    return event


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"delivery_id": 123})
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry
        tags: Additional tags for filtering in Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    logger.error("Exception captured", exc_info=exc, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                if fingerprint:
                    scope.fingerprint = fingerprint
                scope.level = level
                return sentry_sdk.capture_exception(exc)
        except Exception as e:
            logger.warning("Failed to send exception to Sentry", error=str(e))

    return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for non-exception events).

    Used for circuit breaker transitions and critical escalations.

    Args:
        message: Message to capture
        level: Severity level (debug, info, warning, error, fatal)
        context: Additional context dict
        tags: Additional tags for filtering

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_level = "critical" if level == "fatal" else level
    log_func = getattr(logger, log_level, logger.info)
    log_func(message, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                scope.level = level
                return sentry_sdk.capture_message(message, level=level)
        except Exception as e:
            logger.warning("Failed to send message to Sentry", error=str(e))

    return None
