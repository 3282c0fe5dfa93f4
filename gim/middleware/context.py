"""
Request context middleware for observability.

Injects request_id, correlation_id and the calling client into every request for:
- Log correlation (find all logs for a request)
- Error tracking (group errors by request)
- Distributed tracing (follow requests across services)

Headers:
- X-Request-ID: Unique ID for this request (generated if not provided)
- X-Correlation-ID: ID spanning multiple services (passed through)
- X-Client-ID: Calling API client (set by the auth gateway)
"""

import re
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from gim.core.context import (
    set_request_id,
    set_correlation_id,
    set_client_id,
    generate_request_id,
    clear_context,
)

logger = structlog.get_logger(__name__)

# Request ID validation to prevent log injection attacks
MAX_ID_LENGTH = 64
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


def _validate_id(value: Optional[str]) -> Optional[str]:
    """
    Validate and sanitize request/correlation IDs.

    Returns None if invalid (will use generated ID instead).
    """
    if not value:
        return None
    if len(value) > MAX_ID_LENGTH:
        return None
    if not SAFE_ID_PATTERN.match(value):
        return None
    return value


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds request/correlation/client ids to contextvars and structlog.

    Order: should be the outermost middleware so rate-limit denials are
    logged with the request id.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _validate_id(request.headers.get("X-Request-ID")) or generate_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id

        correlation_id = _validate_id(request.headers.get("X-Correlation-ID"))
        if correlation_id:
            set_correlation_id(correlation_id)

        client_id = _validate_id(request.headers.get("X-Client-ID"))
        if client_id:
            set_client_id(client_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            correlation_id=correlation_id,
            client_id=client_id,
            path=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            if correlation_id:
                response.headers["X-Correlation-ID"] = correlation_id
            return response
        finally:
            # Clean up context to prevent leaking to next request
            clear_context()
            structlog.contextvars.clear_contextvars()
