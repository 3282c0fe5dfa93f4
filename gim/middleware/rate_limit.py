"""
Rate limiting middleware for the public API.

Gates every request under the API prefix through the RateLimiter published
on app.state.rate_limiter. Allowed responses carry per-tier
X-RateLimit-*-{Hour,Day} headers; denials short-circuit with HTTP 429 and
the documented body:

    {"error": "rate_limit_exceeded", "message": ..., "limit": 100,
     "remaining": 0, "reset": "2024-01-01T13:00:00Z", "retry_after": 1800}
"""

import hashlib
from typing import Callable, List, Optional, Sequence

import structlog
from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gim.core.config import settings
from gim.core.rate_limit import (
    RateLimitDenied,
    RateLimitTier,
    daily,
    get_client_ip,
    hourly,
    rate_limit_headers,
)

logger = structlog.get_logger(__name__)

TierResolver = Callable[[Request, str], Sequence[RateLimitTier]]

EXEMPT_PREFIXES = ("/health", "/docs", "/openapi.json")


def request_identifier(request: Request) -> str:
    """
    Identify the caller: API key when present, client IP otherwise.

    Keys are hashed so raw credentials never land in counter keys or logs.
    """
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return "key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:32]
    return "ip:" + get_client_ip(request)


def configured_tiers() -> List[RateLimitTier]:
    return [hourly(settings.RATE_LIMIT_PER_HOUR), daily(settings.RATE_LIMIT_PER_DAY)]


def default_tiers(request: Request, identifier: str) -> Sequence[RateLimitTier]:
    return configured_tiers()


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        prefix: str = settings.API_V1_STR,
        tier_resolver: Optional[TierResolver] = None,
        enabled: bool = True,
    ):
        super().__init__(app)
        self.prefix = prefix
        self.tier_resolver = tier_resolver or default_tiers
        self.enabled = enabled

    def _should_limit(self, path: str) -> bool:
        if path.startswith(EXEMPT_PREFIXES):
            return False
        return path.startswith(self.prefix)

    async def dispatch(self, request: Request, call_next) -> Response:
        limiter = getattr(request.app.state, "rate_limiter", None)
        if not self.enabled or limiter is None or not self._should_limit(request.url.path):
            return await call_next(request)

        identifier = request_identifier(request)
        decision = await limiter.check_limit(identifier, self.tier_resolver(request, identifier))
        headers = rate_limit_headers(decision)

        if isinstance(decision, RateLimitDenied):
            logger.info(
                "Request rate limited",
                identifier=identifier,
                tier=decision.exceeded.tier,
                retry_after=decision.retry_after,
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=decision.to_body(),
                headers=headers,
            )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
