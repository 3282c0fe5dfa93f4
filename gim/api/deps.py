import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from gim.core.circuit_breaker import CircuitBreakerRegistry
from gim.core.config import settings
from gim.core.rate_limit import RateLimiter

CLIENT_ID_HEADER = "X-Client-ID"
ADMIN_KEY_HEADER = "X-Admin-Key"

client_id_header = APIKeyHeader(name=CLIENT_ID_HEADER, auto_error=False)
admin_key_header = APIKeyHeader(name=ADMIN_KEY_HEADER, auto_error=False)


def get_client_id(client_id: Optional[str] = Depends(client_id_header)) -> str:
    """Calling API client, as forwarded by the auth gateway."""
    if not client_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Client-ID header",
        )
    return client_id


def require_admin(admin_key: Optional[str] = Depends(admin_key_header)) -> None:
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")
    if not admin_key or not hmac.compare_digest(admin_key.encode(), settings.ADMIN_API_KEY.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin key")


def get_circuit_breakers(request: Request) -> CircuitBreakerRegistry:
    return request.app.state.circuit_breakers


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter
