"""
Rate limit administration.

Identifiers are the same strings the middleware counts under, e.g.
"ip:203.0.113.7" or "key:<hash>".
"""

from typing import Any, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gim.api import deps
from gim.core.rate_limit import RateLimiter
from gim.middleware.rate_limit import configured_tiers

router = APIRouter(prefix="/rate-limits", tags=["rate-limits"], dependencies=[Depends(deps.require_admin)])


class TierStatusOut(BaseModel):
    tier: str
    limit: int
    used: int
    remaining: int
    reset: str


class RateLimitStatusOut(BaseModel):
    identifier: str
    tiers: List[TierStatusOut]


class RateLimitResetOut(BaseModel):
    identifier: str
    removed: int


@router.get("/{identifier}", response_model=RateLimitStatusOut)
async def get_rate_limit_status(
    identifier: str,
    limiter: RateLimiter = Depends(deps.get_rate_limiter),
) -> Any:
    statuses = await limiter.get_status(identifier, configured_tiers())
    return RateLimitStatusOut(
        identifier=identifier,
        tiers=[
            TierStatusOut(tier=s.tier, limit=s.limit, used=s.used, remaining=s.remaining, reset=s.reset)
            for s in statuses
        ],
    )


@router.delete("/{identifier}", response_model=RateLimitResetOut)
async def reset_rate_limit(
    identifier: str,
    limiter: RateLimiter = Depends(deps.get_rate_limiter),
) -> Any:
    removed = await limiter.reset_limit(identifier, configured_tiers())
    return RateLimitResetOut(identifier=identifier, removed=removed)
