"""
Multi-tier fixed-window rate limiter backed by a shared counter store.

Each tier (hourly, daily, ...) counts independently in windows of
floor(now / window_seconds). Every check increments every tier and the
increment is never rolled back on denial, so sustained abuse keeps failing
instead of oscillating at the boundary.

If the counter store is unavailable the limiter FAILS OPEN: the request is
allowed, flagged degraded, and the failure logged.

Usage:
    limiter = RateLimiter(MemoryCounterStore())
    decision = await limiter.check_limit("key_42", [hourly(1000), daily(10000)])
    if isinstance(decision, RateLimitDenied):
        ...  # 429 with decision.exceeded / decision.retry_after
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Union

import structlog
from starlette.requests import Request

from gim.core.counter_store import CounterStore

logger = structlog.get_logger(__name__)

HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass(frozen=True)
class RateLimitTier:
    """One quota dimension. ttl_seconds must exceed window_seconds."""

    name: str  # "hour", "day"
    window_seconds: int
    limit: int
    ttl_seconds: int

    def __post_init__(self):
        if self.ttl_seconds <= self.window_seconds:
            raise ValueError(f"Tier {self.name}: ttl must exceed the window length")


def hourly(limit: int) -> RateLimitTier:
    # 2h expiry tolerates window overlap
    return RateLimitTier(name="hour", window_seconds=HOUR, limit=limit, ttl_seconds=2 * HOUR)


def daily(limit: int) -> RateLimitTier:
    return RateLimitTier(name="day", window_seconds=DAY, limit=limit, ttl_seconds=2 * DAY)


@dataclass
class TierStatus:
    tier: str
    limit: int
    remaining: int
    reset_at: datetime
    used: int = 0
    exceeded: bool = False
    retry_after: Optional[int] = None  # seconds, only when exceeded

    @property
    def reset(self) -> str:
        return self.reset_at.isoformat().replace("+00:00", "Z")

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


@dataclass
class RateLimitAllowed:
    tiers: List[TierStatus]
    degraded: bool = False  # True when the counter store failed and we failed open

    allowed: bool = field(default=True, init=False)


@dataclass
class RateLimitDenied:
    tiers: List[TierStatus]
    exceeded: TierStatus
    retry_after: int

    allowed: bool = field(default=False, init=False)

    def to_body(self) -> Dict[str, object]:
        return {
            "error": "rate_limit_exceeded",
            "message": f"Rate limit exceeded for {self.exceeded.tier} window",
            "limit": self.exceeded.limit,
            "remaining": self.exceeded.remaining,
            "reset": self.exceeded.reset,
            "retry_after": self.retry_after,
        }


RateLimitDecision = Union[RateLimitAllowed, RateLimitDenied]


def counter_key(tier: RateLimitTier, identifier: str, window_index: int) -> str:
    return f"ratelimit:{tier.name}:{identifier}:{window_index}"


def _window(tier: RateLimitTier, now: float) -> tuple[int, float]:
    """Return (window_index, window_end_epoch)."""
    index = int(now // tier.window_seconds)
    return index, float((index + 1) * tier.window_seconds)


def _epoch_to_datetime(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


class RateLimiter:
    def __init__(self, store: CounterStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    async def check_limit(self, identifier: str, tiers: Sequence[RateLimitTier]) -> RateLimitDecision:
        """
        Count this request against every tier and decide.

        Returns RateLimitDenied when any tier is over its limit; the tier with
        the longest wait until reset is reported as `exceeded`.
        """
        now = self._clock()
        statuses: List[TierStatus] = []

        try:
            for tier in tiers:
                window_index, window_end = _window(tier, now)
                count = await self.store.incr(counter_key(tier, identifier, window_index), tier.ttl_seconds)
                status = TierStatus(
                    tier=tier.name,
                    limit=tier.limit,
                    remaining=max(0, tier.limit - count),
                    reset_at=_epoch_to_datetime(window_end),
                    used=count,
                )
                if count > tier.limit:
                    status.exceeded = True
                    status.retry_after = max(1, math.ceil(window_end - now))
                    logger.warning(
                        "Rate limit exceeded",
                        identifier=identifier,
                        tier=tier.name,
                        count=count,
                        limit=tier.limit,
                    )
                statuses.append(status)
        except Exception as e:
            logger.error("Rate limit check failed, allowing request", identifier=identifier, error=str(e))
            return RateLimitAllowed(tiers=self._unmetered(tiers, now), degraded=True)

        exceeded = [s for s in statuses if s.exceeded]
        if exceeded:
            worst = max(exceeded, key=lambda s: s.retry_after or 0)
            return RateLimitDenied(tiers=statuses, exceeded=worst, retry_after=worst.retry_after or 1)
        return RateLimitAllowed(tiers=statuses)

    def _unmetered(self, tiers: Sequence[RateLimitTier], now: float) -> List[TierStatus]:
        return [
            TierStatus(
                tier=tier.name,
                limit=tier.limit,
                remaining=tier.limit,
                reset_at=_epoch_to_datetime(_window(tier, now)[1]),
            )
            for tier in tiers
        ]

    async def get_status(self, identifier: str, tiers: Sequence[RateLimitTier]) -> List[TierStatus]:
        """Current usage per tier without incrementing. Store errors propagate."""
        now = self._clock()
        statuses = []
        for tier in tiers:
            window_index, window_end = _window(tier, now)
            used = await self.store.get(counter_key(tier, identifier, window_index))
            statuses.append(
                TierStatus(
                    tier=tier.name,
                    limit=tier.limit,
                    remaining=max(0, tier.limit - used),
                    reset_at=_epoch_to_datetime(window_end),
                    used=used,
                )
            )
        return statuses

    async def reset_limit(self, identifier: str, tiers: Sequence[RateLimitTier]) -> int:
        """Delete the current window counters for `identifier` (admin)."""
        now = self._clock()
        keys = [counter_key(tier, identifier, _window(tier, now)[0]) for tier in tiers]
        removed = await self.store.delete(*keys)
        logger.info("Rate limit reset", identifier=identifier, removed=removed)
        return removed


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    """
    Response headers for a decision.

    Every tier gets X-RateLimit-{Limit,Remaining,Reset}-{Tier}; a denial adds
    the unsuffixed headers for the exceeded tier plus Retry-After.
    """
    headers: Dict[str, str] = {}
    for status in decision.tiers:
        suffix = status.tier.capitalize()
        headers[f"X-RateLimit-Limit-{suffix}"] = str(status.limit)
        headers[f"X-RateLimit-Remaining-{suffix}"] = str(status.remaining)
        headers[f"X-RateLimit-Reset-{suffix}"] = status.reset

    if isinstance(decision, RateLimitDenied):
        headers["Retry-After"] = str(decision.retry_after)
        headers["X-RateLimit-Limit"] = str(decision.exceeded.limit)
        headers["X-RateLimit-Remaining"] = str(decision.exceeded.remaining)
        headers["X-RateLimit-Reset"] = decision.exceeded.reset
    return headers


def get_client_ip(request: Request) -> str:
    """Extract client IP, handling proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First IP in the list is the client
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"
