"""
Tests for multi-tier rate limiting.

Tests cover:
1. RateLimiter.check_limit tiers, windows, denial and fail-open
2. get_status / reset_limit
3. Response headers and the 429 body
4. RateLimitMiddleware and the admin endpoints
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from gim.core.counter_store import MemoryCounterStore
from gim.core.rate_limit import (
    HOUR,
    RateLimitAllowed,
    RateLimitDenied,
    RateLimiter,
    RateLimitTier,
    counter_key,
    daily,
    hourly,
    rate_limit_headers,
)
from gim.middleware.rate_limit import request_identifier

# 2024-01-01T12:30:00Z
NOON_THIRTY = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(NOON_THIRTY)


@pytest.fixture
def limiter(clock):
    return RateLimiter(MemoryCounterStore(clock=clock), clock=clock)


class TestTiers:
    def test_constructors(self):
        assert hourly(100) == RateLimitTier("hour", 3600, 100, 7200)
        assert daily(1000) == RateLimitTier("day", 86400, 1000, 172800)

    def test_ttl_must_exceed_window(self):
        with pytest.raises(ValueError):
            RateLimitTier("hour", 3600, 10, 3600)

    def test_counter_key(self):
        assert counter_key(hourly(5), "ip:1.2.3.4", 473364) == "ratelimit:hour:ip:1.2.3.4:473364"


class TestCheckLimit:
    @pytest.mark.asyncio
    async def test_sixth_request_in_hour_denied(self, limiter):
        tiers = [hourly(5)]
        for i in range(5):
            decision = await limiter.check_limit("member_app", tiers)
            assert isinstance(decision, RateLimitAllowed)
            assert decision.tiers[0].remaining == 4 - i

        decision = await limiter.check_limit("member_app", tiers)

        assert isinstance(decision, RateLimitDenied)
        assert decision.exceeded.tier == "hour"
        assert decision.exceeded.remaining == 0
        assert decision.retry_after == 30 * 60
        assert 0 < decision.retry_after <= HOUR

    @pytest.mark.asyncio
    async def test_next_window_gets_fresh_counter(self, limiter, clock):
        tiers = [hourly(5)]
        for _ in range(6):
            await limiter.check_limit("member_app", tiers)

        clock.now += 30 * 60

        decision = await limiter.check_limit("member_app", tiers)
        assert isinstance(decision, RateLimitAllowed)
        assert decision.tiers[0].remaining == 4

    @pytest.mark.asyncio
    async def test_denied_requests_still_count(self, limiter):
        tiers = [hourly(2)]
        for _ in range(4):
            await limiter.check_limit("abuser", tiers)

        status = await limiter.get_status("abuser", tiers)
        assert status[0].used == 4

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self, limiter):
        tiers = [hourly(1)]
        await limiter.check_limit("a", tiers)

        assert isinstance(await limiter.check_limit("b", tiers), RateLimitAllowed)
        assert isinstance(await limiter.check_limit("a", tiers), RateLimitDenied)

    @pytest.mark.asyncio
    async def test_most_restrictive_tier_reported(self, limiter):
        tiers = [hourly(2), daily(2)]
        for _ in range(2):
            await limiter.check_limit("client", tiers)

        decision = await limiter.check_limit("client", tiers)

        assert isinstance(decision, RateLimitDenied)
        assert {s.tier for s in decision.tiers if s.exceeded} == {"hour", "day"}
        assert decision.exceeded.tier == "day"
        assert decision.retry_after == 11 * HOUR + 30 * 60

    @pytest.mark.asyncio
    async def test_reset_is_next_window_boundary(self, limiter):
        decision = await limiter.check_limit("client", [hourly(10), daily(100)])

        hour, day = decision.tiers
        assert hour.reset == "2024-01-01T13:00:00Z"
        assert day.reset == "2024-01-02T00:00:00Z"

    @pytest.mark.asyncio
    async def test_fails_open_on_store_error(self, clock):
        store = MemoryCounterStore()
        store.incr = AsyncMock(side_effect=ConnectionError("counter store down"))
        limiter = RateLimiter(store, clock=clock)

        decision = await limiter.check_limit("client", [hourly(1)])

        assert isinstance(decision, RateLimitAllowed)
        assert decision.degraded is True
        assert decision.tiers[0].remaining == 1


class TestStatusAndReset:
    @pytest.mark.asyncio
    async def test_get_status_does_not_increment(self, limiter):
        tiers = [hourly(5)]
        await limiter.check_limit("client", tiers)

        await limiter.get_status("client", tiers)
        status = await limiter.get_status("client", tiers)

        assert status[0].used == 1
        assert status[0].remaining == 4

    @pytest.mark.asyncio
    async def test_reset_limit(self, limiter):
        tiers = [hourly(1), daily(10)]
        await limiter.check_limit("client", tiers)
        await limiter.check_limit("client", tiers)

        assert await limiter.reset_limit("client", tiers) == 2
        assert isinstance(await limiter.check_limit("client", tiers), RateLimitAllowed)

    @pytest.mark.asyncio
    async def test_get_status_propagates_store_errors(self, limiter):
        limiter.store.get = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            await limiter.get_status("client", [hourly(1)])


class TestHeadersAndBody:
    @pytest.mark.asyncio
    async def test_allowed_headers_per_tier(self, limiter):
        decision = await limiter.check_limit("client", [hourly(10), daily(100)])

        headers = rate_limit_headers(decision)

        assert headers["X-RateLimit-Limit-Hour"] == "10"
        assert headers["X-RateLimit-Remaining-Hour"] == "9"
        assert headers["X-RateLimit-Reset-Hour"] == "2024-01-01T13:00:00Z"
        assert headers["X-RateLimit-Limit-Day"] == "100"
        assert headers["X-RateLimit-Remaining-Day"] == "99"
        assert "Retry-After" not in headers

    @pytest.mark.asyncio
    async def test_denied_headers_and_body(self, limiter):
        await limiter.check_limit("client", [hourly(1)])
        decision = await limiter.check_limit("client", [hourly(1)])

        headers = rate_limit_headers(decision)
        body = decision.to_body()

        assert headers["Retry-After"] == "1800"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert body == {
            "error": "rate_limit_exceeded",
            "message": "Rate limit exceeded for hour window",
            "limit": 1,
            "remaining": 0,
            "reset": "2024-01-01T13:00:00Z",
            "retry_after": 1800,
        }


class TestMiddleware:
    def test_allowed_request_carries_headers(self, client: TestClient):
        response = client.get("/api/v1/webhooks/events")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit-Hour"] == "1000"
        assert response.headers["X-RateLimit-Remaining-Hour"] == "999"
        assert response.headers["X-RateLimit-Limit-Day"] == "10000"

    def test_denied_request_gets_429(self, client: TestClient):
        with patch("gim.middleware.rate_limit.settings.RATE_LIMIT_PER_HOUR", 2):
            for _ in range(2):
                assert client.get("/api/v1/webhooks/events").status_code == 200

            response = client.get("/api/v1/webhooks/events")

        assert response.status_code == 429
        assert response.headers["Retry-After"].isdigit()
        body = response.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["limit"] == 2
        assert body["remaining"] == 0
        assert body["retry_after"] >= 1

    def test_api_keys_counted_separately(self, client: TestClient):
        with patch("gim.middleware.rate_limit.settings.RATE_LIMIT_PER_HOUR", 1):
            assert client.get("/api/v1/webhooks/events", headers={"X-API-Key": "key-a"}).status_code == 200
            assert client.get("/api/v1/webhooks/events", headers={"X-API-Key": "key-b"}).status_code == 200
            assert client.get("/api/v1/webhooks/events", headers={"X-API-Key": "key-a"}).status_code == 429

    def test_health_is_exempt(self, client: TestClient):
        with patch("gim.middleware.rate_limit.settings.RATE_LIMIT_PER_HOUR", 1):
            for _ in range(3):
                response = client.get("/health")
                assert response.status_code == 200
                assert "X-RateLimit-Limit-Hour" not in response.headers

    def test_identifier_hashes_api_key(self):
        from starlette.requests import Request

        scope = {
            "type": "http",
            "headers": [(b"x-api-key", b"secret-key")],
            "client": ("10.0.0.1", 1234),
        }
        identifier = request_identifier(Request(scope))

        assert identifier.startswith("key:")
        assert "secret-key" not in identifier

    def test_identifier_falls_back_to_forwarded_ip(self):
        from starlette.requests import Request

        scope = {
            "type": "http",
            "headers": [(b"x-forwarded-for", b"203.0.113.7, 10.0.0.1")],
            "client": ("10.0.0.1", 1234),
        }
        assert request_identifier(Request(scope)) == "ip:203.0.113.7"


class TestAdminEndpoints:
    def test_disabled_without_admin_key(self, client: TestClient):
        with patch("gim.api.deps.settings.ADMIN_API_KEY", ""):
            response = client.get("/api/v1/rate-limits/ip:testclient")
        assert response.status_code == 403

    def test_status_and_reset(self, client: TestClient):
        headers = {"X-Admin-Key": "admin-secret", "X-API-Key": "ops"}
        with patch("gim.api.deps.settings.ADMIN_API_KEY", "admin-secret"):
            client.get("/api/v1/webhooks/events")
            client.get("/api/v1/webhooks/events")

            status = client.get("/api/v1/rate-limits/ip:testclient", headers=headers).json()
            hour = next(t for t in status["tiers"] if t["tier"] == "hour")
            assert hour["used"] == 2

            reset = client.delete("/api/v1/rate-limits/ip:testclient", headers=headers).json()
            assert reset["removed"] == 2

            status = client.get("/api/v1/rate-limits/ip:testclient", headers=headers).json()
            assert all(t["used"] == 0 for t in status["tiers"])
