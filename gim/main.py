from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from gim.api import deps, rate_limits, webhooks
from gim.core.circuit_breaker import CircuitBreakerRegistry
from gim.core.config import settings
from gim.core.counter_store import CounterStore, DatabaseCounterStore, MemoryCounterStore
from gim.core.error_aggregator import ErrorAggregator
from gim.core.errors import AppError, CircuitOpenError, capture_message, init_sentry
from gim.core.logging_config import get_logger
from gim.core.rate_limit import RateLimiter
from gim.core.resilience import get_circuit_breakers_status
from gim.db import create_db_and_tables, engine, get_session
from gim.middleware.context import RequestContextMiddleware
from gim.middleware.rate_limit import RateLimitMiddleware
from gim.services.delivery_queue import get_queue_stats

logger = get_logger(__name__)


def notify_circuit_change(service: str, old_state: str, new_state: str) -> None:
    """Forward breaker transitions to the alerting channel."""
    level = "warning" if new_state == "open" else "info"
    capture_message(
        f"Circuit breaker {service}: {old_state} -> {new_state}",
        level=level,
        context={"service": service, "old_state": old_state, "new_state": new_state},
        tags={"circuit": service},
    )


def build_counter_store() -> CounterStore:
    if settings.RATE_LIMIT_BACKEND == "database":
        store = DatabaseCounterStore(engine)
        # Windows left over from before the restart
        store.purge_expired()
        return store
    return MemoryCounterStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("GIM API starting", environment=settings.ENVIRONMENT)
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()

    app.state.circuit_breakers = CircuitBreakerRegistry(
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        reset_timeout=settings.CIRCUIT_RESET_TIMEOUT_SECONDS,
        success_threshold=settings.CIRCUIT_HALF_OPEN_SUCCESSES,
        engine=engine if settings.CIRCUIT_PERSIST_STATE else None,
        on_state_change=notify_circuit_change,
    )
    app.state.error_aggregator = ErrorAggregator(
        window_seconds=settings.ERROR_AGGREGATION_WINDOW_SECONDS,
        critical_count=settings.ERROR_CRITICAL_COUNT,
    )
    app.state.rate_limiter = RateLimiter(build_counter_store())

    app.state.error_aggregator.start(settings.ERROR_SWEEP_INTERVAL_SECONDS)
    try:
        yield
    finally:
        await app.state.error_aggregator.stop()
        logger.info("GIM API stopped")


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

# Middleware added last runs first: context -> rate limit -> routes
app.add_middleware(cast(Any, RateLimitMiddleware), enabled=settings.RATE_LIMIT_ENABLED)
app.add_middleware(cast(Any, RequestContextMiddleware))
# Trust X-Forwarded-* from the load balancer so client IPs are real
app.add_middleware(cast(Any, ProxyHeadersMiddleware), trusted_hosts=["*"])


@app.exception_handler(CircuitOpenError)
async def circuit_open_handler(request: Request, exc: CircuitOpenError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.message, "type": exc.kind.value, "service": exc.service}},
        headers={"Retry-After": str(max(1, int(round(exc.retry_after))))},
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    aggregator = getattr(request.app.state, "error_aggregator", None)
    if aggregator is not None and exc.status_code >= 500:
        await aggregator.handle_error(exc, {"path": request.url.path, "method": request.method})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.message, "type": exc.kind.value}},
    )


app.include_router(webhooks.router, prefix=settings.API_V1_STR)
app.include_router(rate_limits.router, prefix=settings.API_V1_STR)


@app.get("/health")
def health():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/circuits")
def health_circuits(registry: CircuitBreakerRegistry = Depends(deps.get_circuit_breakers)):
    """State of every circuit breaker referenced so far."""
    circuits = get_circuit_breakers_status(registry)
    open_circuits = [name for name, status in circuits.items() if status["state"] != "closed"]
    return {
        "status": "degraded" if open_circuits else "healthy",
        "open": open_circuits,
        "circuits": circuits,
    }


@app.get("/health/queue")
def health_queue(session: Session = Depends(get_session)):
    """Webhook delivery queue depth by status."""
    return {"queue": get_queue_stats(session)}
