"""
Retry executor with classified, bounded, jittered exponential backoff.

Each ErrorKind maps to a RetryPolicy. Attempt 0 runs immediately; attempt k
(k >= 1) first sleeps min(base * 2^(k-1), max) +/- 20% jitter. Kinds that are
not retryable (validation, auth, business, system) run exactly once.

Callers are responsible for idempotency: a payment call must carry an
idempotency key before it is wrapped here.

Usage:
    from gim.core.retry import execute_with_retry
    from gim.core.errors import ErrorKind

    result = await execute_with_retry(
        lambda: client.post(url, json=body),
        ErrorKind.EXTERNAL_API,
        context={"service": "whatsapp"},
    )
"""

import asyncio
import inspect
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar, Union

import structlog

from gim.core.errors import ErrorKind

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Union[Awaitable[T], T]]

JITTER_RATIO = 0.2


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration for one error kind. Delays in seconds."""

    max_retries: int  # attempts after the initial call
    base_delay: float
    max_delay: float
    retryable: bool = True


RETRY_POLICIES: Mapping[ErrorKind, RetryPolicy] = {
    ErrorKind.NETWORK: RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0),
    ErrorKind.EXTERNAL_API: RetryPolicy(max_retries=3, base_delay=2.0, max_delay=15.0),
    ErrorKind.DATABASE: RetryPolicy(max_retries=2, base_delay=0.5, max_delay=5.0),
    # Retrying these would be incorrect: the condition will not change
    ErrorKind.SYSTEM: RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, retryable=False),
    ErrorKind.VALIDATION: RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, retryable=False),
    ErrorKind.BUSINESS: RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, retryable=False),
    ErrorKind.AUTHENTICATION: RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, retryable=False),
    ErrorKind.AUTHORIZATION: RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, retryable=False),
}


def get_policy(kind: ErrorKind, policies: Optional[Mapping[ErrorKind, RetryPolicy]] = None) -> RetryPolicy:
    policies = policies if policies is not None else RETRY_POLICIES
    return policies.get(kind, RETRY_POLICIES[ErrorKind.SYSTEM])


def compute_backoff(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Delay in seconds before retry `attempt` (1-based).

    Always within [d * 0.8, d * 1.2] where d = min(base * 2^(attempt-1), max).
    """
    if attempt < 1:
        return 0.0
    delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    jitter = delay * JITTER_RATIO * rng(-1.0, 1.0)
    return max(0.0, delay + jitter)


async def execute_with_retry(
    operation: Operation,
    kind: ErrorKind = ErrorKind.SYSTEM,
    context: Optional[Dict[str, Any]] = None,
    policies: Optional[Mapping[ErrorKind, RetryPolicy]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Run `operation` under the retry policy for `kind`.

    Args:
        operation: Zero-argument callable; may return a value or an awaitable
        kind: Error classification selecting the RetryPolicy
        context: Extra fields for every attempt log line
        policies: Override policy table (tests, per-service tuning)
        sleep: Awaitable sleep function (injectable for tests)

    Returns:
        The operation's result

    Raises:
        The last error raised by the operation, unchanged
    """
    policy = get_policy(kind, policies)
    max_retries = policy.max_retries if policy.retryable else 0
    log_context = {"error_kind": kind.value, "max_retries": max_retries, **(context or {})}

    last_error: Optional[BaseException] = None
    for attempt in range(max_retries + 1):
        if attempt > 0:
            delay = compute_backoff(attempt, policy)
            logger.warning(
                "Retrying operation",
                attempt=attempt,
                delay_seconds=round(delay, 3),
                **log_context,
            )
            await sleep(delay)

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            last_error = e
            logger.error(
                "Operation failed",
                attempt=attempt,
                error=str(e),
                error_type=type(e).__name__,
                **log_context,
            )
            continue

        logger.info("Operation succeeded", attempt=attempt, **log_context)
        return result

    assert last_error is not None
    raise last_error
