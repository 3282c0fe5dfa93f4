"""
Combined circuit breaker + retry for outbound calls.

The breaker check is outermost: an open breaker rejects the call before a
first attempt is issued, and a fully retried call that still fails counts
as a single breaker failure.

Usage:
    result = await execute_resilient(
        request.app.state.circuit_breakers,
        "whatsapp",
        lambda: client.post(url, json=message),
        ErrorKind.EXTERNAL_API,
        aggregator=request.app.state.error_aggregator,
    )
"""

from typing import Any, Dict, Optional

from gim.core.circuit_breaker import CircuitBreakerRegistry
from gim.core.error_aggregator import ErrorAggregator
from gim.core.errors import ErrorKind
from gim.core.retry import Operation, execute_with_retry


async def execute_with_circuit_breaker(registry: CircuitBreakerRegistry, service: str, operation: Operation) -> Any:
    return await registry.execute(service, operation)


def get_circuit_breakers_status(registry: CircuitBreakerRegistry) -> Dict[str, Dict[str, Any]]:
    return registry.get_status()


async def execute_resilient(
    registry: CircuitBreakerRegistry,
    service: str,
    operation: Operation,
    kind: ErrorKind = ErrorKind.EXTERNAL_API,
    context: Optional[Dict[str, Any]] = None,
    aggregator: Optional[ErrorAggregator] = None,
) -> Any:
    """
    Run `operation` under `service`'s breaker with retries for `kind`.

    Failures (including CircuitOpenError) are passed to `aggregator` when
    given, then re-raised unchanged.
    """
    log_context = {"service": service, **(context or {})}
    try:
        return await registry.execute(
            service,
            lambda: execute_with_retry(operation, kind, context=log_context),
        )
    except Exception as e:
        if aggregator is not None:
            await aggregator.handle_error(e, log_context)
        raise
