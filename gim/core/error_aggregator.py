"""
Error aggregation and escalation.

Repeated identical failures (same kind + message) are counted but reported
only once per aggregation window; when the window has elapsed the next
occurrence reports again carrying the suppressed count as
metadata["aggregated_count"].

Severity decides how loudly a reported error is surfaced. Only CRITICAL
reaches the alerting channel (Sentry); the aggregator itself never alerts,
handle_error() does.

Usage:
    aggregator = ErrorAggregator(window_seconds=60)
    aggregator.start()                  # background sweep, in lifespan
    ...
    app_error = await aggregator.handle_error(exc, context={"service": "gemini"})
    ...
    await aggregator.stop()
"""

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from gim.core.errors import AppError, ErrorKind, capture_exception, normalize_error

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class ErrorRecord:
    count: int
    first_seen: float
    last_seen: float
    reported: bool = False


AlertCallback = Callable[[AppError, Severity], Any]


def _default_alert(error: AppError, severity: Severity) -> None:
    capture_exception(
        error,
        context={"escalation_level": severity.value, **error.metadata},
        level="fatal",
        fingerprint=[error.kind.value, error.message],
        tags={"escalation_level": severity.value, "error_kind": error.kind.value},
    )


class ErrorAggregator:
    def __init__(
        self,
        window_seconds: float = 60.0,
        critical_count: int = 10,
        clock: Callable[[], float] = time.monotonic,
        alert: Optional[AlertCallback] = None,
    ):
        self.window_seconds = window_seconds
        self.critical_count = critical_count
        self._clock = clock
        self._alert = alert or _default_alert
        self._records: Dict[Tuple[str, str], ErrorRecord] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._records)

    def should_report(
        self,
        kind: ErrorKind,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Decide whether this occurrence should be reported.

        First occurrence always reports. Later occurrences inside the window
        are counted and suppressed. Once the window has elapsed since the
        record's first sighting, the next occurrence reports, writes the
        accumulated count into `metadata["aggregated_count"]` (when a dict is
        given) and restarts the window.
        """
        key = (kind.value, message)
        now = self._clock()
        record = self._records.get(key)

        if record is None:
            self._records[key] = ErrorRecord(count=1, first_seen=now, last_seen=now)
            return True

        record.count += 1
        record.last_seen = now

        if now - record.first_seen >= self.window_seconds:
            aggregated_count = record.count
            self._records[key] = ErrorRecord(count=1, first_seen=now, last_seen=now, reported=True)
            if metadata is not None:
                metadata["aggregated_count"] = aggregated_count
            return True

        return False

    def get_escalation_level(self, error: AppError) -> Severity:
        if error.kind == ErrorKind.SYSTEM or error.metadata.get("aggregated_count", 0) > self.critical_count:
            return Severity.CRITICAL
        if error.kind in (ErrorKind.DATABASE, ErrorKind.EXTERNAL_API):
            return Severity.HIGH
        if error.kind in (ErrorKind.NETWORK, ErrorKind.VALIDATION):
            return Severity.MEDIUM
        return Severity.LOW

    async def handle_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> AppError:
        """
        Normalize, aggregate and escalate an error. Never raises.

        Returns:
            A new AppError carrying the context (and aggregated_count when
            the report closes a window); `error` itself is left unchanged
        """
        normalized = normalize_error(error)
        # Annotate a copy, never the caller's instance
        app_error = AppError(
            normalized.message,
            normalized.kind,
            normalized.status_code,
            {**normalized.metadata, **(context or {})},
        )

        if not self.should_report(app_error.kind, app_error.message, app_error.metadata):
            logger.debug("Duplicate error suppressed", error_kind=app_error.kind.value, message=app_error.message)
            return app_error

        severity = self.get_escalation_level(app_error)
        log = logger.critical if severity == Severity.CRITICAL else logger.error
        log(app_error.message, error=app_error.to_dict(), escalation_level=severity.value)

        if severity == Severity.CRITICAL:
            try:
                result = self._alert(app_error, severity)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Alert channel failed", error=str(e))

        return app_error

    def sweep(self) -> int:
        """Evict records untouched for more than twice the window. Returns count removed."""
        cutoff = self._clock() - self.window_seconds * 2
        stale = [key for key, record in self._records.items() if record.last_seen < cutoff]
        for key in stale:
            del self._records[key]
        if stale:
            logger.debug("Error records swept", removed=len(stale), remaining=len(self._records))
        return len(stale)

    def start(self, interval_seconds: float = 300.0) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return

        async def _sweep_loop():
            while True:
                await asyncio.sleep(interval_seconds)
                self.sweep()

        self._sweep_task = asyncio.create_task(_sweep_loop())
        logger.info("Error aggregator sweep started", interval_seconds=interval_seconds)

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None
        logger.info("Error aggregator sweep stopped")
