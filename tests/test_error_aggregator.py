"""
Tests for error aggregation and escalation.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from gim.core.error_aggregator import ErrorAggregator, Severity
from gim.core.errors import AppError, ErrorKind


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alert():
    return MagicMock()


@pytest.fixture
def aggregator(clock, alert):
    return ErrorAggregator(window_seconds=60, critical_count=10, clock=clock, alert=alert)


class TestShouldReport:
    def test_first_report_then_suppressed(self, aggregator):
        assert aggregator.should_report(ErrorKind.NETWORK, "timeout") is True
        assert aggregator.should_report(ErrorKind.NETWORK, "timeout") is False

    def test_reports_again_after_window_with_aggregated_count(self, aggregator, clock):
        assert aggregator.should_report(ErrorKind.NETWORK, "timeout") is True
        assert aggregator.should_report(ErrorKind.NETWORK, "timeout") is False

        clock.advance(61)
        metadata = {}
        assert aggregator.should_report(ErrorKind.NETWORK, "timeout", metadata) is True
        assert metadata["aggregated_count"] >= 2

    def test_window_restarts_after_report(self, aggregator, clock):
        aggregator.should_report(ErrorKind.NETWORK, "timeout")
        clock.advance(61)
        aggregator.should_report(ErrorKind.NETWORK, "timeout")

        clock.advance(30)
        assert aggregator.should_report(ErrorKind.NETWORK, "timeout") is False

    def test_keys_by_kind_and_message(self, aggregator):
        assert aggregator.should_report(ErrorKind.NETWORK, "timeout") is True
        assert aggregator.should_report(ErrorKind.DATABASE, "timeout") is True
        assert aggregator.should_report(ErrorKind.NETWORK, "reset") is True
        assert len(aggregator) == 3


class TestEscalation:
    @pytest.mark.parametrize(
        "kind, expected",
        [
            (ErrorKind.SYSTEM, Severity.CRITICAL),
            (ErrorKind.DATABASE, Severity.HIGH),
            (ErrorKind.EXTERNAL_API, Severity.HIGH),
            (ErrorKind.NETWORK, Severity.MEDIUM),
            (ErrorKind.VALIDATION, Severity.MEDIUM),
            (ErrorKind.BUSINESS, Severity.LOW),
            (ErrorKind.AUTHENTICATION, Severity.LOW),
        ],
    )
    def test_level_by_kind(self, aggregator, kind, expected):
        assert aggregator.get_escalation_level(AppError("x", kind)) == expected

    def test_high_aggregated_count_is_critical(self, aggregator):
        error = AppError("slow query", ErrorKind.NETWORK, metadata={"aggregated_count": 11})
        assert aggregator.get_escalation_level(error) == Severity.CRITICAL

    def test_count_at_threshold_is_not_critical(self, aggregator):
        error = AppError("slow query", ErrorKind.NETWORK, metadata={"aggregated_count": 10})
        assert aggregator.get_escalation_level(error) == Severity.MEDIUM


class TestHandleError:
    @pytest.mark.asyncio
    async def test_normalizes_unknown_exceptions(self, aggregator, alert):
        app_error = await aggregator.handle_error(KeyError("member"), {"service": "checkins"})

        assert app_error.kind == ErrorKind.SYSTEM
        assert app_error.metadata["service"] == "checkins"
        alert.assert_called_once()
        assert alert.call_args[0][1] == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_non_critical_does_not_alert(self, aggregator, alert):
        await aggregator.handle_error(AppError("upstream 502", ErrorKind.EXTERNAL_API))
        alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicates_do_not_alert_twice(self, aggregator, alert):
        for _ in range(5):
            await aggregator.handle_error(RuntimeError("disk full"))
        assert alert.call_count == 1

    @pytest.mark.asyncio
    async def test_burst_escalates_to_critical(self, aggregator, alert, clock):
        for _ in range(12):
            await aggregator.handle_error(AppError("gateway timeout", ErrorKind.NETWORK))
        alert.assert_not_called()

        clock.advance(61)
        error = await aggregator.handle_error(AppError("gateway timeout", ErrorKind.NETWORK))

        assert error.metadata["aggregated_count"] == 13
        alert.assert_called_once()

    @pytest.mark.asyncio
    async def test_alert_failure_is_swallowed(self, clock):
        aggregator = ErrorAggregator(clock=clock, alert=MagicMock(side_effect=RuntimeError("sentry down")))

        error = await aggregator.handle_error(RuntimeError("boom"))

        assert error.kind == ErrorKind.SYSTEM

    @pytest.mark.asyncio
    async def test_reused_error_instance_is_not_mutated(self, aggregator, clock):
        error = AppError("gateway timeout", ErrorKind.NETWORK, metadata={"service": "whatsapp"})
        for _ in range(12):
            await aggregator.handle_error(error, {"path": "/checkins"})
        clock.advance(61)

        first = await aggregator.handle_error(error, {"path": "/classes"})
        clock.advance(61)
        second = await aggregator.handle_error(error)

        assert error.metadata == {"service": "whatsapp"}
        assert first.metadata == {"service": "whatsapp", "path": "/classes", "aggregated_count": 13}
        assert second.metadata == {"service": "whatsapp", "aggregated_count": 2}


class TestSweep:
    def test_evicts_records_untouched_for_two_windows(self, aggregator, clock):
        aggregator.should_report(ErrorKind.NETWORK, "old")
        clock.advance(100)
        aggregator.should_report(ErrorKind.NETWORK, "recent")
        clock.advance(30)

        removed = aggregator.sweep()

        assert removed == 1
        assert len(aggregator) == 1

    @pytest.mark.asyncio
    async def test_background_sweep_lifecycle(self, clock):
        aggregator = ErrorAggregator(window_seconds=1, clock=clock)
        aggregator.should_report(ErrorKind.NETWORK, "timeout")
        clock.advance(5)

        aggregator.start(interval_seconds=0.01)
        for _ in range(100):
            if len(aggregator) == 0:
                break
            await asyncio.sleep(0.01)
        await aggregator.stop()

        assert len(aggregator) == 0
        assert aggregator._sweep_task is None
