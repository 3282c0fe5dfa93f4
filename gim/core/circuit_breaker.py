"""
Per-service circuit breakers.

One CircuitBreaker per logical external service (e.g. "whatsapp", "gemini",
"payments"), owned by a CircuitBreakerRegistry created at application start
and passed to every caller.

    CLOSED --(failures >= threshold)--> OPEN
    OPEN --(reset timeout elapsed since last failure)--> HALF_OPEN
    HALF_OPEN --(success_threshold consecutive successes)--> CLOSED
    HALF_OPEN --(any failure)--> OPEN

Usage:
    registry = CircuitBreakerRegistry(failure_threshold=5, reset_timeout=60)

    try:
        reply = await registry.execute("gemini", lambda: gemini.generate(prompt))
    except CircuitOpenError:
        # Dependency never called; degrade gracefully
        ...
"""

import inspect
from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from gim.core.errors import CircuitOpenError
from gim.core.typing import as_utc, utc_now
from gim.models.circuit_breaker_state import CircuitBreakerState

logger = structlog.get_logger(__name__)

# (name, old_state, new_state) - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]


def _persist_state(
    engine: Engine,
    name: str,
    state: str,
    failure_count: int,
    success_count: int,
    last_failure_at: Optional[datetime],
) -> None:
    """Persist circuit breaker state to database."""
    try:
        with Session(engine) as session:
            db_state = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()

            if db_state:
                db_state.state = state
                db_state.failure_count = failure_count
                db_state.success_count = success_count
                db_state.last_failure_at = last_failure_at
                db_state.updated_at = utc_now()
            else:
                db_state = CircuitBreakerState(
                    name=name,
                    state=state,
                    failure_count=failure_count,
                    success_count=success_count,
                    last_failure_at=last_failure_at,
                )
            session.add(db_state)
            session.commit()
    except Exception as e:
        # Don't let persistence failures break the circuit breaker
        logger.warning("Failed to persist circuit breaker state", circuit=name, error=str(e))


def _load_state(engine: Engine, name: str) -> Optional[Dict[str, Any]]:
    try:
        with Session(engine) as session:
            db_state = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()

            if db_state:
                return {
                    "state": db_state.state,
                    "failure_count": db_state.failure_count,
                    "success_count": db_state.success_count,
                    "last_failure_at": as_utc(db_state.last_failure_at),
                }
    except Exception as e:
        logger.warning("Failed to load circuit breaker state", circuit=name, error=str(e))
    return None


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds
    success_threshold: int = 2  # consecutive HALF_OPEN successes needed to close
    engine: Optional[Engine] = None  # persist state when set
    on_state_change: Optional[StateChangeCallback] = None

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    def __post_init__(self):
        """Restore state from database if persistence is enabled."""
        if self.engine is not None:
            saved = _load_state(self.engine, self.name)
            if saved:
                try:
                    self._state = CircuitState(saved.get("state", "closed"))
                except ValueError:
                    self._state = CircuitState.CLOSED
                self._failure_count = saved.get("failure_count", 0)
                self._success_count = saved.get("success_count", 0)
                self._last_failure_time = saved.get("last_failure_at")
                logger.info(
                    "Circuit state restored",
                    circuit=self.name,
                    state=self._state.value,
                    failures=self._failure_count,
                )

    def _persist(self) -> None:
        if self.engine is not None:
            _persist_state(
                self.engine,
                self.name,
                self._state.value,
                self._failure_count,
                self._success_count,
                self._last_failure_time,
            )

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        """Must be called while holding self._lock."""
        old_state = self._state
        self._state = new_state
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit state changed",
            circuit=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            reason=reason,
            failures=self._failure_count,
            threshold=self.failure_threshold,
        )
        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_state.value, new_state.value)
            except Exception as e:
                logger.error("Circuit breaker notification failed", circuit=self.name, error=str(e))

    @property
    def state(self) -> CircuitState:
        """Return current state. Use allow_request() for state transitions."""
        return self._state

    def seconds_until_probe(self) -> float:
        """Seconds left before an OPEN breaker lets a probe through (0 otherwise)."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
        return max(0.0, self.reset_timeout - elapsed)

    def _check_recovery_transition(self) -> bool:
        """
        Check if circuit should transition from OPEN to HALF_OPEN.

        Must be called while holding self._lock.
        Returns True if state changed (for persistence).
        """
        if self._state == CircuitState.OPEN and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.reset_timeout:
                self._half_open_calls = 0
                self._success_count = 0
                self._transition(CircuitState.HALF_OPEN, "reset timeout elapsed")
                return True
        return False

    def record_success(self):
        state_changed = False
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._failure_count = 0
                    self._success_count = 0
                    self._half_open_calls = 0
                    self._transition(CircuitState.CLOSED, "recovery confirmed")
                    state_changed = True
            else:
                self._failure_count = 0
        # Persist outside lock to avoid holding lock during DB operation
        if state_changed:
            self._persist()

    def record_failure(self):
        state_changed = False
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                self._success_count = 0
                self._transition(CircuitState.OPEN, "failure during recovery")
                state_changed = True
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN, "threshold reached")
                state_changed = True
        if state_changed:
            self._persist()

    def allow_request(self) -> bool:
        state_changed = False
        with self._lock:
            state_changed = self._check_recovery_transition()

            if self._state == CircuitState.CLOSED:
                result = True
            elif self._state == CircuitState.OPEN:
                result = False
            else:  # HALF_OPEN
                self._half_open_calls += 1
                result = self._half_open_calls <= self.success_threshold
        if state_changed:
            self._persist()
        return result

    async def execute(self, operation: Callable[[], Any]) -> Any:
        """
        Run `operation` through the breaker.

        Raises:
            CircuitOpenError: breaker is open; operation not invoked
            Exception: whatever the operation raised (breaker updated first)
        """
        if not self.allow_request():
            retry_after = self.seconds_until_probe()
            logger.info("Circuit open, failing fast", circuit=self.name, retry_after=round(retry_after, 1))
            raise CircuitOpenError(self.name, retry_after)

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        return {
            "service": self.name,
            "state": self._state.value,
            "failures": self._failure_count,
            "half_open_successes": self._success_count,
            "last_failure_at": self._last_failure_time.isoformat() if self._last_failure_time else None,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "success_threshold": self.success_threshold,
        }


class CircuitBreakerRegistry:
    """
    Breakers keyed by service name, created lazily with the registry defaults.

    Owned by the application's lifespan (app.state.circuit_breakers); never a
    module-level global.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 2,
        engine: Optional[Engine] = None,
        on_state_change: Optional[StateChangeCallback] = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.engine = engine
        self.on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, **kwargs) -> CircuitBreaker:
        """Return the breaker for `name`, creating it on first reference."""
        if name not in self._breakers:
            options = {
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                "success_threshold": self.success_threshold,
                "engine": self.engine,
                "on_state_change": self.on_state_change,
                **kwargs,
            }
            self._breakers[name] = CircuitBreaker(name=name, **options)
        return self._breakers[name]

    async def execute(self, service: str, operation: Callable[[], Any], **kwargs) -> Any:
        return await self.get(service, **kwargs).execute(operation)

    def get_all_states(self) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in self._breakers.items()}

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Operational introspection of every breaker referenced so far."""
        return {name: cb.snapshot() for name, cb in self._breakers.items()}
