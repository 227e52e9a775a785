"""
Circuit Breaker Pattern for Generation Backends.

Isolates each backend so a failing provider is skipped quickly instead of
eating the retry budget of every request routed through it.

Three States:
- CLOSED: backend healthy, calls go through
- OPEN: backend tripped, calls are refused without touching it
- HALF_OPEN: cooldown over, the next call decides

Transitions:
- CLOSED -> OPEN once the failure count reaches the threshold. Failures
  accumulate with no time decay; only a success resets the count.
- OPEN -> HALF_OPEN once the cooldown has elapsed since the last failure.
- HALF_OPEN -> CLOSED on the first success (failure count reset to 0).
- HALF_OPEN -> OPEN immediately on the next failure.

Usage:
    from research_agents.circuit_breaker import CircuitBreakerRegistry

    registry = CircuitBreakerRegistry()
    breaker = registry.get_or_create("openai")

    breaker.before_call()          # raises CircuitOpenError while open
    try:
        response = await backend.generate(prompt)
        breaker.record_success()
    except Exception as e:
        breaker.record_failure(e)
        raise
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.exceptions import AppException, ErrorCode

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(AppException):
    """A backend call refused because its breaker is open."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            code=ErrorCode.BACKEND_UNAVAILABLE,
            message=f"Circuit '{name}' is OPEN. Retry after {retry_after:.1f}s",
            details={"circuit": name, "retry_after": round(retry_after, 1)},
        )


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    cooldown_seconds: float = 120.0


@dataclass
class CircuitMetrics:
    """Lifetime counters for one breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    open_count: int = 0
    recovery_count: int = 0  # HALF_OPEN -> CLOSED transitions


class CircuitBreaker:
    """
    Per-backend circuit breaker.

    State lives behind a per-breaker lock; every method is synchronous so it
    can be consulted from any coroutine or thread without awaiting.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            name: Backend name this circuit protects
            config: Threshold and cooldown
            clock: Monotonic time source, injectable for tests
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._last_failure_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._metrics = CircuitMetrics()
        self._lock = threading.Lock()

        logger.debug(
            f"CircuitBreaker '{name}' initialized: threshold={self.config.failure_threshold}, "
            f"cooldown={self.config.cooldown_seconds}s"
        )

    @property
    def state(self) -> CircuitState:
        """Current circuit state, accounting for an elapsed cooldown."""
        with self._lock:
            self._refresh_state()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def metrics(self) -> CircuitMetrics:
        return self._metrics

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _transition_to(self, new_state: CircuitState):
        """Transition to a new state with logging. Caller holds the lock."""
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._metrics.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._metrics.open_count += 1
        elif new_state == CircuitState.CLOSED and old_state == CircuitState.HALF_OPEN:
            self._metrics.recovery_count += 1

        logger.warning(
            f"Circuit '{self.name}' {old_state.value} -> {new_state.value} "
            f"after {self._failure_count} failure(s)"
        )

    def _refresh_state(self):
        if self._state == CircuitState.OPEN and self._cooldown_remaining() <= 0:
            self._transition_to(CircuitState.HALF_OPEN)

    def _cooldown_remaining(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_time
        return self.config.cooldown_seconds - elapsed

    def allow_request(self) -> bool:
        """Whether a call may go through right now."""
        with self._lock:
            self._refresh_state()
            return self._state != CircuitState.OPEN

    def before_call(self):
        """Raise CircuitOpenError if the circuit is open."""
        with self._lock:
            self._refresh_state()
            if self._state == CircuitState.OPEN:
                self._metrics.rejected_calls += 1
                raise CircuitOpenError(self.name, max(0.0, self._cooldown_remaining()))

    def record_success(self):
        """Record a successful call; closes the circuit and resets the count."""
        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.successful_calls += 1
            self._failure_count = 0
            self._transition_to(CircuitState.CLOSED)

    def record_failure(self, error: Optional[BaseException] = None):
        """Count a failure and trip the circuit if it is due."""
        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.failed_calls += 1
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._last_failure_at = datetime.now(timezone.utc)
            if error is not None:
                self._last_error = str(error) or type(error).__name__

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await func(*args, **kwargs) behind this breaker.

        Raises:
            CircuitOpenError: while the circuit is open
            Exception: Any exception from func, after it is recorded
        """
        self.before_call()
        try:
            outcome = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return outcome

    def reset(self):
        """Force the circuit closed and forget past failures."""
        with self._lock:
            self._failure_count = 0
            self._last_failure_time = None
            self._transition_to(CircuitState.CLOSED)
            logger.info(f"Circuit '{self.name}' reset by hand")

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of state, counters and config."""
        with self._lock:
            self._refresh_state()
            retry_after = (
                max(0.0, self._cooldown_remaining())
                if self._state == CircuitState.OPEN else 0.0
            )
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "retry_after": round(retry_after, 1),
                "last_failure": self._last_failure_at.isoformat() if self._last_failure_at else None,
                "last_error": self._last_error,
                "metrics": asdict(self._metrics),
                "config": asdict(self.config),
            }


class CircuitBreakerRegistry:
    """
    One circuit breaker per backend name.

    Constructed once per service container and passed to whoever needs it;
    breakers are created lazily on first use.
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_or_create(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None
    ) -> CircuitBreaker:
        """The breaker for a backend, created on first use."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, config or self.default_config, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def reset_all(self):
        for breaker in list(self._breakers.values()):
            breaker.reset()

    def get_all_status(self) -> Dict[str, Any]:
        return {name: b.get_status() for name, b in list(self._breakers.items())}

    def get_health_summary(self) -> Dict[str, Any]:
        """Counts per state across every backend seen so far."""
        states = {name: b.state for name, b in list(self._breakers.items())}
        counts = Counter(states.values())
        total = len(states)

        unhealthy: List[str] = [name for name, s in states.items() if s != CircuitState.CLOSED]
        return {
            "total_circuits": total,
            "closed": counts[CircuitState.CLOSED],
            "open": counts[CircuitState.OPEN],
            "half_open": counts[CircuitState.HALF_OPEN],
            "health_percentage": round(counts[CircuitState.CLOSED] / total * 100, 1) if total else 100.0,
            "unhealthy_circuits": unhealthy,
        }
