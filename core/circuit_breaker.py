"""
Core Module - Circuit Breaker.

============================================================
PURPOSE
============================================================
Stops calling a provider that keeps failing.

CLOSED     normal operation, failures are counted
OPEN       calls fail fast with CircuitOpenError
HALF_OPEN  trial calls; enough successes close the circuit,
           any failure reopens it

============================================================
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import CircuitOpenError, InvalidConfigError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker thresholds."""

    failure_threshold: int = 5
    """Failures within the window that open the circuit."""

    failure_window_ms: float = 60000
    """Sliding window for counting failures."""

    reset_timeout_ms: float = 30000
    """Time spent OPEN before trial calls are allowed."""

    success_threshold: int = 2
    """Successes in HALF_OPEN that close the circuit."""

    def __post_init__(self) -> None:
        if self.failure_threshold <= 0:
            raise InvalidConfigError(
                "failure_threshold", self.failure_threshold, "must be > 0"
            )
        if self.success_threshold <= 0:
            raise InvalidConfigError(
                "success_threshold", self.success_threshold, "must be > 0"
            )
        if self.failure_window_ms <= 0 or self.reset_timeout_ms < 0:
            raise InvalidConfigError(
                "failure_window_ms", self.failure_window_ms, "invalid timing"
            )


class CircuitBreaker:
    """Per-provider circuit breaker."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or ClockFactory.get_clock()

        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._successes = 0
        self._opened_at_ms: Optional[float] = None
        self._total_calls = 0
        self._total_failures = 0
        self._total_rejected = 0

    @property
    def state(self) -> CircuitState:
        self._maybe_half_open()
        return self._state

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run the operation unless the circuit is open.

        Raises:
            CircuitOpenError: Circuit is OPEN
        """
        self._maybe_half_open()

        if self._state == CircuitState.OPEN:
            self._total_rejected += 1
            elapsed = self._clock.monotonic_ms() - (self._opened_at_ms or 0)
            raise CircuitOpenError(
                self._name, max(0.0, self._config.reset_timeout_ms - elapsed)
            )

        self._total_calls += 1
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at_ms is None:
            return
        elapsed = self._clock.monotonic_ms() - self._opened_at_ms
        if elapsed >= self._config.reset_timeout_ms:
            self._transition(CircuitState.HALF_OPEN)

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self._config.success_threshold:
                self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._total_failures += 1
        now = self._clock.monotonic_ms()

        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return

        self._failures.append(now)
        while self._failures and self._failures[0] <= now - self._config.failure_window_ms:
            self._failures.popleft()

        if len(self._failures) >= self._config.failure_threshold:
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at_ms = self._clock.monotonic_ms()
            self._successes = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._successes = 0
        else:
            self._failures.clear()
            self._successes = 0
            self._opened_at_ms = None

        logger.warning(
            f"[CircuitBreaker:{self._name}] {old_state.value} -> {new_state.value}"
        )

    def stats(self) -> Dict[str, Any]:
        """Snapshot of breaker counters."""
        return {
            "name": self._name,
            "state": self.state.value,
            "recent_failures": len(self._failures),
            "total_calls": self._total_calls,
            "total_failures": self._total_failures,
            "total_rejected": self._total_rejected,
        }

    def reset(self) -> None:
        """Force the circuit CLOSED and clear counters."""
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._successes = 0
        self._opened_at_ms = None
        self._total_calls = 0
        self._total_failures = 0
        self._total_rejected = 0


__all__ = [
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreaker",
]
