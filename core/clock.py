"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Provides a testable clock abstraction for the connectivity layer.

- Rate limiters, retries and circuit breakers read time from it
- Timed waits go through clock.sleep() so tests can simulate them
- Timestamps handed to providers (request signing) come from it

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only
- Monotonic time for intervals, wall time for timestamps
- Mockable for deterministic tests

============================================================
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Generator, List, Optional
import asyncio
import threading
import time


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the system clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def timestamp(self) -> float:
        """Get current Unix timestamp in seconds."""
        pass

    @abstractmethod
    def monotonic_ms(self) -> float:
        """Get a monotonic reading in milliseconds."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task."""
        pass

    def epoch_ms(self) -> int:
        """Get current Unix timestamp in milliseconds."""
        return int(self.timestamp() * 1000)

    def format_iso(self, dt: Optional[datetime] = None) -> str:
        """Format datetime as ISO 8601."""
        dt = dt or self.now()
        return dt.isoformat()


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock backed by the OS and the event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        return time.time()

    def monotonic_ms(self) -> float:
        return time.monotonic() * 1000

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Simulated clock for testing.

    sleep() yields to the event loop once, then advances virtual
    time instead of waiting. Tasks woken before the sleep run at
    the old time. Every requested sleep is recorded in `sleeps`
    (seconds) so tests can assert delay sequences.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting wall time (defaults to current UTC)
        """
        self._time = initial_time or datetime.now(timezone.utc)
        self._elapsed_ms = 0.0
        self._lock = threading.Lock()
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def timestamp(self) -> float:
        with self._lock:
            return self._time.timestamp()

    def monotonic_ms(self) -> float:
        with self._lock:
            return self._elapsed_ms

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        self.advance(seconds)

    def set_time(self, new_time: datetime) -> None:
        """Set the current wall time."""
        with self._lock:
            if new_time.tzinfo is None:
                new_time = new_time.replace(tzinfo=timezone.utc)
            self._time = new_time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (minutes, hours, ...)
        """
        with self._lock:
            delta = timedelta(**kwargs)
            self._time = self._time + delta + timedelta(seconds=seconds)
            self._elapsed_ms += seconds * 1000 + delta.total_seconds() * 1000


# ============================================================
# CLOCK FACTORY
# ============================================================

class ClockFactory:
    """Holds the process-wide clock instance."""

    _instance: Optional[ClockProtocol] = None
    _lock = threading.Lock()

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        """Get the global clock instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = SystemClock()
            return cls._instance

    @classmethod
    def set_clock(cls, clock: ClockProtocol) -> None:
        """Set the global clock instance."""
        with cls._lock:
            cls._instance = clock

    @classmethod
    def reset(cls) -> None:
        """Reset to default system clock."""
        with cls._lock:
            cls._instance = SystemClock()

    @classmethod
    @contextmanager
    def use_mock(
        cls,
        initial_time: Optional[datetime] = None,
    ) -> Generator[MockClock, None, None]:
        """
        Context manager to use a mock clock temporarily.

        Args:
            initial_time: Initial time for mock clock
        """
        original = cls._instance
        mock = MockClock(initial_time)
        cls.set_clock(mock)
        try:
            yield mock
        finally:
            cls._instance = original


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def ms_to_iso8601(epoch_ms: float) -> str:
    """Convert epoch milliseconds to an ISO 8601 UTC string."""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


def parse_rfc3339_ms(value: str) -> int:
    """
    Parse an RFC 3339 timestamp to epoch milliseconds.

    Accepts a trailing 'Z' and fractional seconds of any length
    (providers send nanosecond precision).
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    # Trim fractional seconds to microseconds
    if "." in text:
        head, rest = text.split(".", 1)
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"

    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def now_utc() -> datetime:
    """Get current UTC time using global clock."""
    return ClockFactory.get_clock().now()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
    "ms_to_iso8601",
    "parse_rfc3339_ms",
    "now_utc",
]
