"""
Core Module - Rate Limiter.

============================================================
PURPOSE
============================================================
Token-bucket admission control, one instance per provider.

- Bucket holds at most max_requests tokens, starts full
- Refills continuously at max_requests per window_ms
- Waiters are admitted strictly in arrival order (FIFO)
- A single drain task per limiter performs admissions
- Optional minimum spacing between consecutive admissions

With strict_window (default) an admission log additionally
guarantees that no window_ms interval ever sees more than
max_requests admissions, including the initial full bucket.

============================================================
CONCURRENCY
============================================================
State is only touched from the event loop. Refill, token
consumption and admission of the head waiter happen with no
await in between.

============================================================
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional, TypeVar

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import (
    ConfigurationError,
    InvalidConfigError,
    RateLimitTimeoutError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Minimum sleep while waiting for a token
MIN_TOKEN_WAIT_MS = 100.0


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class RateLimiterConfig:
    """Rate limit parameters for one provider."""

    max_requests: int
    """Requests allowed per window."""

    window_ms: float
    """Window length in milliseconds."""

    min_interval_ms: Optional[float] = None
    """Minimum spacing between consecutive admissions."""

    strict_window: bool = True
    """Also cap admissions per sliding window (burst guard)."""

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise InvalidConfigError("max_requests", self.max_requests, "must be > 0")
        if self.window_ms <= 0:
            raise InvalidConfigError("window_ms", self.window_ms, "must be > 0")
        if self.min_interval_ms is not None and self.min_interval_ms < 0:
            raise InvalidConfigError(
                "min_interval_ms", self.min_interval_ms, "must be >= 0"
            )


DEFAULT_RATE_LIMITS: Dict[str, RateLimiterConfig] = {
    "binance": RateLimiterConfig(max_requests=1200, window_ms=60000, min_interval_ms=50),
    "coinbase": RateLimiterConfig(max_requests=10, window_ms=1000, min_interval_ms=100),
    "alpaca": RateLimiterConfig(max_requests=200, window_ms=60000, min_interval_ms=300),
    "ibkr": RateLimiterConfig(max_requests=100, window_ms=60000),
    "default": RateLimiterConfig(max_requests=60, window_ms=60000, min_interval_ms=1000),
}


# ============================================================
# RATE LIMITER
# ============================================================

class RateLimiter:
    """
    Token bucket with a FIFO admission queue.

    Usage:
        limiter = RateLimiter(RateLimiterConfig(10, 1000), name="coinbase")
        result = await limiter.execute(lambda: client.fetch())
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        name: str = "default",
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config
        self._name = name
        self._clock = clock or ClockFactory.get_clock()

        self._tokens = float(config.max_requests)
        self._last_refill_ms = self._clock.monotonic_ms()
        self._queue: Deque[asyncio.Future] = deque()
        self._admissions: Deque[float] = deque()
        self._drain_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------
    # Properties
    # -------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    @property
    def token_count(self) -> float:
        """Available tokens after refilling."""
        self._refill()
        return self._tokens

    @property
    def queue_length(self) -> int:
        """Waiters not yet admitted."""
        return sum(1 for waiter in self._queue if not waiter.done())

    @property
    def admission_log_size(self) -> int:
        """Admissions remembered for the sliding window check."""
        return len(self._admissions)

    # -------------------------------------------------------
    # Public API
    # -------------------------------------------------------

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Wait for admission, then run the operation.

        Args:
            operation: Zero-argument coroutine function
            timeout: Optional bound (seconds) on the admission wait

        Returns:
            The operation's result; its failures propagate untouched

        Raises:
            RateLimitTimeoutError: Not admitted before the timeout
        """
        await self._acquire(timeout)
        return await operation()

    def reset(self) -> None:
        """Refill the bucket, drop all waiters and stop draining."""
        for waiter in self._queue:
            if not waiter.done() and not waiter.get_loop().is_closed():
                waiter.cancel()
        self._queue.clear()
        self._admissions.clear()
        self._tokens = float(self._config.max_requests)
        self._last_refill_ms = self._clock.monotonic_ms()

        task = self._drain_task
        if task is not None and not task.done() and not task.get_loop().is_closed():
            task.cancel()
        self._drain_task = None

    # -------------------------------------------------------
    # Admission
    # -------------------------------------------------------

    async def _acquire(self, timeout: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._queue.append(waiter)
        self._ensure_draining()

        try:
            if timeout is None:
                await waiter
            else:
                await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except asyncio.TimeoutError:
            if waiter.done() and not waiter.cancelled():
                return
            self._discard(waiter)
            logger.warning(
                f"[RateLimiter:{self._name}] admission timed out after {timeout}s "
                f"(queue={self.queue_length})"
            )
            raise RateLimitTimeoutError(self._name, timeout)
        except asyncio.CancelledError:
            self._discard(waiter)
            raise

    def _discard(self, waiter: asyncio.Future) -> None:
        if not waiter.done():
            waiter.cancel()
        try:
            self._queue.remove(waiter)
        except ValueError:  # already popped by the drain task
            pass

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                head = self._queue[0]
                if head.done():
                    self._queue.popleft()
                    continue

                wait_ms = self._admission_delay_ms()
                if wait_ms > 0:
                    await self._clock.sleep(wait_ms / 1000)
                    continue

                self._tokens = max(0.0, self._tokens - 1)
                if self._config.strict_window:
                    self._admissions.append(self._clock.monotonic_ms())
                self._queue.popleft()
                head.set_result(None)

                if self._config.min_interval_ms:
                    await self._clock.sleep(self._config.min_interval_ms / 1000)
        finally:
            if self._drain_task is asyncio.current_task():
                self._drain_task = None

    def _admission_delay_ms(self) -> float:
        """Milliseconds until the head waiter may be admitted, 0 if now."""
        self._refill()
        config = self._config
        delay = 0.0

        if self._tokens < 1:
            per_token_ms = config.window_ms / config.max_requests
            delay = max(MIN_TOKEN_WAIT_MS, per_token_ms * (1 - self._tokens))

        if config.strict_window:
            now = self._clock.monotonic_ms()
            while self._admissions and self._admissions[0] <= now - config.window_ms:
                self._admissions.popleft()
            if len(self._admissions) >= config.max_requests:
                remaining = self._admissions[0] + config.window_ms - now
                delay = max(delay, remaining, 1.0)

        return delay

    def _refill(self) -> None:
        now = self._clock.monotonic_ms()
        elapsed = now - self._last_refill_ms
        if elapsed <= 0:
            return
        max_tokens = float(self._config.max_requests)
        self._tokens = min(
            max_tokens,
            self._tokens + elapsed / self._config.window_ms * max_tokens,
        )
        self._last_refill_ms = now


# ============================================================
# REGISTRY
# ============================================================

class RateLimiterRegistry:
    """
    Process-wide limiters, one per provider.

    Call initialize() once at startup (optionally with overrides);
    get() initializes with defaults on first use. Tests substitute
    limiters with override() and clear state with reset_registry().
    """

    _limiters: Dict[str, RateLimiter] = {}
    _initialized: bool = False
    _clock: Optional[ClockProtocol] = None
    _lock = threading.Lock()

    @classmethod
    def initialize(
        cls,
        overrides: Optional[Dict[str, RateLimiterConfig]] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        """
        Build one limiter per known provider.

        Raises:
            ConfigurationError: Registry already initialized
        """
        with cls._lock:
            if cls._initialized:
                raise ConfigurationError("Rate limiter registry already initialized")
            cls._build(overrides or {}, clock)

    @classmethod
    def _build(
        cls,
        overrides: Dict[str, RateLimiterConfig],
        clock: Optional[ClockProtocol],
    ) -> None:
        cls._clock = clock
        configs = dict(DEFAULT_RATE_LIMITS)
        configs.update(overrides)
        for provider, config in configs.items():
            if provider not in cls._limiters:
                cls._limiters[provider] = RateLimiter(config, name=provider, clock=clock)
        cls._initialized = True
        logger.info(f"[RateLimiterRegistry] initialized: {sorted(cls._limiters)}")

    @classmethod
    def get(cls, provider: str, config: Optional[RateLimiterConfig] = None) -> RateLimiter:
        """
        Get the limiter for `provider`.

        Unknown providers get the "default" limits. When `config`
        differs from the current limiter's, the limiter is replaced
        and later callers share the new one.
        """
        with cls._lock:
            if not cls._initialized:
                cls._build({}, None)
            limiter = cls._limiters.get(provider)
            if config is not None and limiter is not None and limiter.config != config:
                logger.info(
                    f"[RateLimiterRegistry] {provider}: {config.max_requests} requests "
                    f"per {config.window_ms:.0f}ms"
                )
                limiter = None
            if limiter is None:
                limiter = RateLimiter(
                    config or cls._limiters["default"].config,
                    name=provider,
                    clock=cls._clock,
                )
                cls._limiters[provider] = limiter
            return limiter

    @classmethod
    def configure(cls, limits: Dict[str, RateLimiterConfig]) -> None:
        """Apply per-provider limits (e.g. from ConnectorSettings)."""
        for provider, config in limits.items():
            cls.get(provider, config)

    @classmethod
    def override(cls, provider: str, limiter: RateLimiter) -> None:
        """Substitute the limiter used for `provider`."""
        with cls._lock:
            cls._limiters[provider] = limiter

    @classmethod
    def reset_registry(cls) -> None:
        """Drop all limiters."""
        with cls._lock:
            for limiter in cls._limiters.values():
                limiter.reset()
            cls._limiters = {}
            cls._initialized = False
            cls._clock = None


__all__ = [
    "RateLimiterConfig",
    "DEFAULT_RATE_LIMITS",
    "RateLimiter",
    "RateLimiterRegistry",
]
