"""
Rate Limiter Tests.

============================================================
PURPOSE
============================================================
Admission control under simulated time.

TEST CATEGORIES:
- Window tests: never more than max_requests per window
- Bucket tests: token bounds and refill waits
- Ordering tests: FIFO admission and minimum spacing
- Timeout tests: bounded admission wait
- Registry tests: process-wide limiters

============================================================
"""

import asyncio
import random

import pytest

from core.clock import MockClock, SystemClock
from core.exceptions import ConfigurationError, RateLimitTimeoutError
from core.rate_limiter import (
    DEFAULT_RATE_LIMITS,
    MIN_TOKEN_WAIT_MS,
    RateLimiter,
    RateLimiterConfig,
    RateLimiterRegistry,
)


async def _run_calls(limiter: RateLimiter, clock: MockClock, count: int):
    """Fire `count` simultaneous calls, return (admission order, admission times)."""
    order = []
    times = []

    def make_call(index):
        async def call():
            order.append(index)
            times.append(clock.monotonic_ms())
            return index
        return call

    results = await asyncio.gather(
        *(limiter.execute(make_call(i)) for i in range(count))
    )
    assert list(results) == list(range(count))
    return order, times


def _max_in_any_window(times, window_ms):
    worst = 0
    for start in times:
        inside = [t for t in times if start <= t < start + window_ms - 1e-6]
        worst = max(worst, len(inside))
    return worst


# ============================================================
# WINDOW TESTS
# ============================================================

class TestWindowGuarantee:
    """Tests for the per-window admission cap."""

    @pytest.mark.asyncio
    async def test_fifteen_simultaneous_calls(self):
        """Ten run at once, the eleventh waits at least one refill interval."""
        clock = MockClock()
        limiter = RateLimiter(RateLimiterConfig(max_requests=10, window_ms=1000), clock=clock)

        order, times = await _run_calls(limiter, clock, 15)

        assert order == list(range(15))
        assert times[:10] == [0.0] * 10
        assert times[10] >= 100
        assert _max_in_any_window(times, 1000) <= 10

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_requests,window_ms,min_interval_ms", [
        (10, 1000, None),
        (5, 200, None),
        (3, 1000, 50),
        (20, 500, 10),
        (1, 100, None),
    ])
    async def test_random_bursts_never_exceed_window(self, max_requests, window_ms, min_interval_ms):
        """Bursts arriving at random times stay within the limit."""
        clock = MockClock()
        limiter = RateLimiter(
            RateLimiterConfig(max_requests, window_ms, min_interval_ms),
            clock=clock,
        )
        rng = random.Random(max_requests * 7919 + int(window_ms))
        times = []

        async def call():
            times.append(clock.monotonic_ms())

        for _ in range(6):
            burst = rng.randint(1, max_requests * 3)
            await asyncio.gather(*(limiter.execute(call) for _ in range(burst)))
            clock.advance(rng.uniform(0, window_ms / 1000))

        assert _max_in_any_window(times, window_ms) <= max_requests

    @pytest.mark.asyncio
    async def test_pure_bucket_admits_after_one_refill(self):
        """Without the window log the eleventh call waits exactly one token."""
        clock = MockClock()
        limiter = RateLimiter(
            RateLimiterConfig(max_requests=10, window_ms=1000, strict_window=False),
            clock=clock,
        )

        _, times = await _run_calls(limiter, clock, 11)

        assert times[10] == pytest.approx(100)


# ============================================================
# BUCKET TESTS
# ============================================================

class TestTokenBucket:
    """Tests for token accounting."""

    @pytest.mark.asyncio
    async def test_tokens_consumed_and_capped(self):
        """Tokens stay within [0, max_requests]."""
        clock = MockClock()
        limiter = RateLimiter(RateLimiterConfig(max_requests=5, window_ms=1000), clock=clock)
        assert limiter.token_count == 5

        async def call():
            assert 0 <= limiter.token_count <= 5

        await asyncio.gather(*(limiter.execute(call) for _ in range(5)))
        assert limiter.token_count < 1

        clock.advance(60)
        assert limiter.token_count == 5

    @pytest.mark.asyncio
    async def test_token_wait_has_floor(self):
        """Waiting for a token never sleeps less than the floor."""
        clock = MockClock()
        limiter = RateLimiter(
            RateLimiterConfig(max_requests=1000, window_ms=1000, strict_window=False),
            clock=clock,
        )

        async def call():
            return None

        await asyncio.gather(*(limiter.execute(call) for _ in range(1001)))

        assert clock.sleeps
        assert min(clock.sleeps) * 1000 >= MIN_TOKEN_WAIT_MS

    @pytest.mark.asyncio
    async def test_operation_errors_propagate(self):
        """Failures of the wrapped operation are not swallowed."""
        limiter = RateLimiter(RateLimiterConfig(max_requests=2, window_ms=1000), clock=MockClock())

        async def boom():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await limiter.execute(boom)

        async def ok():
            return "ok"

        assert await limiter.execute(ok) == "ok"

    @pytest.mark.asyncio
    async def test_reset_refills(self):
        """reset() restores a full bucket."""
        limiter = RateLimiter(RateLimiterConfig(max_requests=3, window_ms=1000), clock=MockClock())

        async def call():
            return None

        await asyncio.gather(*(limiter.execute(call) for _ in range(3)))
        limiter.reset()

        assert limiter.token_count == 3
        assert limiter.queue_length == 0


# ============================================================
# ORDERING TESTS
# ============================================================

class TestOrdering:
    """Tests for FIFO admission and spacing."""

    @pytest.mark.asyncio
    async def test_fifo_across_waits(self):
        """Callers are admitted in arrival order even when they wait."""
        clock = MockClock()
        limiter = RateLimiter(RateLimiterConfig(max_requests=2, window_ms=1000), clock=clock)

        order, _ = await _run_calls(limiter, clock, 7)

        assert order == list(range(7))

    @pytest.mark.asyncio
    async def test_min_interval_spacing(self):
        """Consecutive admissions are at least min_interval apart."""
        clock = MockClock()
        limiter = RateLimiter(
            RateLimiterConfig(max_requests=100, window_ms=1000, min_interval_ms=50),
            clock=clock,
        )

        _, times = await _run_calls(limiter, clock, 6)

        gaps = [b - a for a, b in zip(times, times[1:])]
        assert all(gap >= 50 - 1e-6 for gap in gaps)


# ============================================================
# TIMEOUT TESTS
# ============================================================

class TestAdmissionTimeout:
    """Tests for the bounded admission wait."""

    @pytest.mark.asyncio
    async def test_times_out_when_no_token(self):
        """A caller that cannot be admitted in time gets RateLimitTimeoutError."""
        limiter = RateLimiter(
            RateLimiterConfig(max_requests=1, window_ms=60000),
            name="slow",
            clock=SystemClock(),
        )

        async def call():
            return "done"

        try:
            assert await limiter.execute(call, timeout=1.0) == "done"

            with pytest.raises(RateLimitTimeoutError) as exc_info:
                await limiter.execute(call, timeout=0.05)

            assert exc_info.value.exchange == "slow"
            assert exc_info.value.retryable
            assert limiter.queue_length == 0
        finally:
            limiter.reset()
            await asyncio.sleep(0)

    def test_invalid_config(self):
        """Non-positive limits are rejected."""
        with pytest.raises(ConfigurationError):
            RateLimiterConfig(max_requests=0, window_ms=1000)
        with pytest.raises(ConfigurationError):
            RateLimiterConfig(max_requests=1, window_ms=0)
        with pytest.raises(ConfigurationError):
            RateLimiterConfig(max_requests=1, window_ms=10, min_interval_ms=-1)


# ============================================================
# REGISTRY TESTS
# ============================================================

class TestRateLimiterRegistry:
    """Tests for RateLimiterRegistry."""

    def test_defaults(self):
        """Known providers get their documented limits."""
        assert RateLimiterRegistry.get("binance").config == DEFAULT_RATE_LIMITS["binance"]
        assert RateLimiterRegistry.get("coinbase").config.max_requests == 10
        assert RateLimiterRegistry.get("alpaca").config.min_interval_ms == 300
        assert RateLimiterRegistry.get("ibkr").config.min_interval_ms is None

    def test_same_instance_per_provider(self):
        """Every connector of a provider shares one limiter."""
        assert RateLimiterRegistry.get("binance") is RateLimiterRegistry.get("binance")

    def test_unknown_provider_uses_default(self):
        """Unknown providers fall back to the default limits."""
        limiter = RateLimiterRegistry.get("kraken")
        assert limiter.config == DEFAULT_RATE_LIMITS["default"]
        assert limiter.name == "kraken"

    def test_initialize_twice_fails(self):
        """A second initialization is a configuration error."""
        RateLimiterRegistry.initialize({"binance": RateLimiterConfig(5, 1000)})
        assert RateLimiterRegistry.get("binance").config.max_requests == 5

        with pytest.raises(ConfigurationError):
            RateLimiterRegistry.initialize()

    def test_override(self):
        """Tests may substitute a provider's limiter."""
        custom = RateLimiter(RateLimiterConfig(1, 1000), name="binance", clock=MockClock())
        RateLimiterRegistry.override("binance", custom)

        assert RateLimiterRegistry.get("binance") is custom

    @pytest.mark.asyncio
    async def test_unknown_provider_uses_registry_clock(self):
        """Limiters created after initialize share the registry's clock."""
        clock = MockClock()
        RateLimiterRegistry.initialize(clock=clock)
        limiter = RateLimiterRegistry.get("kraken")

        times = []

        async def call():
            times.append(clock.monotonic_ms())

        await limiter.execute(call)
        await limiter.execute(call)

        assert 1.0 in clock.sleeps
        assert times[1] - times[0] >= 1000

    def test_get_with_new_config_replaces_limiter(self):
        """A differing config installs a new shared limiter."""
        before = RateLimiterRegistry.get("binance")
        after = RateLimiterRegistry.get("binance", RateLimiterConfig(5, 1000))

        assert after is not before
        assert after.config.max_requests == 5
        assert RateLimiterRegistry.get("binance") is after
        assert RateLimiterRegistry.get("binance", RateLimiterConfig(5, 1000)) is after

    def test_configure(self):
        """Per-provider limits are installed in one call."""
        RateLimiterRegistry.configure({
            "coinbase": RateLimiterConfig(3, 1000),
            "kraken": RateLimiterConfig(7, 2000),
        })

        assert RateLimiterRegistry.get("coinbase").config.max_requests == 3
        assert RateLimiterRegistry.get("kraken").config.window_ms == 2000
        assert RateLimiterRegistry.get("binance").config == DEFAULT_RATE_LIMITS["binance"]


# ============================================================
# ADMISSION LOG TESTS
# ============================================================

class TestAdmissionLog:
    """Tests for the sliding-window admission log."""

    @staticmethod
    async def _sustained_load(limiter: RateLimiter, clock: MockClock, seconds: int, per_second: int):
        async def call():
            return None

        for _ in range(seconds):
            await asyncio.gather(*(limiter.execute(call) for _ in range(per_second)))
            clock.advance(1)

    @pytest.mark.asyncio
    async def test_bucket_only_keeps_no_log(self):
        """Without strict_window nothing is recorded per admission."""
        clock = MockClock()
        limiter = RateLimiter(
            RateLimiterConfig(max_requests=1000, window_ms=1000, strict_window=False),
            clock=clock,
        )

        await self._sustained_load(limiter, clock, seconds=100, per_second=40)

        assert limiter.admission_log_size == 0

    @pytest.mark.asyncio
    async def test_strict_log_is_pruned_to_window(self):
        """The strict log never holds more than one window of admissions."""
        clock = MockClock()
        limiter = RateLimiter(RateLimiterConfig(max_requests=1000, window_ms=1000), clock=clock)

        await self._sustained_load(limiter, clock, seconds=100, per_second=40)

        assert 0 < limiter.admission_log_size <= 40


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
