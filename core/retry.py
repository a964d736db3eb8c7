"""
Core Module - Retry.

============================================================
PURPOSE
============================================================
Exponential-backoff retry for transient failures.

- Attempts = max_retries + 1
- Delay starts at initial_delay_ms, multiplied after every retry,
  capped at max_delay_ms
- Non-retryable failures and the final failure are re-raised
  unchanged
- Each retry is logged at WARNING with "attempt n/total"

============================================================
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterator, Optional, TypeVar

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import ErrorKind, InvalidConfigError, is_retryable_error


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for a retried operation."""

    max_retries: int = 3
    """Retries after the first attempt."""

    initial_delay_ms: float = 1000
    """Delay before the first retry."""

    max_delay_ms: float = 10000
    """Upper bound on any single delay."""

    backoff_multiplier: float = 2.0
    """Factor applied to the delay after each retry."""

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise InvalidConfigError("max_retries", self.max_retries, "must be >= 0")
        if self.initial_delay_ms < 0:
            raise InvalidConfigError(
                "initial_delay_ms", self.initial_delay_ms, "must be >= 0"
            )
        if self.initial_delay_ms > self.max_delay_ms:
            raise InvalidConfigError(
                "initial_delay_ms",
                self.initial_delay_ms,
                "must not exceed max_delay_ms",
            )
        if self.backoff_multiplier < 1:
            raise InvalidConfigError(
                "backoff_multiplier", self.backoff_multiplier, "must be >= 1"
            )

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1


DEFAULT_RETRY_POLICIES: Dict[ErrorKind, RetryPolicy] = {
    ErrorKind.EXCHANGE: RetryPolicy(
        max_retries=3,
        initial_delay_ms=1000,
        max_delay_ms=10000,
        backoff_multiplier=2,
    ),
    ErrorKind.DATABASE: RetryPolicy(
        max_retries=3,
        initial_delay_ms=500,
        max_delay_ms=5000,
        backoff_multiplier=2,
    ),
    ErrorKind.ORDER_EXECUTION: RetryPolicy(
        max_retries=2,
        initial_delay_ms=2000,
        max_delay_ms=8000,
        backoff_multiplier=2,
    ),
}


def backoff_delays(policy: RetryPolicy) -> Iterator[float]:
    """Yield the delay (ms) before each retry of `policy`."""
    delay = policy.initial_delay_ms
    for _ in range(policy.max_retries):
        yield delay
        delay = min(delay * policy.backoff_multiplier, policy.max_delay_ms)


# ============================================================
# RETRY ORCHESTRATOR
# ============================================================

async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    context: str,
    clock: Optional[ClockProtocol] = None,
    deadline: Optional[float] = None,
) -> T:
    """
    Run `operation`, retrying transient failures.

    Args:
        operation: Zero-argument coroutine function
        policy: Backoff parameters
        context: Label used in log lines, e.g. "Binance.get_ticker"
        clock: Clock used for sleeping (defaults to the global clock)
        deadline: Optional overall time limit in seconds; when the next
            sleep would exceed it the last failure is raised

    Returns:
        The operation's result

    Raises:
        The last failure when it is not retryable or attempts are
        exhausted
    """
    clock = clock or ClockFactory.get_clock()
    total = policy.total_attempts
    delays = backoff_delays(policy)
    started_ms = clock.monotonic_ms()

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_retryable_error(e):
                raise

            if attempt == total:
                logger.error(f"[Retry] {context} failed after {total} attempts: {e}")
                raise

            delay_ms = next(delays)

            if deadline is not None:
                spent_ms = clock.monotonic_ms() - started_ms
                if spent_ms + delay_ms > deadline * 1000:
                    logger.error(
                        f"[Retry] {context} deadline of {deadline}s exhausted "
                        f"at attempt {attempt}/{total}: {e}"
                    )
                    raise

            logger.warning(
                f"[Retry] {context} failed (attempt {attempt}/{total}). "
                f"Retrying in {delay_ms:.0f}ms: {e}"
            )
            await clock.sleep(delay_ms / 1000)


__all__ = [
    "RetryPolicy",
    "DEFAULT_RETRY_POLICIES",
    "backoff_delays",
    "with_retry",
]
