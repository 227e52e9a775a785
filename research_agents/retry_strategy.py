"""
Retry and Timeout Primitives

Shared by workers, the generation router and the tool registry:
- RetryPolicy: attempt budget plus exponential/linear/fixed backoff
- race_timeout: race an awaitable against a deadline; the loser is
  abandoned (left running, result discarded), never cancelled
- retry_async: run an operation under a policy, skipping retries for
  errors the caller classifies as permanent

Usage:
    from research_agents.retry_strategy import RetryPolicy, retry_async, race_timeout

    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    result = await retry_async(
        lambda: race_timeout(fetch(url), 30.0, "fetch"),
        policy,
        should_retry=lambda e: not is_validation_error(e),
    )
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from core.exceptions import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


# ============================================
# CONFIGURATION
# ============================================

class BackoffType(str, Enum):
    """Backoff curves."""
    EXPONENTIAL = "exponential"  # base * 2^attempt
    LINEAR = "linear"            # base * (attempt + 1)
    FIXED = "fixed"              # base


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    # Total attempts including the first one
    max_attempts: int = 3

    # Delay after the first failed attempt (seconds)
    base_delay: float = 1.0

    backoff: BackoffType = BackoffType.EXPONENTIAL

    # Maximum delay cap (seconds)
    max_delay: float = 60.0

    # Jitter factor (0.0-1.0); zero keeps delays deterministic
    jitter_factor: float = 0.0

    def get_delay(self, attempt: int) -> float:
        """
        Delay to wait after the given zero-based attempt failed.

        With the defaults, attempt 0 waits 1s and attempt 1 waits 2s.
        """
        if self.backoff == BackoffType.EXPONENTIAL:
            delay = self.base_delay * (2 ** attempt)
        elif self.backoff == BackoffType.LINEAR:
            delay = self.base_delay * (attempt + 1)
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()

        return delay


# ============================================
# TIMEOUT RACE
# ============================================

def _discard_abandoned(task: "asyncio.Future[Any]", operation: str):
    """Retrieve the outcome of an abandoned call so it is never reported as unhandled."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned {operation} finished with error after timeout: {error}")
    else:
        logger.debug(f"Abandoned {operation} finished after timeout; result discarded")


async def race_timeout(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    operation: str = "operation"
) -> T:
    """
    Race an awaitable against a timeout.

    The first to settle wins. On timeout the inner call keeps running in the
    background and its result is discarded when it eventually settles.

    Raises:
        OperationTimeoutError: if the timeout settles first
    """
    task = asyncio.ensure_future(awaitable)
    if timeout is None:
        return await task

    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()

    task.add_done_callback(lambda t: _discard_abandoned(t, operation))
    raise OperationTimeoutError(operation, timeout)


# ============================================
# RETRY LOOP
# ============================================

async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = lambda e: True,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    sleep: SleepFunc = asyncio.sleep,
    operation: str = "operation"
) -> T:
    """
    Run func until it succeeds or the policy's attempts are spent.

    No delay follows the final attempt. The last error is re-raised as-is.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Attempt budget and backoff curve
        should_retry: False for errors that must fail immediately
        on_retry: Callback (attempt, error, delay) before each backoff wait
        sleep: Awaitable sleep, injectable for tests
        operation: Name used in log lines
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await func()
        except Exception as e:
            if not should_retry(e):
                logger.debug(f"{operation}: non-retryable {type(e).__name__}: {e}")
                raise
            if attempt >= attempts - 1:
                raise

            delay = policy.get_delay(attempt)
            logger.warning(
                f"{operation}: attempt {attempt + 1}/{attempts} failed ({e}), "
                f"retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
