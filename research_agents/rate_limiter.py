"""
Rate Limiting for Tool Execution

Two concerns:
- SlidingWindowRateLimiter: per-key call budgets (max_calls per window).
  Calls over budget are rejected immediately, never queued.
- run_bounded: concurrent fan-out of independent jobs under a global
  concurrency cap, using aiometer.

Usage:
    limiter = SlidingWindowRateLimiter()
    limiter.acquire("web_search", RateLimit(max_calls=10, window_seconds=60))

    results = await run_bounded(jobs, max_at_once=5)
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

import aiometer

from core.exceptions import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RateLimit:
    """Call budget for one key."""
    max_calls: int
    window_seconds: float


@dataclass
class RateLimiterStats:
    """Statistics for rate limiter operations."""
    total_requests: int = 0
    allowed_requests: int = 0
    rate_limited_count: int = 0
    keys_accessed: Dict[str, int] = field(default_factory=dict)


class SlidingWindowRateLimiter:
    """
    Per-key sliding window limiter.

    Each key keeps the timestamps of its calls inside the current window;
    a call is allowed while fewer than max_calls timestamps remain.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._calls: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._stats = RateLimiterStats()

    def _prune(self, key: str, window_seconds: float, now: float) -> Deque[float]:
        calls = self._calls.setdefault(key, deque())
        cutoff = now - window_seconds
        while calls and calls[0] <= cutoff:
            calls.popleft()
        return calls

    def try_acquire(self, key: str, limit: Optional[RateLimit]) -> bool:
        """Record a call if the budget allows it. Returns False when over budget."""
        with self._lock:
            self._stats.total_requests += 1
            self._stats.keys_accessed[key] = self._stats.keys_accessed.get(key, 0) + 1
            if limit is None:
                self._stats.allowed_requests += 1
                return True

            now = self._clock()
            calls = self._prune(key, limit.window_seconds, now)
            if len(calls) >= limit.max_calls:
                self._stats.rate_limited_count += 1
                return False
            calls.append(now)
            self._stats.allowed_requests += 1
            return True

    def acquire(self, key: str, limit: Optional[RateLimit]):
        """Record a call or raise RateLimitError."""
        if not self.try_acquire(key, limit):
            retry_after = self.retry_after(key, limit)
            logger.warning(f"Rate limit exceeded for '{key}', retry after {retry_after:.1f}s")
            raise RateLimitError(
                f"Rate limit exceeded for {key}",
                retry_after=retry_after,
                key=key,
            )

    def retry_after(self, key: str, limit: Optional[RateLimit]) -> float:
        """Seconds until the oldest call in the window expires."""
        if limit is None:
            return 0.0
        with self._lock:
            now = self._clock()
            calls = self._prune(key, limit.window_seconds, now)
            if len(calls) < limit.max_calls or not calls:
                return 0.0
            return max(0.0, calls[0] + limit.window_seconds - now)

    def reset(self, key: Optional[str] = None):
        with self._lock:
            if key is None:
                self._calls.clear()
            else:
                self._calls.pop(key, None)

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        with self._lock:
            return {
                "total_requests": self._stats.total_requests,
                "allowed_requests": self._stats.allowed_requests,
                "rate_limited_count": self._stats.rate_limited_count,
                "keys_accessed": dict(self._stats.keys_accessed),
            }

    def reset_stats(self):
        """Reset statistics counters."""
        with self._lock:
            self._stats = RateLimiterStats()


async def run_bounded(
    jobs: List[Callable[[], Awaitable[T]]],
    max_at_once: Optional[int] = None,
    max_per_second: Optional[float] = None
) -> List[T]:
    """
    Run independent jobs concurrently under a concurrency cap.

    Results come back in job order. Jobs are expected to capture their own
    failures; an escaping exception aborts the batch.
    """
    if not jobs:
        return []
    return await aiometer.run_all(
        jobs,
        max_at_once=max_at_once,
        max_per_second=max_per_second
    )
