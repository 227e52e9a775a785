"""
Unit Tests for rate limiting and bounded fan-out.
"""

import asyncio

import pytest

from core.exceptions import RateLimitError
from research_agents.rate_limiter import RateLimit, SlidingWindowRateLimiter, run_bounded


class TestSlidingWindowRateLimiter:
    def test_budget_per_key(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limit = RateLimit(max_calls=2, window_seconds=10)

        assert limiter.try_acquire("search", limit)
        assert limiter.try_acquire("search", limit)
        assert not limiter.try_acquire("search", limit)
        assert limiter.try_acquire("news", limit)

        stats = limiter.get_stats()
        assert stats["rate_limited_count"] == 1
        assert stats["keys_accessed"] == {"search": 3, "news": 1}

    def test_window_slides(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limit = RateLimit(max_calls=1, window_seconds=10)

        limiter.acquire("search", limit)
        clock.advance(4)
        assert limiter.retry_after("search", limit) == pytest.approx(6.0)
        with pytest.raises(RateLimitError) as exc_info:
            limiter.acquire("search", limit)
        assert exc_info.value.retry_after == pytest.approx(6.0)

        clock.advance(6)
        limiter.acquire("search", limit)

    def test_no_limit_always_allows(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        assert all(limiter.try_acquire("free", None) for _ in range(100))
        assert limiter.retry_after("free", None) == 0.0

    def test_reset(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)
        limit = RateLimit(max_calls=1, window_seconds=60)
        limiter.acquire("search", limit)
        limiter.reset("search")
        limiter.acquire("search", limit)


class TestRunBounded:
    @pytest.mark.asyncio
    async def test_results_in_job_order_under_cap(self):
        running = 0
        peak = 0

        def job(value: int, delay: float):
            async def run():
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(delay)
                running -= 1
                return value
            return run

        results = await run_bounded([job(1, 0.03), job(2, 0.01), job(3, 0.02), job(4, 0.0)], max_at_once=2)

        assert results == [1, 2, 3, 4]
        assert peak == 2

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await run_bounded([]) == []
