"""
Unit Tests for retry policy, retry loop and timeout race.
"""

import asyncio

import pytest

from core.exceptions import ErrorCode, OperationTimeoutError, ValidationError, is_validation_error
from research_agents.retry_strategy import BackoffType, RetryPolicy, race_timeout, retry_async


class TestRetryPolicy:
    """Backoff curves."""

    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay=1.0)
        assert [policy.get_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_linear_and_fixed(self):
        assert RetryPolicy(base_delay=0.5, backoff=BackoffType.LINEAR).get_delay(2) == 1.5
        assert RetryPolicy(base_delay=0.5, backoff=BackoffType.FIXED).get_delay(5) == 0.5

    def test_max_delay_cap(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0)
        assert policy.get_delay(3) == 15.0

    def test_jitter_stays_within_bound(self):
        policy = RetryPolicy(base_delay=1.0, jitter_factor=0.5)
        for _ in range(20):
            assert 1.0 <= policy.get_delay(0) <= 1.5


class TestRetryAsync:
    """Attempt loop."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self, sleep):
        async def ok():
            return 42

        assert await retry_async(ok, RetryPolicy(), sleep=sleep) == 42
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_three_failures_sleep_twice(self, sleep):
        """Delays of 1s then 2s, and no sleep after the final attempt."""
        attempts = []

        async def always_fails():
            attempts.append(1)
            raise RuntimeError(f"failure {len(attempts)}")

        with pytest.raises(RuntimeError, match="failure 3"):
            await retry_async(always_fails, RetryPolicy(max_attempts=3, base_delay=1.0), sleep=sleep)

        assert len(attempts) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self, sleep):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            return "done"

        assert await retry_async(flaky, RetryPolicy(), sleep=sleep) == "done"
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, sleep):
        attempts = []

        async def invalid():
            attempts.append(1)
            raise ValidationError("company_name is required", field="company_name")

        with pytest.raises(ValidationError):
            await retry_async(
                invalid,
                RetryPolicy(max_attempts=5),
                should_retry=lambda e: not is_validation_error(e),
                sleep=sleep,
            )

        assert len(attempts) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, sleep):
        seen = []

        async def fails():
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            await retry_async(
                fails,
                RetryPolicy(max_attempts=2, base_delay=0.25),
                on_retry=lambda attempt, error, delay: seen.append((attempt, delay)),
                sleep=sleep,
            )
        assert seen == [(0, 0.25)]


class TestRaceTimeout:
    """Timeout race."""

    @pytest.mark.asyncio
    async def test_fast_call_wins(self):
        async def fast():
            return "fast"

        assert await race_timeout(fast(), 1.0) == "fast"

    @pytest.mark.asyncio
    async def test_none_timeout_waits(self):
        async def value():
            await asyncio.sleep(0)
            return 1

        assert await race_timeout(value(), None) == 1

    @pytest.mark.asyncio
    async def test_timeout_wins(self):
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.2)
            finished.set()
            return "late"

        with pytest.raises(OperationTimeoutError) as exc_info:
            await race_timeout(slow(), 0.01, "slow call")

        assert exc_info.value.code == ErrorCode.OPERATION_TIMEOUT
        assert "slow call" in str(exc_info.value)

        # The abandoned call is not cancelled
        await asyncio.wait_for(finished.wait(), 1.0)

    @pytest.mark.asyncio
    async def test_inner_error_propagates(self):
        async def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await race_timeout(broken(), 1.0)
