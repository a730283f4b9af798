"""Tests for district_spine.execution.retry.

Covers:
- Exponential delays, cap and jitter bounds
- retry_async stopping on success, exhaustion and non-retryable errors
"""

import pytest

from district_spine.core.errors import NetworkError, ValidationError
from district_spine.execution.retry import ExponentialBackoff, NoRetry, retry_async


class TestExponentialBackoff:
    """Test ExponentialBackoff."""

    def test_delays_without_jitter(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=5.0, jitter=0)
        assert [strategy.next_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounds(self):
        strategy = ExponentialBackoff(base_delay=10.0, jitter=0.2)
        for _ in range(50):
            assert 8.0 <= strategy.next_delay(0) <= 12.0

    def test_should_retry(self):
        strategy = ExponentialBackoff(max_retries=2)
        assert strategy.should_retry(0, NetworkError("x")) is True
        assert strategy.should_retry(2, NetworkError("x")) is False
        assert strategy.should_retry(0, ValidationError("x")) is False

    def test_no_retry(self):
        assert NoRetry().should_retry(0, NetworkError("x")) is False


class TestRetryAsync:
    """Test retry_async()."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def fake_sleep(self, sleeps):
        async def _sleep(seconds):
            sleeps.append(seconds)

        return _sleep

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleeps, fake_sleep):
        attempts = []

        async def op():
            attempts.append(1)
            if len(attempts) < 3:
                raise NetworkError("reset")
            return "ok"

        strategy = ExponentialBackoff(max_retries=3, base_delay=1.0, jitter=0)
        assert await retry_async(op, strategy, sleep=fake_sleep) == "ok"
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self, sleeps, fake_sleep):
        async def op():
            raise NetworkError("down")

        with pytest.raises(NetworkError):
            await retry_async(op, ExponentialBackoff(max_retries=2, jitter=0), sleep=fake_sleep)
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_not_retried(self, sleeps, fake_sleep):
        async def op():
            raise ValidationError("bad payload")

        with pytest.raises(ValidationError):
            await retry_async(op, ExponentialBackoff(), sleep=fake_sleep)
        assert sleeps == []
