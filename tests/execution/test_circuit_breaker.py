"""Tests for district_spine.execution.circuit_breaker.

Covers:
- CLOSED → OPEN after the failure threshold
- Fast rejection while OPEN (operation never invoked)
- HALF_OPEN trial after the recovery timeout and its outcomes
- A cancelled trial gives its slot back
- Exponential extension of the timeout on consecutive reopens
- Which errors count as failures
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from district_spine.core.errors import (
    CircuitOpenError,
    ClientRequestError,
    DataUnavailableError,
    NetworkError,
    UpstreamServerError,
)
from district_spine.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    default_failure_predicate,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        name="dashboard",
        failure_threshold=3,
        recovery_timeout=10.0,
        reopen_backoff=2.0,
        max_recovery_timeout=30.0,
        clock=clock,
    )


def trip(breaker, count=3):
    for _ in range(count):
        breaker.record_failure(NetworkError("reset"))


class TestStateTransitions:
    """Test the state machine."""

    def test_starts_closed(self, breaker):
        assert breaker.state is CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_opens_at_threshold(self, breaker):
        trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED
        trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        assert breaker.allow_request() is False

    def test_success_resets_failure_count(self, breaker):
        trip(breaker, 2)
        breaker.record_success()
        trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_after_timeout(self, breaker, clock):
        trip(breaker)
        clock.advance(10)
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    def test_half_open_success_closes(self, breaker, clock):
        trip(breaker)
        clock.advance(10)
        breaker.allow_request()
        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens_with_longer_timeout(self, breaker, clock):
        trip(breaker)
        clock.advance(10)
        breaker.allow_request()
        breaker.record_failure(NetworkError("still down"))
        assert breaker.state is CircuitState.OPEN
        assert breaker.next_retry_time == clock.now + timedelta(seconds=20)

        clock.advance(20)
        breaker.allow_request()
        breaker.record_failure(NetworkError("still down"))
        assert breaker.next_retry_time == clock.now + timedelta(seconds=30)

    def test_force_open_and_reset(self, breaker):
        breaker.force_open()
        assert breaker.state is CircuitState.OPEN
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED


class TestFailurePredicate:
    """Test which errors count."""

    def test_client_errors_ignored(self, breaker):
        for _ in range(5):
            breaker.record_failure(ClientRequestError("bad", status_code=400))
            breaker.record_failure(DataUnavailableError("none"))
        assert breaker.state is CircuitState.CLOSED
        assert breaker.get_stats()["ignored_errors"] == 10

    def test_server_errors_count(self):
        assert default_failure_predicate(UpstreamServerError("502", status_code=502)) is True
        assert default_failure_predicate(ConnectionError()) is True
        assert default_failure_predicate(CircuitOpenError()) is False


class TestExecute:
    """Test the async wrapper."""

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, breaker, clock):
        trip(breaker)
        calls = []

        async def op():
            calls.append(1)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(op)
        assert calls == []
        assert exc_info.value.retryable is True
        assert exc_info.value.retry_after == 10.0
        assert exc_info.value.circuit_name == "dashboard"

    @pytest.mark.asyncio
    async def test_failures_recorded_and_reraised(self, breaker):
        async def op():
            raise NetworkError("reset")

        for _ in range(3):
            with pytest.raises(NetworkError):
                await breaker.execute(op)
        assert breaker.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_cancelled_half_open_trial_releases_slot(self, breaker, clock):
        trip(breaker)
        clock.advance(10)
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(3600)

        trial = asyncio.create_task(breaker.execute(hang))
        await started.wait()
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.get_stats()["failed_requests"] == 3

        async def ok():
            return "up"

        assert await breaker.execute(ok) == "up"
        assert breaker.state is CircuitState.CLOSED

    def test_interrupted_sync_trial_releases_slot(self, breaker, clock):
        trip(breaker)
        clock.advance(10)

        def interrupted():
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            breaker.call(interrupted)
        assert breaker.allow_request() is True

    def test_sync_call(self, breaker):
        assert breaker.call(lambda x: x * 2, 21) == 42
        assert breaker.get_stats()["successful_requests"] == 1


class TestCircuitBreakerRegistry:
    """Test CircuitBreakerRegistry."""

    def test_named_instances(self):
        registry = CircuitBreakerRegistry()
        first = registry.get_or_create("gcs-snapshot", failure_threshold=2)
        assert registry.get_or_create("gcs-snapshot") is first
        assert first.failure_threshold == 2
        first.force_open()
        registry.reset_all()
        assert registry.get_all_stats()["gcs-snapshot"]["state"] == "CLOSED"
