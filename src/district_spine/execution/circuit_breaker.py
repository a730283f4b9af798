"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when the external dashboard or
a storage backend is unstable.

States:
    CLOSED: Normal operation; qualifying failures are counted, any success resets
    OPEN: Failing fast until ``next_retry_time``
    HALF_OPEN: One trial call; success closes, failure reopens

Only errors accepted by ``is_failure`` count. The default predicate ignores
4xx-style client errors and non-retryable validation errors so the breaker
reacts to server and network instability only.

Example:
    >>> registry = CircuitBreakerRegistry()
    >>> breaker = registry.get_or_create("dashboard", failure_threshold=5)
    >>> records = await breaker.execute(lambda: client.fetch("2024-01-15"))
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from district_spine.core.errors import CircuitOpenError, SpineError
from district_spine.core.logging import get_logger
from district_spine.core.timestamps import utc_now

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def default_failure_predicate(error: BaseException) -> bool:
    """Count server/network instability; ignore client and validation errors."""
    if isinstance(error, CircuitOpenError):
        return False
    status = getattr(error, "status_code", None)
    if isinstance(status, int) and 400 <= status < 500 and status not in (408, 429):
        return False
    if isinstance(error, SpineError):
        return error.retryable
    return True


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    ignored_errors: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitBreaker:
    """Circuit breaker for fault tolerance.

    Attributes:
        name: Identifier for this circuit
        failure_threshold: Qualifying failures before opening
        recovery_timeout: Seconds to stay OPEN before the first trial
        success_threshold: Successes needed in half-open to close
        half_open_max_calls: Concurrent trial calls allowed in half-open
        reopen_backoff: Multiplier applied to the timeout on each consecutive reopen
        max_recovery_timeout: Upper bound for the extended timeout
        is_failure: Predicate deciding which errors count as failures
        clock: Time source, injectable for tests
    """

    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 1
    half_open_max_calls: int = 1
    reopen_backoff: float = 2.0
    max_recovery_timeout: float = 600.0
    is_failure: Callable[[BaseException], bool] = default_failure_predicate
    clock: Callable[[], datetime] = utc_now

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _consecutive_opens: int = field(default=0, init=False)
    _next_retry_time: datetime | None = field(default=None, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def next_retry_time(self) -> datetime | None:
        with self._lock:
            return self._next_retry_time

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    def _check_state_transition(self) -> None:
        """OPEN → HALF_OPEN once ``next_retry_time`` has elapsed."""
        if (
            self._state == CircuitState.OPEN
            and self._next_retry_time is not None
            and self.clock() >= self._next_retry_time
        ):
            self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = self.clock()

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
            self._consecutive_opens = 0
            self._next_retry_time = None
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_calls = 0
        elif new_state == CircuitState.OPEN:
            self._consecutive_opens += 1
            timeout = min(
                self.recovery_timeout * (self.reopen_backoff ** (self._consecutive_opens - 1)),
                self.max_recovery_timeout,
            )
            self._next_retry_time = self.clock() + timedelta(seconds=timeout)

        logger.info(
            "circuit_breaker.state_change",
            circuit=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
            next_retry_time=self._next_retry_time.isoformat() if self._next_retry_time else None,
        )

    def allow_request(self) -> bool:
        """Check if a request should be allowed (reserves the half-open trial slot)."""
        with self._lock:
            self._check_state_transition()
            self._stats.total_requests += 1

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                self._stats.rejected_requests += 1
                return False

            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True

            self._stats.rejected_requests += 1
            return False

    def record_success(self) -> None:
        """Record a successful request."""
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = self.clock()

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
                else:
                    self._half_open_calls = max(0, self._half_open_calls - 1)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed request. Errors the predicate rejects are ignored."""
        with self._lock:
            if error is not None and not self.is_failure(error):
                self._stats.ignored_errors += 1
                if self._state == CircuitState.HALF_OPEN:
                    self._half_open_calls = max(0, self._half_open_calls - 1)
                return

            self._failure_count += 1
            self._stats.failed_requests += 1
            self._stats.last_failure_time = self.clock()

            if self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

            elif self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)

    def _release_trial(self) -> None:
        """Give back a half-open trial slot for a call that neither succeeded nor failed."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def force_open(self) -> None:
        """Force circuit to open state (for maintenance)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN)

    def _rejection(self) -> CircuitOpenError:
        retry_at = self.next_retry_time
        retry_after = None
        if retry_at is not None:
            retry_after = max(0.0, (retry_at - self.clock()).total_seconds())
        return CircuitOpenError(
            f"Circuit '{self.name}' is open, rejecting request",
            circuit_name=self.name,
            retry_after=retry_after,
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open (``func`` is not invoked)
        """
        if not self.allow_request():
            raise self._rejection()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        except BaseException:
            self._release_trial()
            raise
        self.record_success()
        return result

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open (``operation`` is not invoked)
        """
        if not self.allow_request():
            raise self._rejection()

        try:
            result = await operation()
        except Exception as e:
            self.record_failure(e)
            raise
        except BaseException:
            self._release_trial()
            raise
        self.record_success()
        return result

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            self._check_state_transition()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "next_retry_time": self._next_retry_time.isoformat() if self._next_retry_time else None,
                "total_requests": self._stats.total_requests,
                "successful_requests": self._stats.successful_requests,
                "failed_requests": self._stats.failed_requests,
                "rejected_requests": self._stats.rejected_requests,
                "ignored_errors": self._stats.ignored_errors,
                "failure_rate": self._stats.failure_rate,
            }


class CircuitBreakerRegistry:
    """Registry of named circuit breakers, one per external dependency."""

    def __init__(self) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> CircuitBreaker | None:
        """Get a circuit breaker by name, returns None if not found."""
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        **kwargs: Any,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker by name."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(
                    name=name,
                    failure_threshold=failure_threshold,
                    recovery_timeout=recovery_timeout,
                    **kwargs,
                )
            return self._breakers[name]

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._breakers.keys())

    def remove(self, name: str) -> None:
        with self._lock:
            self._breakers.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._breakers.clear()

    def reset_all(self) -> None:
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: b.get_stats() for name, b in self._breakers.items()}
