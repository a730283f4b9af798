"""Rate Limiting: adaptive token bucket for the external dashboard.

Manifesto:
The dashboard throttles aggressive clients and answers bursts with
throttling responses or silently truncated pages. Each logical
consumer gets a named limiter that spaces requests out and backs off
geometrically while the source keeps pushing back.

ARCHITECTURE
────────────
::

    RateLimiterRegistry (injected, keyed by name)
      └── RateLimiter
            ├── bucket:   max_requests per window_seconds
            ├── spacing:  current_delay since last consumed token
            │               (min_delay ≤ current_delay ≤ max_delay)
            ├── wait_for_next()   ─ suspend until a token and the spacing allow
            ├── consume_token()   ─ debit the bucket, stamp the grant time
            ├── acquire()         ─ wait_for_next + consume under one lock
            ├── record_throttle() ─ external 429 → grow delay
            └── reset()           ─ drop all accumulated backoff

    All waits are asyncio suspensions; bucket state is guarded by a Lock.

BEST PRACTICES
──────────────
- Call ``acquire()`` right before each external request.
- Report upstream throttling with ``record_throttle(retry_after)``.
- Combine with ``CircuitBreaker`` for full resilience.

Example::

    registry = RateLimiterRegistry()
    limiter = registry.get_or_create("dashboard", RateLimiterConfig(max_requests=10))
    await limiter.acquire()
    records = await client.fetch(date)

Tags:
    execution, rate-limit, throttle, token-bucket, backoff
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from district_spine.core.cancellation import CancellationToken, CancelledByToken
from district_spine.core.logging import get_logger

if TYPE_CHECKING:
    from district_spine.domain.models import RateLimitConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimiterConfig:
    """Token bucket and backoff parameters.

    Attributes:
        max_requests: Tokens available per window
        window_seconds: Window length; the bucket refills when it rolls over
        min_delay_seconds: Minimum spacing between consecutive grants
        max_delay_seconds: Ceiling for the backed-off spacing
        backoff_multiplier: Growth factor applied on each throttle
    """

    max_requests: int = 10
    window_seconds: float = 60.0
    min_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.min_delay_seconds < 0 or self.max_delay_seconds < self.min_delay_seconds:
            raise ValueError("require 0 <= min_delay_seconds <= max_delay_seconds")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    @classmethod
    def from_record(cls, record: RateLimitConfig) -> RateLimiterConfig:
        """Build from the persisted per-minute/millisecond record."""
        return cls(
            max_requests=record.max_requests_per_minute,
            window_seconds=60.0,
            min_delay_seconds=record.min_delay_ms / 1000.0,
            max_delay_seconds=record.max_delay_ms / 1000.0,
            backoff_multiplier=record.backoff_multiplier,
        )


class RateLimiter:
    """Named token bucket with adaptive spacing.

    Args:
        name: Logical consumer name (used in logs and the registry)
        config: Bucket and backoff parameters
        clock: Monotonic clock, injectable for tests
        sleep: Async sleep, injectable for tests
    """

    def __init__(
        self,
        name: str,
        config: RateLimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self._config = config or RateLimiterConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._acquire_lock: asyncio.Lock | None = None

        now = self._clock()
        self._tokens = self._config.max_requests
        self._window_start = now
        self._last_grant: float | None = None
        self._current_delay = self._config.min_delay_seconds
        self._throttle_count = 0

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    @property
    def current_delay(self) -> float:
        with self._lock:
            return self._current_delay

    @property
    def available_tokens(self) -> int:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def _refill(self, now: float) -> None:
        """Start a new window (full bucket) once the current one has elapsed."""
        if now - self._window_start >= self._config.window_seconds:
            elapsed_windows = int((now - self._window_start) // self._config.window_seconds)
            self._window_start += elapsed_windows * self._config.window_seconds
            self._tokens = self._config.max_requests

    def _required_wait(self, now: float) -> tuple[float, bool]:
        """Seconds until a grant is allowed, and whether the bucket is empty."""
        self._refill(now)
        wait = 0.0
        if self._last_grant is not None:
            wait = max(0.0, self._last_grant + self._current_delay - now)
        exhausted = self._tokens <= 0
        if exhausted:
            wait = max(wait, self._window_start + self._config.window_seconds - now)
        return wait, exhausted

    def _grow_delay(self) -> None:
        self._throttle_count += 1
        self._current_delay = min(
            max(self._current_delay, self._config.min_delay_seconds, 0.001)
            * self._config.backoff_multiplier,
            self._config.max_delay_seconds,
        )

    async def wait_for_next(self, cancel_token: CancellationToken | None = None) -> float:
        """Suspend until a token is available and the spacing delay has elapsed.

        Waiting on an empty bucket counts as throttling and grows the delay.
        The delay only drops back to the minimum through :meth:`record_success`.

        Returns:
            Seconds spent waiting.

        Raises:
            CancelledByToken: If ``cancel_token`` fires while waiting
        """
        waited = 0.0
        throttled = False
        while True:
            with self._lock:
                wait, exhausted = self._required_wait(self._clock())
                if exhausted and not throttled:
                    throttled = True
                    self._grow_delay()
                    logger.info(
                        "rate_limiter.throttled",
                        limiter=self.name,
                        wait_seconds=round(wait, 3),
                        current_delay=self._current_delay,
                        throttle_count=self._throttle_count,
                    )
            if wait <= 0:
                break
            if cancel_token is not None:
                if not await cancel_token.sleep(wait):
                    raise CancelledByToken(cancel_token.reason)
            else:
                await self._sleep(wait)
            waited += wait
        return waited

    def consume_token(self) -> bool:
        """Debit one token. Returns False if the bucket was already empty."""
        with self._lock:
            now = self._clock()
            self._refill(now)
            if self._tokens <= 0:
                return False
            self._tokens -= 1
            self._last_grant = now
            return True

    async def acquire(self, cancel_token: CancellationToken | None = None) -> float:
        """Wait for and consume one token; concurrent callers are served in order."""
        if self._acquire_lock is None:
            self._acquire_lock = asyncio.Lock()
        async with self._acquire_lock:
            while True:
                waited = await self.wait_for_next(cancel_token)
                if self.consume_token():
                    return waited

    def record_throttle(self, retry_after: float | None = None) -> None:
        """The source pushed back: grow the delay (at least to ``retry_after``)."""
        with self._lock:
            self._grow_delay()
            if retry_after is not None:
                self._current_delay = min(
                    max(self._current_delay, retry_after), self._config.max_delay_seconds
                )
            logger.warning(
                "rate_limiter.upstream_throttle",
                limiter=self.name,
                current_delay=self._current_delay,
                retry_after=retry_after,
            )

    def record_success(self) -> None:
        """A request went through: drop the backoff back to the minimum."""
        with self._lock:
            if self._current_delay != self._config.min_delay_seconds:
                logger.debug(
                    "rate_limiter.backoff_reset",
                    limiter=self.name,
                    previous_delay=self._current_delay,
                )
            self._current_delay = self._config.min_delay_seconds
            self._throttle_count = 0

    def reset(self) -> None:
        """Clear all accumulated backoff and refill the bucket."""
        with self._lock:
            self._current_delay = self._config.min_delay_seconds
            self._throttle_count = 0
            self._tokens = self._config.max_requests
            self._window_start = self._clock()
            self._last_grant = None

    def update_config(self, config: RateLimiterConfig) -> None:
        """Swap parameters; keeps spacing state but clamps it into the new bounds."""
        with self._lock:
            self._config = config
            self._tokens = min(self._tokens, config.max_requests)
            self._current_delay = min(
                max(self._current_delay, config.min_delay_seconds), config.max_delay_seconds
            )
        logger.info("rate_limiter.config_updated", limiter=self.name, max_requests=config.max_requests)

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._refill(now)
            return {
                "name": self.name,
                "available_tokens": self._tokens,
                "max_requests": self._config.max_requests,
                "window_seconds": self._config.window_seconds,
                "window_resets_in": max(
                    0.0, self._window_start + self._config.window_seconds - now
                ),
                "current_delay": self._current_delay,
                "throttle_count": self._throttle_count,
            }


class RateLimiterRegistry:
    """Named rate limiters shared across job runs within the process."""

    def __init__(self, default_config: RateLimiterConfig | None = None) -> None:
        self._default_config = default_config or RateLimiterConfig()
        self._limiters: dict[str, RateLimiter] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> RateLimiter | None:
        with self._lock:
            return self._limiters.get(name)

    def get_or_create(
        self, name: str, config: RateLimiterConfig | None = None, **kwargs: Any
    ) -> RateLimiter:
        with self._lock:
            if name not in self._limiters:
                self._limiters[name] = RateLimiter(
                    name, config or replace(self._default_config), **kwargs
                )
            return self._limiters[name]

    def update_config(self, name: str, config: RateLimiterConfig) -> RateLimiter:
        with self._lock:
            limiter = self._limiters.get(name)
            if limiter is None:
                limiter = RateLimiter(name, config)
                self._limiters[name] = limiter
            else:
                limiter.update_config(config)
            return limiter

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._limiters.keys())

    def remove(self, name: str) -> None:
        with self._lock:
            self._limiters.pop(name, None)

    def reset_all(self) -> None:
        with self._lock:
            for limiter in self._limiters.values():
                limiter.reset()
