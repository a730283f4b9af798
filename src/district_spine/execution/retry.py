"""Retry strategies with exponential backoff and jitter.

Used by the snapshot batch writer and anywhere a storage or source call
should be re-attempted on transient failure.

Example:
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    >>> for attempt in range(3):
    ...     delay = strategy.next_delay(attempt)
    ...     print(f"Attempt {attempt}: wait {delay:.2f}s")

    >>> result = await retry_async(lambda: store.write(doc), strategy)
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from district_spine.core.errors import is_retryable
from district_spine.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    max_retries: int

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with proportional jitter.

    Delay = min(base_delay * multiplier ** attempt, max_delay) * (1 ± jitter)

    Attributes:
        max_retries: Retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Cap before jitter is applied
        multiplier: Exponential growth factor
        jitter: Fraction of the delay to randomize (0 disables)
        retry_on: Predicate deciding which errors are retried
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.2
    retry_on: Callable[[BaseException], bool] = is_retryable

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay *= 1 + (random.random() * 2 - 1) * self.jitter
        return max(0.0, delay)

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is not None:
            return self.retry_on(error)
        return True


@dataclass
class NoRetry(RetryStrategy):
    """Fail on the first error."""

    max_retries: int = 0

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return False


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    strategy: RetryStrategy,
    *,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds or ``strategy`` gives up.

    Raises:
        The last error once retries are exhausted or the error is not retryable.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if not strategy.should_retry(attempt, e):
                raise
            delay = strategy.next_delay(attempt)
            logger.warning(
                "retry.attempt_failed",
                operation=operation_name,
                attempt=attempt + 1,
                max_retries=strategy.max_retries,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            attempt += 1
            await sleep(delay)
