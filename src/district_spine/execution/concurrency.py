"""Concurrency limiter: bounded parallelism with a bounded wait queue.

WHY
───
Per-date collection and per-batch snapshot writes fan out into many
coroutines. Unbounded ``asyncio.gather`` would hammer the dashboard and
the storage backend alike. ``ConcurrencyLimiter`` caps in-flight work,
parks the overflow in a FIFO queue of limited depth, and gives up on a
queued task after ``acquire_timeout`` instead of waiting forever.

ARCHITECTURE
────────────
::

    ConcurrencyLimiterRegistry (injected, keyed by name)
      └── ConcurrencyLimiter
            ├── .execute(task)               ─ acquire slot → await task → release
            ├── .execute_all_settled(tasks)  ─ gather, never raises, input order
            ├── .update_limit(n)             ─ new ceiling for future grants
            └── .get_status()                ─ active / queued / limits

    slot grant order: FIFO over asyncio futures
    queue overflow  → QueueFullError
    waited too long → AcquireTimeoutError

Related modules:
    rate_limit.py       : spacing between grants
    circuit_breaker.py  : fail fast on unstable dependencies

Example::

    limiter = ConcurrencyLimiter("snapshot-writes", max_concurrent=3)
    results = await limiter.execute_all_settled(
        [lambda b=b: write_batch(b) for b in batches],
        context={"snapshot_id": "2024-01-15"},
    )
    failed = [r for r in results if not r.fulfilled]
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

from district_spine.core.errors import AcquireTimeoutError, QueueFullError
from district_spine.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class SettledResult(Generic[T]):
    """Outcome of one task in ``execute_all_settled``."""

    status: Literal["fulfilled", "rejected"]
    value: T | None = None
    error: BaseException | None = None

    @property
    def fulfilled(self) -> bool:
        return self.status == "fulfilled"


class ConcurrencyLimiter:
    """Semaphore-like gate with a bounded FIFO queue and acquisition timeout.

    Parameters
    ----------
    name : str
        Logical name used in logs and the registry.
    max_concurrent : int
        Maximum tasks running at once.
    queue_limit : int
        Maximum tasks waiting for a slot; further tasks fail immediately.
    acquire_timeout : float | None
        Seconds a queued task may wait; None waits indefinitely.
    """

    def __init__(
        self,
        name: str,
        max_concurrent: int = 3,
        *,
        queue_limit: int = 100,
        acquire_timeout: float | None = 300.0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if queue_limit < 0:
            raise ValueError("queue_limit must be >= 0")
        self.name = name
        self._max_concurrent = max_concurrent
        self._queue_limit = queue_limit
        self._acquire_timeout = acquire_timeout

        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._completed = 0
        self._rejected = 0
        self._timed_out = 0

    # ── Slot management ──────────────────────────────────────────────

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    async def _acquire(self) -> None:
        if self._active < self._max_concurrent and not self.queued:
            self._active += 1
            return

        if self.queued >= self._queue_limit:
            self._rejected += 1
            raise QueueFullError(
                f"Concurrency limiter '{self.name}' queue is full "
                f"({self._queue_limit} waiting)"
            )

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        try:
            await asyncio.wait_for(asyncio.shield(future), self._acquire_timeout)
        except asyncio.TimeoutError:
            self._abandon(future)
            self._timed_out += 1
            raise AcquireTimeoutError(
                f"Timed out after {self._acquire_timeout}s waiting for a slot "
                f"on '{self.name}'"
            ) from None
        except asyncio.CancelledError:
            self._abandon(future)
            raise

    def _abandon(self, future: asyncio.Future[None]) -> None:
        """Drop a waiter; hand its slot back if it was granted meanwhile."""
        if future.done() and not future.cancelled():
            self._release()
            return
        future.cancel()
        try:
            self._waiters.remove(future)
        except ValueError:
            pass

    def _release(self) -> None:
        self._active -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._active < self._max_concurrent:
            future = self._waiters.popleft()
            if future.done():
                continue
            self._active += 1
            future.set_result(None)

    # ── Execution ────────────────────────────────────────────────────

    async def execute(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task()`` once a slot is free.

        Raises:
            QueueFullError: The wait queue is at ``queue_limit``
            AcquireTimeoutError: No slot within ``acquire_timeout``
        """
        await self._acquire()
        try:
            return await task()
        finally:
            self._completed += 1
            self._release()

    async def execute_all_settled(
        self,
        tasks: Sequence[Callable[[], Awaitable[T]]],
        context: dict[str, Any] | None = None,
    ) -> list[SettledResult[T]]:
        """Run every task through the gate and report each outcome in input order."""
        context = context or {}

        async def _settle(task: Callable[[], Awaitable[T]]) -> SettledResult[T]:
            try:
                return SettledResult("fulfilled", value=await self.execute(task))
            except Exception as e:
                return SettledResult("rejected", error=e)

        logger.debug(
            "concurrency.batch_start",
            limiter=self.name,
            tasks=len(tasks),
            max_concurrent=self._max_concurrent,
            **context,
        )
        results = await asyncio.gather(*[_settle(t) for t in tasks])

        rejected = sum(1 for r in results if not r.fulfilled)
        if rejected:
            logger.warning(
                "concurrency.batch_partial",
                limiter=self.name,
                tasks=len(tasks),
                rejected=rejected,
                **context,
            )
        return list(results)

    # ── Configuration ────────────────────────────────────────────────

    def update_limit(self, max_concurrent: int) -> None:
        """Change the ceiling; running tasks are unaffected."""
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        old = self._max_concurrent
        self._max_concurrent = max_concurrent
        logger.info(
            "concurrency.limit_updated", limiter=self.name, old=old, new=max_concurrent
        )
        self._wake()

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "active": self._active,
            "queued": self.queued,
            "max_concurrent": self._max_concurrent,
            "queue_limit": self._queue_limit,
            "acquire_timeout": self._acquire_timeout,
            "completed": self._completed,
            "rejected": self._rejected,
            "timed_out": self._timed_out,
        }


class ConcurrencyLimiterRegistry:
    """Named concurrency limiters owned by the composition root."""

    def __init__(self, queue_limit: int = 100, acquire_timeout: float | None = 300.0) -> None:
        self._queue_limit = queue_limit
        self._acquire_timeout = acquire_timeout
        self._limiters: dict[str, ConcurrencyLimiter] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> ConcurrencyLimiter | None:
        with self._lock:
            return self._limiters.get(name)

    def get_or_create(self, name: str, max_concurrent: int = 3, **kwargs: Any) -> ConcurrencyLimiter:
        with self._lock:
            if name not in self._limiters:
                kwargs.setdefault("queue_limit", self._queue_limit)
                kwargs.setdefault("acquire_timeout", self._acquire_timeout)
                self._limiters[name] = ConcurrencyLimiter(name, max_concurrent, **kwargs)
            return self._limiters[name]

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._limiters.keys())

    def remove(self, name: str) -> None:
        with self._lock:
            self._limiters.pop(name, None)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: lim.get_status() for name, lim in self._limiters.items()}
