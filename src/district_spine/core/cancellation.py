"""Cooperative cancellation tokens.

A token is created per job run and passed through every layer that loops
over items (collector, analytics generator, rate limiter waits). Work checks
the token at item boundaries; in-flight items always run to completion.

Example:
    >>> token = CancellationToken()
    >>> token.cancel("operator request")
    >>> token.cancelled
    True
    >>> token.reason
    'operator request'
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from datetime import datetime

from district_spine.core.timestamps import utc_now


class CancelledByToken(Exception):
    """Raised by :meth:`CancellationToken.raise_if_cancelled`."""

    def __init__(self, reason: str | None = None):
        super().__init__(reason or "Operation cancelled")
        self.reason = reason


class CancellationToken:
    """Thread-safe, one-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._cancelled_at: datetime | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def cancelled_at(self) -> datetime | None:
        return self._cancelled_at

    def cancel(self, reason: str | None = None) -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._cancelled_at = utc_now()
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            callback()
        return True

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when cancelled (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledByToken(self._reason)

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; wake early on cancellation.

        Returns:
            True if the full delay elapsed, False if cancelled first.
        """
        if seconds <= 0:
            return not self.cancelled

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def _wake() -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve)

        def _resolve() -> None:
            if not waiter.done():
                waiter.set_result(None)

        self.on_cancel(_wake)
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        finally:
            self._discard_callback(_wake)
        return False

    def _discard_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


class CancellationRegistry:
    """Tokens for the runs currently in flight, keyed by job id."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def create(self, key: str) -> CancellationToken:
        with self._lock:
            token = CancellationToken()
            self._tokens[key] = token
            return token

    def get(self, key: str) -> CancellationToken | None:
        with self._lock:
            return self._tokens.get(key)

    def cancel(self, key: str, reason: str | None = None) -> bool:
        token = self.get(key)
        if token is None:
            return False
        return token.cancel(reason)

    def remove(self, key: str) -> None:
        with self._lock:
            self._tokens.pop(key, None)

    def cancel_all(self, reason: str | None = None) -> None:
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel(reason)
