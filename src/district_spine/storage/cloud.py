"""Shared adapter-boundary handling for Google Cloud backends.

SDK exceptions are converted into the error taxonomy here, once, so the
snapshot and job stores above only ever see :class:`StorageError`
(retryable or not) or a "not found" result.

Classification by HTTP status carried on the exception (``.code``):

    404                          → not found (reads return None)
    408, 429, 500, 502, 503, 504 → StorageError(retryable=True)
    400, 401, 403 and the rest   → StorageError(retryable=False)
    ConnectionError / timeouts   → StorageError(retryable=True, NETWORK)

Every SDK call runs in a worker thread (``asyncio.to_thread``) behind the
backend's circuit breaker. Only retryable failures count towards opening it.
"""

from __future__ import annotations

import asyncio
import builtins
from collections.abc import Callable
from typing import Any, TypeVar

from district_spine.core.errors import ErrorCategory, StorageError
from district_spine.execution.circuit_breaker import CircuitBreaker

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def status_code_of(error: BaseException) -> int | None:
    code = getattr(error, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return int(code)
    return None


def is_not_found(error: BaseException) -> bool:
    return status_code_of(error) == 404


def classify_cloud_error(error: BaseException, *, operation: str, backend: str) -> StorageError:
    """Map an SDK exception to a StorageError with the right retry semantics."""
    status = status_code_of(error)
    if status is not None:
        converted = StorageError(
            f"{backend} {operation} failed with HTTP {status}: {error}",
            retryable=status in RETRYABLE_STATUS,
            cause=error,
        )
        converted.with_context(http_status=status)
    elif isinstance(error, (ConnectionError, builtins.TimeoutError)):
        converted = StorageError(
            f"{backend} {operation} failed: {error}",
            category=ErrorCategory.NETWORK,
            retryable=True,
            cause=error,
        )
    else:
        converted = StorageError(f"{backend} {operation} failed: {error}", cause=error)
    converted.with_context(operation=operation, backend=backend)
    return converted


async def run_cloud_call(
    breaker: CircuitBreaker,
    func: Callable[[], T],
    *,
    operation: str,
    backend: str,
    not_found: Any = None,
) -> T | Any:
    """Run a blocking SDK call off-loop, through ``breaker``, with classification.

    Returns ``not_found`` when the SDK reports a 404.

    Raises:
        StorageError: Any other SDK failure
        CircuitOpenError: The breaker is open; ``func`` was not called
    """

    async def _call() -> Any:
        try:
            return await asyncio.to_thread(func)
        except Exception as e:
            if is_not_found(e):
                return not_found
            raise classify_cloud_error(e, operation=operation, backend=backend) from e

    return await breaker.execute(_call)
