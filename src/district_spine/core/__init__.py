"""District Spine Core -- shared primitives for the backfill engine.

Architecture::

    errors.py          Typed error taxonomy (SpineError, TransientError, ...)
    logging.py         structlog configuration + scoped context
    settings.py        pydantic-settings configuration
    timestamps.py      UTC + calendar-date helpers (stdlib-only)
    cancellation.py    Cooperative cancellation tokens
    dates.py           Date-range validation and expansion
    closing_period.py  Closing-period snapshot dating
    cache.py           IntermediateCache[T] + CacheRegistry
"""

from district_spine.core.cache import CacheRegistry, IntermediateCache
from district_spine.core.cancellation import CancellationToken
from district_spine.core.closing_period import ClosingPeriodDetector, ClosingPeriodResult
from district_spine.core.errors import (
    ErrorCategory,
    SpineError,
    categorize_error,
    is_retryable,
)
from district_spine.core.logging import configure_logging, get_logger

__all__ = [
    "CacheRegistry",
    "CancellationToken",
    "ClosingPeriodDetector",
    "ClosingPeriodResult",
    "ErrorCategory",
    "IntermediateCache",
    "SpineError",
    "categorize_error",
    "configure_logging",
    "get_logger",
    "is_retryable",
]
