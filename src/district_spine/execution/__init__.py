"""Guard layer protecting the external dashboard and storage backends.

Architecture::

    rate_limit.py       RateLimiter + RateLimiterRegistry (adaptive token bucket)
    concurrency.py      ConcurrencyLimiter + ConcurrencyLimiterRegistry
    circuit_breaker.py  CircuitBreaker + CircuitBreakerRegistry
    retry.py            ExponentialBackoff, retry_async

Every guard is a named instance obtained from a registry that the
composition root (``district_spine.backfill.factory``) owns, so state
such as bucket level or open/closed history persists across job runs.
"""

from district_spine.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from district_spine.execution.concurrency import (
    ConcurrencyLimiter,
    ConcurrencyLimiterRegistry,
    SettledResult,
)
from district_spine.execution.rate_limit import (
    RateLimiter,
    RateLimiterConfig,
    RateLimiterRegistry,
)
from district_spine.execution.retry import ExponentialBackoff, NoRetry, retry_async

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ConcurrencyLimiter",
    "ConcurrencyLimiterRegistry",
    "ExponentialBackoff",
    "NoRetry",
    "RateLimiter",
    "RateLimiterConfig",
    "RateLimiterRegistry",
    "SettledResult",
    "retry_async",
]
