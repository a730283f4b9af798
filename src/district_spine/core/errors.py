"""
Structured error types for district-spine.

Every failure inside the backfill engine is raised as a typed error that
carries its own retry semantics. Downstream logic (checkpointing, the
circuit breaker, per-date accounting) switches on the error TYPE and its
``retryable`` flag and never re-parses message text.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure mode
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry job, snapshot, district and date metadata
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       SpineError                                 │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError        SourceError          ValidationError      │
        │  (retryable=True)      (SOURCE)             (VALIDATION)         │
        │       │                    │                     │               │
        │  NetworkError          DataUnavailable      SchemaError          │
        │  TimeoutError          ClientRequestError   ScopeViolationError  │
        │  RateLimitError                                                  │
        │  UpstreamServerError   StorageError         BackfillError        │
        │  CircuitOpenError      (STORAGE)            (ORCHESTRATION)      │
        │                            │                     │               │
        │  ConcurrencyError      StorageCorruption    JobConflictError     │
        │  QueueFullError                             JobNotFoundError     │
        │  AcquireTimeoutError   ConfigError          InvalidJobStateError │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = NetworkError("Connection reset while fetching 2024-01-15")
    >>> error.retryable
    True
    >>> DataUnavailableError("No data for district 42").retryable
    False

    >>> error = StorageCorruptionError(
    ...     "manifest.json is not valid JSON",
    ...     recommendations=["Remove the corrupted file"],
    ... ).with_context(snapshot_id="2024-01-15")
    >>> error.context.snapshot_id
    '2024-01-15'

Guardrails:
    ❌ DON'T: Classify errors by matching substrings of messages
    ✅ DO: Raise the matching subclass at the point of failure

    ❌ DON'T: Swallow the original exception
    ✅ DO: Pass it as cause= for error chaining

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    backfill, storage
"""

from __future__ import annotations

import builtins
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"

    # Source/data errors
    SOURCE = "SOURCE"
    VALIDATION = "VALIDATION"
    SCOPE = "SCOPE"

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"

    # Application errors
    ORCHESTRATION = "ORCHESTRATION"
    CONCURRENCY = "CONCURRENCY"

    # Internal errors
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields cover what the backfill engine knows at the point of
    failure. Anything else goes into ``metadata``.

    Attributes:
        job_id: Backfill job being executed
        snapshot_id: Snapshot (date) being read or written
        district_id: District being processed
        date: Item date being collected
        operation: Storage or service operation name
        backend: Storage backend (local, gcs, firestore)
        http_status: HTTP status code if applicable
        metadata: Additional key-value pairs
    """

    job_id: str | None = None
    snapshot_id: str | None = None
    district_id: str | None = None
    date: str | None = None
    operation: str | None = None
    backend: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["job_id", "snapshot_id", "district_id", "date",
                    "operation", "backend", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SpineError(Exception):
    """
    Base exception for all district-spine errors.

    All SpineError instances carry:
    - **category:** ErrorCategory enum for classification and routing
    - **retryable:** Boolean indicating if operation can be retried
    - **retry_after:** Optional seconds to wait before retry
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable`` so that the
    common case needs no keyword arguments at the raise site.

    Examples:
        >>> error = SpineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> try:
        ...     raise ConnectionError("DNS lookup failed")
        ... except ConnectionError as e:
        ...     error = SpineError("Network error", cause=e)
        >>> error.cause
        ConnectionError('DNS lookup failed')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StorageError("Write failed").with_context(
                snapshot_id="2024-01-15",
                backend="gcs",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }

        if self.retry_after is not None:
            result["retry_after"] = self.retry_after

        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict

        if self.cause is not None:
            result["cause"] = str(self.cause)

        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(SpineError):
    """
    Temporary error that may succeed on retry.

    Network resets, timeouts, throttling responses and 5xx responses all
    land here. The collector records these with ``is_retryable=True`` so a
    resumed job can try the date again.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Network-related transient error."""


class TimeoutError(TransientError):
    """Operation timed out."""


class RateLimitError(TransientError):
    """The external source answered with a throttling response."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float = 60,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class UpstreamServerError(TransientError):
    """The external source returned a 5xx response."""

    def __init__(self, message: str, *, status_code: int = 500, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.context.http_status = status_code


class CircuitOpenError(TransientError):
    """Raised when a circuit is open and the call was never attempted."""

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        circuit_name: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.circuit_name = circuit_name


# =============================================================================
# SOURCE ERRORS
# =============================================================================


class SourceError(SpineError):
    """Error reported by the external data source."""

    default_category = ErrorCategory.SOURCE
    default_retryable = False


class DataUnavailableError(SourceError):
    """
    The source has no data for a district or date.

    Recorded and counted towards partial-success accounting. Never retried
    within a run.
    """


class ClientRequestError(SourceError):
    """The source rejected the request with a 4xx response."""

    def __init__(self, message: str, *, status_code: int = 400, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.context.http_status = status_code


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(SpineError):
    """
    Data or request validation error.

    Never retryable. Fatal for the affected item only.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        code: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        if self.code:
            result["code"] = self.code
        return result


class SchemaError(ValidationError):
    """Normalized payload does not match the expected schema."""


class ScopeViolationError(ValidationError):
    """A request targets districts outside the configured set."""

    default_category = ErrorCategory.SCOPE

    def __init__(self, message: str, *, districts: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.districts = districts or []


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(SpineError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(SpineError):
    """Storage-related error (filesystem, object storage, document database)."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


class StorageCorruptionError(StorageError):
    """
    A stored object is malformed, mismatches its schema, or has inconsistent counts.

    Carries concrete ``recommendations`` for the operator instead of being
    silently discarded.
    """

    default_recommendations = (
        "Remove the corrupted file and rely on the previous successful snapshot",
        "Re-run the backfill for the affected date to regenerate the snapshot",
    )

    def __init__(
        self,
        message: str,
        *,
        recommendations: list[str] | None = None,
        path: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.recommendations = (
            list(recommendations) if recommendations else list(self.default_recommendations)
        )
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["recommendations"] = self.recommendations
        if self.path:
            result["path"] = self.path
        return result


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class BackfillError(SpineError):
    """Backfill job orchestration error."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class JobConflictError(BackfillError):
    """Another job is already active."""

    def __init__(self, active_job_id: str, message: str | None = None):
        self.active_job_id = active_job_id
        super().__init__(
            message or f"Cannot create job: job {active_job_id} is already active"
        )
        self.context.job_id = active_job_id


class JobNotFoundError(BackfillError):
    """No job with the given id exists."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")
        self.context.job_id = job_id


class InvalidJobStateError(BackfillError):
    """The requested transition is not allowed from the job's current status."""


# =============================================================================
# CONCURRENCY ERRORS
# =============================================================================


class ConcurrencyError(SpineError):
    """Bounded-parallelism gate refused or abandoned a task."""

    default_category = ErrorCategory.CONCURRENCY
    default_retryable = True


class QueueFullError(ConcurrencyError):
    """The wait queue is at its limit."""


class AcquireTimeoutError(ConcurrencyError):
    """A queued task waited longer than the acquisition timeout."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, SpineError):
        return error.retryable

    retryable_types = (
        ConnectionError,
        builtins.TimeoutError,
        BrokenPipeError,
    )
    return isinstance(error, retryable_types)


def get_retry_after(error: BaseException) -> float | None:
    """Get retry delay from error, if specified."""
    if isinstance(error, SpineError):
        return error.retry_after
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, SpineError):
        return error.category

    if isinstance(error, (ConnectionError, builtins.TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, (json.JSONDecodeError, ValueError)):
        return ErrorCategory.VALIDATION
    if isinstance(error, OSError):
        return ErrorCategory.STORAGE

    return ErrorCategory.UNKNOWN


def http_status_error(message: str, status_code: int, **kwargs: Any) -> SpineError:
    """Build the taxonomy error matching an HTTP status code."""
    if status_code == 429:
        return RateLimitError(message, **kwargs)
    if status_code == 408:
        return TimeoutError(message, **kwargs)
    if status_code == 404:
        return DataUnavailableError(message, **kwargs)
    if status_code >= 500:
        return UpstreamServerError(message, status_code=status_code, **kwargs)
    return ClientRequestError(message, status_code=status_code, **kwargs)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SpineError",
    # Transient
    "TransientError",
    "NetworkError",
    "TimeoutError",
    "RateLimitError",
    "UpstreamServerError",
    "CircuitOpenError",
    # Source
    "SourceError",
    "DataUnavailableError",
    "ClientRequestError",
    # Validation
    "ValidationError",
    "SchemaError",
    "ScopeViolationError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    "StorageCorruptionError",
    # Orchestration
    "BackfillError",
    "JobConflictError",
    "JobNotFoundError",
    "InvalidJobStateError",
    # Concurrency
    "ConcurrencyError",
    "QueueFullError",
    "AcquireTimeoutError",
    # Utilities
    "is_retryable",
    "get_retry_after",
    "categorize_error",
    "http_status_error",
]
