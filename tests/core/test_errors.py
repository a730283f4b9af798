"""Tests for district_spine.core.errors.

Covers:
- Retry semantics per error class
- Context chaining and serialization
- HTTP status mapping
- Classification of builtin exceptions
"""

import builtins
import json

import pytest

from district_spine.core.errors import (
    AcquireTimeoutError,
    CircuitOpenError,
    ClientRequestError,
    ConfigError,
    DataUnavailableError,
    ErrorCategory,
    JobConflictError,
    JobNotFoundError,
    NetworkError,
    RateLimitError,
    SchemaError,
    ScopeViolationError,
    SpineError,
    StorageCorruptionError,
    StorageError,
    TimeoutError,
    UpstreamServerError,
    ValidationError,
    categorize_error,
    get_retry_after,
    http_status_error,
    is_retryable,
)


class TestRetrySemantics:
    """Each error class carries its own retryable default."""

    @pytest.mark.parametrize(
        "error",
        [
            NetworkError("reset"),
            TimeoutError("slow"),
            RateLimitError(),
            UpstreamServerError("502", status_code=502),
            CircuitOpenError(circuit_name="dashboard"),
            AcquireTimeoutError("waited"),
        ],
    )
    def test_retryable(self, error):
        assert error.retryable is True
        assert is_retryable(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            DataUnavailableError("no data"),
            ClientRequestError("bad request"),
            ValidationError("bad"),
            SchemaError("shape"),
            ConfigError("missing"),
            StorageError("disk"),
            JobNotFoundError("abc"),
        ],
    )
    def test_not_retryable(self, error):
        assert is_retryable(error) is False

    def test_explicit_override(self):
        assert DataUnavailableError("all failed", retryable=True).retryable is True

    def test_builtin_network_errors_are_retryable(self):
        assert is_retryable(ConnectionResetError()) is True
        assert is_retryable(builtins.TimeoutError()) is True
        assert is_retryable(ValueError()) is False

    def test_retry_after(self):
        assert get_retry_after(RateLimitError(retry_after=5)) == 5
        assert get_retry_after(RateLimitError()) == 60
        assert get_retry_after(RuntimeError()) is None


class TestContext:
    """Test with_context and to_dict."""

    def test_known_fields_and_metadata(self):
        error = StorageError("write failed").with_context(
            snapshot_id="2024-01-15", backend="gcs", attempt=2
        )
        assert error.context.snapshot_id == "2024-01-15"
        assert error.context.metadata == {"attempt": 2}
        data = error.to_dict()
        assert data["error_type"] == "StorageError"
        assert data["category"] == "STORAGE"
        assert data["context"] == {"snapshot_id": "2024-01-15", "backend": "gcs", "attempt": 2}

    def test_cause_chaining(self):
        root = OSError("disk full")
        error = StorageError("write failed", cause=root)
        assert error.__cause__ is root
        assert error.to_dict()["cause"] == "disk full"

    def test_corruption_default_recommendations(self):
        error = StorageCorruptionError("bad manifest", path="/x/manifest.json")
        assert len(error.recommendations) == 2
        assert error.to_dict()["path"] == "/x/manifest.json"

    def test_validation_fields(self):
        error = ValidationError("bad date", field="startDate", value="x", code="INVALID")
        data = error.to_dict()
        assert data["field"] == "startDate"
        assert data["code"] == "INVALID"

    def test_scope_violation(self):
        error = ScopeViolationError("out of scope", districts=["99"])
        assert error.category is ErrorCategory.SCOPE
        assert error.districts == ["99"]

    def test_job_conflict_message(self):
        error = JobConflictError("job-1")
        assert "job-1" in str(error)
        assert error.context.job_id == "job-1"

    def test_repr(self):
        assert repr(SpineError("x")) == "SpineError('x', category=INTERNAL)"


class TestHttpStatusError:
    """Test http_status_error()."""

    @pytest.mark.parametrize(
        "status,cls",
        [
            (429, RateLimitError),
            (408, TimeoutError),
            (404, DataUnavailableError),
            (500, UpstreamServerError),
            (503, UpstreamServerError),
            (400, ClientRequestError),
            (403, ClientRequestError),
        ],
    )
    def test_mapping(self, status, cls):
        error = http_status_error("failed", status)
        assert type(error) is cls

    def test_status_recorded(self):
        assert http_status_error("x", 503).context.http_status == 503


class TestCategorize:
    """Test categorize_error()."""

    def test_builtin_categories(self):
        assert categorize_error(ConnectionError()) is ErrorCategory.NETWORK
        assert categorize_error(json.JSONDecodeError("x", "", 0)) is ErrorCategory.VALIDATION
        assert categorize_error(FileNotFoundError()) is ErrorCategory.STORAGE
        assert categorize_error(KeyError()) is ErrorCategory.UNKNOWN

    def test_spine_error_category(self):
        assert categorize_error(ConfigError("x")) is ErrorCategory.CONFIG
