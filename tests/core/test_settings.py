"""Tests for district_spine.core.settings and logging.

Covers:
- Defaults
- DISTRICT_SPINE_* environment overrides
- District list normalisation
- Scoped log context binding; applying log options
"""

import os
from pathlib import Path

import pytest
import structlog

from district_spine.core.logging import LogContext, _ecs_fields, configure_logging, get_logger
from district_spine.core.settings import DistrictSpineSettings


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("DISTRICT_SPINE_"):
            monkeypatch.delenv(key)


class TestDistrictSpineSettings:
    """Test DistrictSpineSettings."""

    def test_defaults(self):
        settings = DistrictSpineSettings()
        assert settings.storage_provider == "local"
        assert settings.configured_districts == []
        assert settings.stale_job_minutes == 10.0
        assert settings.job_retention_days == 30
        assert settings.auto_recover_on_init is True

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DISTRICT_SPINE_STORAGE_PROVIDER", "gcp")
        monkeypatch.setenv("DISTRICT_SPINE_GCS_BUCKET", "snapshots-bucket")
        monkeypatch.setenv("DISTRICT_SPINE_CONFIGURED_DISTRICTS", '["42", " 61 ", ""]')
        monkeypatch.setenv("DISTRICT_SPINE_DATA_DIR", str(tmp_path / "store"))

        settings = DistrictSpineSettings()
        assert settings.storage_provider == "gcp"
        assert settings.gcs_bucket == "snapshots-bucket"
        assert settings.configured_districts == ["42", "61"]
        assert settings.local_root == Path(tmp_path / "store")

    def test_invalid_provider_rejected(self, monkeypatch):
        monkeypatch.setenv("DISTRICT_SPINE_STORAGE_PROVIDER", "s3")
        with pytest.raises(Exception):
            DistrictSpineSettings()


class TestLogging:
    """Test structlog wiring."""

    def test_log_context_binds_and_unbinds(self):
        configure_logging(level="DEBUG", json_format=True)
        with LogContext(job_id="job-1"):
            assert structlog.contextvars.get_contextvars()["job_id"] == "job-1"
        assert "job_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_async_log_context(self):
        async with LogContext(job_id="job-2"):
            get_logger(__name__).info("test.event")
            assert structlog.contextvars.get_contextvars()["job_id"] == "job-2"
        assert "job_id" not in structlog.contextvars.get_contextvars()

    def test_nested_context_restores_outer(self):
        with LogContext(job_id="outer", job_type="data-collection"):
            with LogContext(job_id="inner"):
                assert structlog.contextvars.get_contextvars()["job_id"] == "inner"
            context = structlog.contextvars.get_contextvars()
            assert context["job_id"] == "outer"
            assert context["job_type"] == "data-collection"
        assert "job_type" not in structlog.contextvars.get_contextvars()

    def test_ecs_fields(self):
        event = _ecs_fields(
            None,
            "info",
            {"event": "x", "timestamp": "t", "level": "info", "logger": "m", "job_id": "j", "date": "d"},
        )
        assert event == {
            "event": "x",
            "@timestamp": "t",
            "log.level": "info",
            "log.logger": "m",
            "labels.job_id": "j",
            "date": "d",
        }

    def test_settings_apply_log_options(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            "district_spine.core.settings.configure_logging", lambda **kw: calls.append(kw)
        )

        DistrictSpineSettings(log_level="WARNING", json_logs=True).configure_logging()
        DistrictSpineSettings(debug=True).configure_logging()

        assert calls[0]["level"] == "WARNING"
        assert calls[0]["json_format"] is True
        assert calls[1]["level"] == "DEBUG"
