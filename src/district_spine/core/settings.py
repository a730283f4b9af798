"""Environment-driven settings for district-spine.

``SpineBaseSettings`` carries the fields every service shares (log level,
data directory). ``DistrictSpineSettings`` adds the backfill engine's knobs
under the ``DISTRICT_SPINE_`` prefix.

Examples:
    >>> import os
    >>> os.environ["DISTRICT_SPINE_STORAGE_PROVIDER"] = "gcp"
    >>> os.environ["DISTRICT_SPINE_CONFIGURED_DISTRICTS"] = '["42", "61"]'
    >>> settings = DistrictSpineSettings()
    >>> settings.storage_provider
    'gcp'

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from district_spine.core.logging import configure_logging


class SpineBaseSettings(BaseSettings):
    """Common settings shared across services.

    Fields
    ──────
    debug        : Enable debug mode (verbose logging, etc.)
    log_level    : Structlog log level
    json_logs    : JSON output (None → auto-detect from tty)
    data_dir     : Persistent data directory
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Storage ──────────────────────────────────────────────────
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".district-spine",
        description="Root of local snapshot and job storage",
    )


class DistrictSpineSettings(SpineBaseSettings):
    """Backfill engine settings (``DISTRICT_SPINE_*`` environment variables)."""

    model_config = SettingsConfigDict(
        env_prefix="DISTRICT_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage backends ─────────────────────────────────────────
    storage_provider: Literal["local", "gcp", "firestore"] = "local"
    gcp_project: str | None = None
    gcs_bucket: str | None = None
    gcs_prefix: str = "snapshots"
    firestore_collection: str = "snapshots"
    firestore_jobs_collection: str = "backfill-jobs"

    # ── Scope ────────────────────────────────────────────────────
    configured_districts: list[str] = Field(default_factory=list)

    # ── Job lifecycle ────────────────────────────────────────────
    stale_job_minutes: float = 10.0
    progress_flush_seconds: float = 5.0
    auto_recover_on_init: bool = True
    job_retention_days: int = 30

    # ── Preview estimates ────────────────────────────────────────
    seconds_per_date_estimate: float = 30.0
    seconds_per_snapshot_estimate: float = 5.0

    # ── Guards ───────────────────────────────────────────────────
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 60.0
    acquire_timeout_seconds: float = 300.0
    queue_limit: int = 100

    # ── Availability index ───────────────────────────────────────
    availability_cache_ttl_seconds: float = 300.0

    @field_validator("configured_districts")
    @classmethod
    def _strip_districts(cls, value: list[str]) -> list[str]:
        return [d.strip() for d in value if d and d.strip()]

    @property
    def local_root(self) -> Path:
        return Path(self.data_dir)

    def configure_logging(self) -> None:
        """Apply ``log_level`` and ``json_logs``; call once at process start."""
        configure_logging(
            level="DEBUG" if self.debug else self.log_level,
            json_format=self.json_logs,
            service="district-spine",
        )
