"""Local filesystem job storage.

Layout::

    {root}/backfill-jobs/{jobId}.json
    {root}/backfill-jobs/rate-limit-config.json
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import pydantic

from district_spine.core.errors import SpineError, StorageError, ValidationError
from district_spine.core.logging import get_logger
from district_spine.domain.models import BackfillJob, RateLimitConfig
from district_spine.storage.files import atomic_write_json, read_json_file
from district_spine.storage.jobs.base import BackfillJobStorage

logger = get_logger(__name__)

RATE_LIMIT_FILE = "rate-limit-config.json"

_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class LocalBackfillJobStorage(BackfillJobStorage):
    """One JSON file per job, written atomically."""

    backend_name = "local"

    def __init__(self, root: str | Path):
        super().__init__()
        self.jobs_dir = Path(root) / "backfill-jobs"
        self.rate_limit_path = self.jobs_dir / RATE_LIMIT_FILE

    def _job_path(self, job_id: str) -> Path:
        if not _JOB_ID_PATTERN.match(job_id):
            raise ValidationError(
                f"Invalid job id: {job_id!r}", field="job_id", value=job_id, code="INVALID_JOB_ID"
            )
        return self.jobs_dir / f"{job_id}.json"

    def _parse_job(self, raw: Any, source: Path) -> BackfillJob | None:
        try:
            return BackfillJob.model_validate(raw)
        except pydantic.ValidationError as e:
            logger.warning(
                "job_storage.invalid_job_file",
                path=str(source),
                errors=e.error_count(),
                backend=self.backend_name,
            )
            return None

    async def _load_job(self, job_id: str) -> BackfillJob | None:
        if not _JOB_ID_PATTERN.match(job_id):
            return None
        path = self._job_path(job_id)
        raw = read_json_file(path)
        if raw is None:
            return None
        return self._parse_job(raw, path)

    async def _load_all_jobs(self) -> list[BackfillJob]:
        if not self.jobs_dir.is_dir():
            return []
        jobs: list[BackfillJob] = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            if path.name == RATE_LIMIT_FILE:
                continue
            try:
                raw = read_json_file(path)
            except SpineError as e:
                logger.warning(
                    "job_storage.unreadable_job_file",
                    path=str(path),
                    error=e.message,
                    backend=self.backend_name,
                )
                continue
            job = self._parse_job(raw, path) if raw is not None else None
            if job is not None:
                jobs.append(job)
        return jobs

    async def _save_job(self, job: BackfillJob) -> None:
        atomic_write_json(self._job_path(job.job_id), job.to_record())

    async def _remove_job(self, job_id: str) -> bool:
        if not _JOB_ID_PATTERN.match(job_id):
            return False
        try:
            self._job_path(job_id).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete job {job_id}: {e}", cause=e).with_context(
                job_id=job_id, backend=self.backend_name
            ) from e
        return True

    async def _load_rate_limit_config(self) -> RateLimitConfig | None:
        raw = read_json_file(self.rate_limit_path)
        if raw is None:
            return None
        try:
            return RateLimitConfig.model_validate(raw)
        except pydantic.ValidationError:
            logger.warning(
                "job_storage.invalid_rate_limit_config",
                path=str(self.rate_limit_path),
                backend=self.backend_name,
            )
            return RateLimitConfig()

    async def _save_rate_limit_config(self, config: RateLimitConfig) -> None:
        atomic_write_json(self.rate_limit_path, config.to_record())

    async def is_ready(self) -> bool:
        try:
            self.jobs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("job_storage.not_ready", backend=self.backend_name, error=str(e))
            return False
        return os.access(self.jobs_dir, os.W_OK)
