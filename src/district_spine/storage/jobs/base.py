"""Backfill job persistence.

One record per job plus a single global rate-limit record. Backends move
whole job records; merging, filtering, pagination and retention live here
so that every backend answers the same queries the same way.

Manifesto:
    - **jobId is immutable:** ``update_job`` merges fields but never renames
    - **Newest first:** every listing is ordered by ``createdAt`` descending
    - **Retention touches terminal jobs only:** pending, running and
      recovering jobs survive cleanup regardless of age
    - **Defaults on first read:** a missing rate-limit record is created
      with the documented defaults

Architecture:
    ::

        BackfillJobStorage (ABC)
          ├── LocalBackfillJobStorage      {root}/backfill-jobs/{jobId}.json
          ├── InMemoryBackfillJobStorage   dict, for tests and ephemeral runs
          └── FirestoreBackfillJobStorage  {collection}/{jobId} documents

        backend primitives:
          _load_job, _load_all_jobs, _save_job, _remove_job,
          _load_rate_limit_config, _save_rate_limit_config, is_ready

Tags:
    storage, backfill, jobs, persistence, retention
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import timedelta
from typing import Any

from district_spine.core.errors import JobNotFoundError, StorageError
from district_spine.core.logging import get_logger
from district_spine.core.timestamps import from_iso8601, utc_now
from district_spine.domain.models import (
    BackfillJob,
    JobCheckpoint,
    JobStatus,
    ListJobsOptions,
    RateLimitConfig,
)

logger = get_logger(__name__)

TERMINAL_STATUSES = [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]
ACTIVE_STATUSES = [JobStatus.RUNNING, JobStatus.RECOVERING]


def _created_sort_key(job: BackfillJob) -> float:
    try:
        created = from_iso8601(job.created_at)
    except ValueError:
        return 0.0
    return created.timestamp() if created is not None else 0.0


def filter_jobs(jobs: Iterable[BackfillJob], options: ListJobsOptions | None = None) -> list[BackfillJob]:
    """Apply listing filters, newest-first ordering and offset/limit."""
    options = options or ListJobsOptions()
    selected = list(jobs)

    if options.status:
        wanted = set(options.status)
        selected = [j for j in selected if j.status in wanted]
    if options.job_type:
        types = set(options.job_type)
        selected = [j for j in selected if j.job_type in types]
    if options.start_date_from:
        selected = [j for j in selected if j.created_at >= options.start_date_from]
    if options.start_date_to:
        selected = [j for j in selected if j.created_at <= options.start_date_to]

    selected.sort(key=_created_sort_key, reverse=True)

    end = None if options.limit is None else options.offset + options.limit
    return selected[options.offset : end]


def merge_job(job: BackfillJob, updates: dict[str, Any]) -> BackfillJob:
    """Merged copy of ``job``; a ``job_id`` in ``updates`` is ignored."""
    data = job.model_dump()
    data.update({k: v for k, v in updates.items() if k not in ("job_id", "jobId")})
    data["job_id"] = job.job_id
    return BackfillJob.model_validate(data)


class BackfillJobStorage(ABC):
    """Persistence for backfill jobs and the global rate-limit record."""

    backend_name = "abstract"

    def __init__(self) -> None:
        self._write_lock = asyncio.Lock()

    # ── Backend primitives ───────────────────────────────────────

    @abstractmethod
    async def _load_job(self, job_id: str) -> BackfillJob | None: ...

    @abstractmethod
    async def _load_all_jobs(self) -> list[BackfillJob]:
        """Every readable job; unreadable records are skipped with a warning."""

    @abstractmethod
    async def _save_job(self, job: BackfillJob) -> None: ...

    @abstractmethod
    async def _remove_job(self, job_id: str) -> bool: ...

    @abstractmethod
    async def _load_rate_limit_config(self) -> RateLimitConfig | None: ...

    @abstractmethod
    async def _save_rate_limit_config(self, config: RateLimitConfig) -> None: ...

    @abstractmethod
    async def is_ready(self) -> bool:
        """True when the backend can be read and written. Never raises."""

    # ── Jobs ─────────────────────────────────────────────────────

    async def create_job(self, job: BackfillJob) -> None:
        """Persist a new job.

        Raises:
            StorageError: A job with the same id already exists
        """
        async with self._write_lock:
            if await self._load_job(job.job_id) is not None:
                raise StorageError(f"Job with ID '{job.job_id}' already exists").with_context(
                    job_id=job.job_id, backend=self.backend_name
                )
            await self._save_job(job)
        logger.info(
            "job_storage.job_created",
            job_id=job.job_id,
            job_type=job.job_type.value,
            status=job.status.value,
            backend=self.backend_name,
        )

    async def get_job(self, job_id: str) -> BackfillJob | None:
        return await self._load_job(job_id)

    async def update_job(self, job_id: str, updates: dict[str, Any]) -> BackfillJob:
        """Merge ``updates`` (snake_case field names) into the stored job.

        Raises:
            JobNotFoundError: No job with ``job_id``
        """
        async with self._write_lock:
            existing = await self._load_job(job_id)
            if existing is None:
                raise JobNotFoundError(job_id)
            updated = merge_job(existing, updates)
            await self._save_job(updated)
        logger.debug(
            "job_storage.job_updated",
            job_id=job_id,
            fields=sorted(updates),
            backend=self.backend_name,
        )
        return updated

    async def delete_job(self, job_id: str) -> bool:
        async with self._write_lock:
            deleted = await self._remove_job(job_id)
        if deleted:
            logger.info("job_storage.job_deleted", job_id=job_id, backend=self.backend_name)
        return deleted

    async def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]:
        return filter_jobs(await self._load_all_jobs(), options)

    async def get_jobs_by_status(self, statuses: list[JobStatus]) -> list[BackfillJob]:
        return await self.list_jobs(ListJobsOptions(status=statuses))

    async def get_active_job(self) -> BackfillJob | None:
        """The newest running or recovering job, if any."""
        active = await self.get_jobs_by_status(ACTIVE_STATUSES)
        return active[0] if active else None

    async def update_checkpoint(self, job_id: str, checkpoint: JobCheckpoint | None) -> None:
        await self.update_job(job_id, {"checkpoint": checkpoint})

    async def get_checkpoint(self, job_id: str) -> JobCheckpoint | None:
        job = await self._load_job(job_id)
        return job.checkpoint if job is not None else None

    async def cleanup_old_jobs(self, retention_days: int) -> int:
        """Delete terminal jobs older than ``retention_days``.

        Age is measured from ``completedAt`` when present, else ``createdAt``.
        Returns the number of jobs deleted.
        """
        cutoff = utc_now() - timedelta(days=retention_days)
        deleted = 0
        for job in await self.get_jobs_by_status(TERMINAL_STATUSES):
            try:
                stamp = from_iso8601(job.completed_at or job.created_at)
            except ValueError:
                logger.warning("job_storage.unparseable_timestamp", job_id=job.job_id)
                continue
            if stamp is not None and stamp < cutoff and await self.delete_job(job.job_id):
                deleted += 1
        logger.info(
            "job_storage.cleanup_complete",
            retention_days=retention_days,
            deleted=deleted,
            backend=self.backend_name,
        )
        return deleted

    # ── Rate-limit record ────────────────────────────────────────

    async def get_rate_limit_config(self) -> RateLimitConfig:
        """Stored rate-limit record; writes and returns the defaults when absent."""
        config = await self._load_rate_limit_config()
        if config is None:
            config = RateLimitConfig()
            logger.info("job_storage.rate_limit_defaults_created", backend=self.backend_name)
            await self._save_rate_limit_config(config)
        return config

    async def set_rate_limit_config(self, config: RateLimitConfig) -> None:
        await self._save_rate_limit_config(config)
        logger.info("job_storage.rate_limit_saved", backend=self.backend_name, **config.to_record())
