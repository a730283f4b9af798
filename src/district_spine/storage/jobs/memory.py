"""In-memory job storage for tests and ephemeral runs.

Records are kept as JSON-ready dicts so reads return fresh model
instances, the same as a persistent backend would.
"""

from __future__ import annotations

from typing import Any

from district_spine.domain.models import BackfillJob, RateLimitConfig
from district_spine.storage.jobs.base import BackfillJobStorage


class InMemoryBackfillJobStorage(BackfillJobStorage):
    backend_name = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._jobs: dict[str, dict[str, Any]] = {}
        self._rate_limit: dict[str, Any] | None = None

    async def _load_job(self, job_id: str) -> BackfillJob | None:
        raw = self._jobs.get(job_id)
        return BackfillJob.model_validate(raw) if raw is not None else None

    async def _load_all_jobs(self) -> list[BackfillJob]:
        return [BackfillJob.model_validate(raw) for raw in self._jobs.values()]

    async def _save_job(self, job: BackfillJob) -> None:
        self._jobs[job.job_id] = job.to_record()

    async def _remove_job(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def _load_rate_limit_config(self) -> RateLimitConfig | None:
        if self._rate_limit is None:
            return None
        return RateLimitConfig.model_validate(self._rate_limit)

    async def _save_rate_limit_config(self, config: RateLimitConfig) -> None:
        self._rate_limit = config.to_record()

    async def is_ready(self) -> bool:
        return True

    def clear(self) -> None:
        self._jobs.clear()
        self._rate_limit = None
