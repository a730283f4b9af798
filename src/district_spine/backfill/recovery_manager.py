"""Resume jobs that were interrupted by a process restart.

Architecture:
    ::

        recover_incomplete_jobs()            (once per manager)
          └── for each pending | running | recovering job
                ├── status → recovering, resumedAt → now
                ├── checkpoint validated (invalid → cleared)
                └── resume_callback(job, checkpoint)  ── asyncio.create_task
                      (no callback → job failed)
                      (callback raises → job failed, "Recovery failed: ...")

Guardrails:
    ❌ DON'T: Await the resume callback here (one slow job would block the rest)
    ✅ DO: Keep a reference to every scheduled task until it finishes

Tags:
    backfill, recovery, checkpoint, resume
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

import pydantic

from district_spine.core.errors import SpineError
from district_spine.core.logging import get_logger
from district_spine.core.timestamps import from_iso8601, utc_now_iso
from district_spine.domain.models import BackfillJob, JobCheckpoint, JobStatus
from district_spine.backfill.job_manager import JobManager
from district_spine.storage.jobs.base import ACTIVE_STATUSES, BackfillJobStorage

logger = get_logger(__name__)

ResumeCallback = Callable[[BackfillJob, JobCheckpoint | None], Awaitable[None]]

RECOVERABLE_STATUSES = [*ACTIVE_STATUSES, JobStatus.PENDING]


@dataclass
class RecoveryResult:
    success: bool
    jobs_recovered: int = 0
    jobs_failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class RecoveryStatus:
    status: Literal["idle", "recovering", "completed", "failed"] = "idle"
    last_recovery_at: str | None = None
    jobs_recovered: int = 0
    jobs_failed: int = 0


def validate_checkpoint(checkpoint: JobCheckpoint | None) -> JobCheckpoint | None:
    """Return ``checkpoint`` if usable for resuming, else None."""
    if checkpoint is None:
        return None
    try:
        checked = JobCheckpoint.model_validate(checkpoint.model_dump())
        from_iso8601(checked.last_processed_at)
    except (pydantic.ValidationError, ValueError):
        return None
    if not checked.last_processed_item:
        return None
    return checked


class RecoveryManager:
    def __init__(self, storage: BackfillJobStorage, job_manager: JobManager):
        self._storage = storage
        self._jobs = job_manager
        self._resume_callback: ResumeCallback | None = None
        self._status = RecoveryStatus()
        self._ran = False
        self._tasks: set[asyncio.Task[None]] = set()

    def set_resume_callback(self, callback: ResumeCallback) -> None:
        self._resume_callback = callback

    async def recover_incomplete_jobs(self) -> RecoveryResult:
        """Mark interrupted jobs as recovering and hand them to the resume callback."""
        if self._ran:
            logger.debug("recovery.already_ran")
            return RecoveryResult(
                success=self._status.status != "failed",
                jobs_recovered=self._status.jobs_recovered,
                jobs_failed=self._status.jobs_failed,
            )
        self._ran = True
        self._status = RecoveryStatus(status="recovering", last_recovery_at=utc_now_iso())
        result = RecoveryResult(success=True)

        try:
            jobs = await self._storage.get_jobs_by_status(RECOVERABLE_STATUSES)
        except SpineError as e:
            logger.error("recovery.scan_failed", error=e.message)
            self._status.status = "failed"
            return RecoveryResult(success=False, errors=[f"Failed to list jobs: {e.message}"])

        logger.info("recovery.started", incomplete_jobs=len(jobs))
        for job in jobs:
            try:
                if await self._recover_job(job):
                    result.jobs_recovered += 1
                else:
                    result.jobs_failed += 1
            except Exception as e:
                result.jobs_failed += 1
                result.errors.append(f"Job {job.job_id}: {e}")
                logger.error("recovery.job_failed", job_id=job.job_id, error=str(e))

        result.success = result.jobs_failed == 0
        self._status.status = "completed" if result.success else "failed"
        self._status.jobs_recovered = result.jobs_recovered
        self._status.jobs_failed = result.jobs_failed
        logger.info(
            "recovery.finished",
            recovered=result.jobs_recovered,
            failed=result.jobs_failed,
        )
        return result

    async def _recover_job(self, job: BackfillJob) -> bool:
        job = await self._storage.update_job(
            job.job_id, {"status": JobStatus.RECOVERING, "resumed_at": utc_now_iso()}
        )
        checkpoint = validate_checkpoint(job.checkpoint)
        if job.checkpoint is not None and checkpoint is None:
            logger.warning("recovery.invalid_checkpoint", job_id=job.job_id)
            await self._storage.update_checkpoint(job.job_id, None)
            job = job.model_copy(update={"checkpoint": None})

        if self._resume_callback is None:
            await self._jobs.fail_job(job.job_id, "Recovery failed: No resume callback configured")
            logger.warning("recovery.no_resume_callback", job_id=job.job_id)
            return False

        task = asyncio.create_task(self._resume(self._resume_callback, job, checkpoint))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "recovery.job_resumed",
            job_id=job.job_id,
            job_type=job.job_type.value,
            items_completed=len(checkpoint.items_completed) if checkpoint else 0,
        )
        return True

    async def _resume(
        self, callback: ResumeCallback, job: BackfillJob, checkpoint: JobCheckpoint | None
    ) -> None:
        try:
            await callback(job, checkpoint)
        except Exception as e:
            logger.error("recovery.resume_failed", job_id=job.job_id, error=str(e))
            try:
                await self._jobs.fail_job(job.job_id, f"Recovery failed: {e}")
            except SpineError as fail_error:
                logger.error(
                    "recovery.fail_job_failed", job_id=job.job_id, error=fail_error.message
                )

    def get_recovery_status(self) -> RecoveryStatus:
        return RecoveryStatus(
            status=self._status.status,
            last_recovery_at=self._status.last_recovery_at,
            jobs_recovered=self._status.jobs_recovered,
            jobs_failed=self._status.jobs_failed,
        )
