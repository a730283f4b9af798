"""Job lifecycle: creation, transitions, batched progress, checkpoints.

Manifesto:
    - **One active job:** a running or recovering job blocks creation
      unless it has made no progress for ``stale_job_minutes``; a stale job
      is failed so the new one can start
    - **Cheap progress:** progress updates are merged in memory and
      persisted at most every ``progress_flush_seconds``
    - **Durable checkpoints:** checkpoints are written immediately
    - **Flush before finish:** complete, fail and cancel persist pending
      progress first so the final record is accurate

Architecture:
    ::

        create_job(request)
          ├── validate (dates, job type, district scope)
          ├── can_start_new_job()   ── stale active job → fail it
          └── storage.create_job(pending)

        update_progress ──► _pending[job_id] ──(timer)──► storage.update_job
        update_checkpoint ─────────────────────────────► storage.update_checkpoint

Tags:
    backfill, jobs, lifecycle, progress, checkpoint
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pydantic

from district_spine.core.dates import validate_date_range
from district_spine.core.errors import (
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    ScopeViolationError,
    SpineError,
    ValidationError,
)
from district_spine.core.logging import get_logger
from district_spine.core.timestamps import from_iso8601, parse_iso_date, utc_now
from district_spine.domain.models import (
    BackfillJob,
    BackfillRequest,
    DistrictProgress,
    JobCheckpoint,
    JobError,
    JobProgress,
    JobResult,
    JobStatus,
    JobType,
    ListJobsOptions,
)
from district_spine.storage.jobs.base import BackfillJobStorage

logger = get_logger(__name__)


@dataclass(frozen=True)
class OperatorContext:
    """Who asked for a force-cancel, recorded on the job."""

    reason: str | None = None
    ip: str | None = None


@dataclass
class _PendingProgress:
    fields: dict[str, Any] = field(default_factory=dict)
    district_progress: dict[str, DistrictProgress] = field(default_factory=dict)
    errors: list[JobError] = field(default_factory=list)


class JobManager:
    """Owns every status transition of a backfill job.

    Args:
        storage: Job persistence
        configured_districts: The district scope requests may target; empty
            disables the scope check
        stale_job_minutes: Inactivity after which an active job is failed
        progress_flush_seconds: Upper bound on progress persistence delay
        clock: Current UTC time, injectable for tests
    """

    def __init__(
        self,
        storage: BackfillJobStorage,
        *,
        configured_districts: list[str] | None = None,
        stale_job_minutes: float = 10.0,
        progress_flush_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._storage = storage
        self._configured = list(configured_districts or [])
        self._stale_after = timedelta(minutes=stale_job_minutes)
        self._stale_job_minutes = stale_job_minutes
        self._flush_seconds = progress_flush_seconds
        self._clock = clock
        self._pending: dict[str, _PendingProgress] = {}
        self._flush_task: asyncio.Task[None] | None = None
        self._disposing = False

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    # ── Creation ─────────────────────────────────────────────────

    def validate_request(self, request: BackfillRequest | dict[str, Any]) -> BackfillRequest:
        """Parse and check a request without touching storage.

        Raises:
            ValidationError: Unknown job type, missing or malformed dates
            ScopeViolationError: Target districts outside the configured set
        """
        if not isinstance(request, BackfillRequest):
            try:
                request = BackfillRequest.model_validate(request)
            except pydantic.ValidationError as e:
                first = e.errors()[0]
                raise ValidationError(
                    f"Invalid backfill request: {first['msg']}",
                    field=".".join(str(p) for p in first["loc"]),
                    code="INVALID_REQUEST",
                ) from e

        if request.job_type is JobType.DATA_COLLECTION:
            if not request.start_date or not request.end_date:
                raise ValidationError(
                    "startDate and endDate are required for data-collection jobs",
                    field="start_date",
                    code="MISSING_DATE_RANGE",
                )
            check = validate_date_range(request.start_date, request.end_date)
            if not check.is_valid:
                raise ValidationError(check.error or "Invalid date range", code=check.code.value)
        else:
            for name in ("start_date", "end_date"):
                value = getattr(request, name)
                if value is not None and parse_iso_date(value) is None:
                    raise ValidationError(
                        f"Invalid {name}: {value!r}. Expected YYYY-MM-DD",
                        field=name,
                        value=value,
                        code="INVALID_DATE_FORMAT",
                    )
            if request.start_date and request.end_date and request.start_date > request.end_date:
                raise ValidationError(
                    "Start date must be before or equal to end date", code="START_AFTER_END"
                )

        if request.target_districts and self._configured:
            unknown = sorted(set(request.target_districts) - set(self._configured))
            if unknown:
                raise ScopeViolationError(
                    f"Districts not in the configured scope: {', '.join(unknown)}",
                    districts=unknown,
                    field="target_districts",
                )
        return request

    async def create_job(self, request: BackfillRequest | dict[str, Any]) -> BackfillJob:
        """Validate ``request`` and persist a pending job.

        Raises:
            ValidationError: Invalid request
            ScopeViolationError: Targets outside the configured districts
            JobConflictError: Another job is running or recovering
        """
        request = self.validate_request(request)

        if not await self.can_start_new_job():
            active = await self.get_active_job()
            active_id = active.job_id if active else "unknown"
            raise JobConflictError(
                active_id,
                f"Cannot create new job: job '{active_id}' is already running. "
                "Only one job can run at a time.",
            )

        job = BackfillJob(
            job_id=str(uuid.uuid4()),
            job_type=request.job_type,
            status=JobStatus.PENDING,
            config=request.to_job_config(),
            created_at=self._now_iso(),
        )
        await self._storage.create_job(job)
        logger.info(
            "job_manager.job_created",
            job_id=job.job_id,
            job_type=job.job_type.value,
            start_date=request.start_date,
            end_date=request.end_date,
            target_districts=len(request.target_districts) if request.target_districts else "all",
        )
        return job

    # ── Transitions ──────────────────────────────────────────────

    async def start_job(self, job_id: str) -> BackfillJob:
        """Move a pending or recovering job to running.

        Raises:
            JobNotFoundError: No job with ``job_id``
            InvalidJobStateError: The job is in any other status
        """
        current = await self._storage.get_job(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        if current.status not in (JobStatus.PENDING, JobStatus.RECOVERING):
            raise InvalidJobStateError(
                f"Cannot start job {job_id}: status is {current.status.value}"
            ).with_context(job_id=job_id)
        job = await self._storage.update_job(
            job_id, {"status": JobStatus.RUNNING, "started_at": self._now_iso()}
        )
        logger.info("job_manager.job_started", job_id=job_id)
        return job

    async def complete_job(self, job_id: str, result: JobResult) -> None:
        await self._flush_job(job_id)
        await self._storage.update_job(
            job_id,
            {"status": JobStatus.COMPLETED, "completed_at": self._now_iso(), "result": result},
        )
        logger.info(
            "job_manager.job_completed",
            job_id=job_id,
            items_processed=result.items_processed,
            items_failed=result.items_failed,
            items_skipped=result.items_skipped,
            snapshots=len(result.snapshot_ids),
            duration_ms=result.duration,
        )

    async def fail_job(self, job_id: str, error: str) -> None:
        await self._flush_job(job_id)
        await self._storage.update_job(
            job_id,
            {"status": JobStatus.FAILED, "completed_at": self._now_iso(), "error": error},
        )
        logger.error("job_manager.job_failed", job_id=job_id, error=error)

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or running job. Returns False otherwise."""
        job = await self._storage.get_job(job_id)
        if job is None:
            logger.warning("job_manager.cancel_unknown_job", job_id=job_id)
            return False
        if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
            logger.warning(
                "job_manager.cancel_rejected", job_id=job_id, status=job.status.value
            )
            return False

        await self._flush_job(job_id)
        await self._storage.update_job(
            job_id, {"status": JobStatus.CANCELLED, "completed_at": self._now_iso()}
        )
        logger.info("job_manager.job_cancelled", job_id=job_id, previous_status=job.status.value)
        return True

    async def force_cancel_job(self, job_id: str, operator: OperatorContext | None = None) -> bool:
        """Cancel any non-terminal job and clear its checkpoint.

        Returns False when the job does not exist or is already terminal.
        """
        operator = operator or OperatorContext()
        job = await self._storage.get_job(job_id)
        if job is None:
            logger.warning("job_manager.force_cancel_unknown_job", job_id=job_id)
            return False
        if job.status.is_terminal:
            logger.warning(
                "job_manager.force_cancel_rejected", job_id=job_id, status=job.status.value
            )
            return False

        now = self._now_iso()
        message = f"Force-cancelled by operator at {now}."
        if operator.reason:
            message += f" Reason: {operator.reason}"
        if operator.ip:
            message += f" (IP: {operator.ip})"

        await self._flush_job(job_id)
        await self._storage.update_job(
            job_id,
            {
                "status": JobStatus.CANCELLED,
                "completed_at": now,
                "error": message,
                "checkpoint": None,
            },
        )
        logger.warning(
            "job_manager.job_force_cancelled",
            job_id=job_id,
            previous_status=job.status.value,
            operator_ip=operator.ip or "unknown",
            reason=operator.reason or "not specified",
        )
        return True

    async def finish_cancelled(self, job_id: str, result: JobResult) -> None:
        """Close out a run that stopped on its cancellation token.

        The job ends cancelled (never completed) and keeps the partial result.
        """
        await self._flush_job(job_id)
        job = await self._storage.get_job(job_id)
        if job is None:
            return
        updates: dict[str, Any] = {"result": result}
        if not job.status.is_terminal:
            updates.update(status=JobStatus.CANCELLED, completed_at=self._now_iso())
        await self._storage.update_job(job_id, updates)
        logger.info(
            "job_manager.cancelled_run_finished",
            job_id=job_id,
            items_processed=result.items_processed,
        )

    # ── Progress ─────────────────────────────────────────────────

    async def update_progress(self, job_id: str, **fields: Any) -> None:
        """Queue counter updates (``JobProgress`` field names); persisted in batches."""
        unknown = set(fields) - set(JobProgress.model_fields)
        if unknown:
            raise ValueError(f"Unknown progress fields: {sorted(unknown)}")
        self._pending_for(job_id).fields.update(fields)
        self._schedule_flush()

    async def add_error(self, job_id: str, error: JobError) -> None:
        self._pending_for(job_id).errors.append(error)
        self._schedule_flush()
        logger.debug(
            "job_manager.error_recorded",
            job_id=job_id,
            item_id=error.item_id,
            is_retryable=error.is_retryable,
        )

    async def update_district_progress(
        self, job_id: str, district_id: str, progress: DistrictProgress
    ) -> None:
        self._pending_for(job_id).district_progress[district_id] = progress
        self._schedule_flush()

    async def update_checkpoint(self, job_id: str, checkpoint: JobCheckpoint) -> None:
        await self._storage.update_checkpoint(job_id, checkpoint)
        logger.debug(
            "job_manager.checkpoint_updated",
            job_id=job_id,
            last_processed_item=checkpoint.last_processed_item,
            items_completed=len(checkpoint.items_completed),
        )

    def _pending_for(self, job_id: str) -> _PendingProgress:
        return self._pending.setdefault(job_id, _PendingProgress())

    def _schedule_flush(self) -> None:
        if self._disposing or (self._flush_task is not None and not self._flush_task.done()):
            return
        self._flush_task = asyncio.create_task(self._flush_after_delay())

    async def _flush_after_delay(self) -> None:
        await asyncio.sleep(self._flush_seconds)
        await asyncio.shield(self.flush())

    async def flush(self) -> None:
        """Persist every queued progress update now."""
        for job_id in list(self._pending):
            await self._flush_job(job_id)

    async def _flush_job(self, job_id: str) -> None:
        pending = self._pending.pop(job_id, None)
        if pending is None:
            return
        try:
            job = await self._storage.get_job(job_id)
            if job is None:
                logger.warning("job_manager.progress_for_unknown_job", job_id=job_id)
                return
            data = job.progress.model_dump()
            data.update(pending.fields)
            data["district_progress"] = {
                **job.progress.district_progress,
                **pending.district_progress,
            }
            data["errors"] = [*job.progress.errors, *pending.errors]
            progress = JobProgress.model_validate(data)
            await self._storage.update_job(job_id, {"progress": progress})
        except (SpineError, pydantic.ValidationError) as e:
            logger.error("job_manager.progress_flush_failed", job_id=job_id, error=str(e))

    # ── Queries ──────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> BackfillJob | None:
        return await self._storage.get_job(job_id)

    async def get_active_job(self) -> BackfillJob | None:
        return await self._storage.get_active_job()

    async def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]:
        return await self._storage.list_jobs(options)

    async def cleanup_old_jobs(self, retention_days: int = 30) -> int:
        return await self._storage.cleanup_old_jobs(retention_days)

    async def can_start_new_job(self) -> bool:
        """True when no job is active, failing a stale active job first."""
        active = await self.get_active_job()
        if active is None:
            return True
        if not self.is_job_stale(active):
            return False

        logger.warning(
            "job_manager.stale_job_detected",
            job_id=active.job_id,
            status=active.status.value,
            last_progress_at=self.last_progress_at(active).isoformat(),
        )
        await self.fail_job(
            active.job_id,
            "Job marked as failed due to inactivity "
            f"(no progress for {self._stale_job_minutes:g} minutes)",
        )
        return True

    def last_progress_at(self, job: BackfillJob) -> datetime:
        """checkpoint.lastProcessedAt, else startedAt, else createdAt."""
        stamp = (
            (job.checkpoint.last_processed_at if job.checkpoint else None)
            or job.started_at
            or job.created_at
        )
        parsed = from_iso8601(stamp)
        return parsed if parsed is not None else self._clock()

    def is_job_stale(self, job: BackfillJob) -> bool:
        return self._clock() - self.last_progress_at(job) > self._stale_after

    # ── Shutdown ─────────────────────────────────────────────────

    async def dispose(self) -> None:
        """Stop the flush timer and persist everything still queued."""
        self._disposing = True
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        await self.flush()
        logger.info("job_manager.disposed")
