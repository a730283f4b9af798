"""Unified backfill service: the single entry point for operators.

Manifesto:
    - **One active job:** creation, start and dispatch happen under one
      lock, so two concurrent requests cannot both pass the active-job check
    - **Per-item failures never fail a job:** a job fails only when the
      run itself raises
    - **Cancelled runs stay cancelled:** a run that stopped on its token
      is recorded as cancelled with its partial result, never completed
    - **Real checkpoints:** each finished item is added to the job's
      checkpoint as it completes, so a restart resumes where it stopped

Architecture:
    ::

        create_job(request)
          └── lock → JobManager.create_job → start_job → create_task(_execute)

        _execute(job, checkpoint)            LogContext(job_id, job_type)
          ├── per-job rate-limit overrides applied to the live guards
          ├── data-collection       → DataCollector.collect_for_date_range
          ├── analytics-generation  → AnalyticsGenerator.generate_for_snapshots
          ├── progress  → JobManager.update_progress (batched)
          ├── checkpoint → JobManager.update_checkpoint (immediate)
          └── complete_job | finish_cancelled | fail_job

        initialize() ── RecoveryManager.recover_incomplete_jobs
                          └── _resume_job(job, checkpoint) → _execute

Tags:
    backfill, service, orchestration, jobs
"""

from __future__ import annotations

import asyncio
from typing import Any

import pydantic

from district_spine.core.cancellation import CancellationRegistry, CancellationToken
from district_spine.core.errors import SpineError, StorageError, ValidationError
from district_spine.core.logging import LogContext, get_logger
from district_spine.core.timestamps import utc_now_iso
from district_spine.domain.models import (
    BackfillJob,
    BackfillRequest,
    JobCheckpoint,
    JobError,
    JobResult,
    JobStatus,
    JobType,
    ListJobsOptions,
    RateLimitConfig,
    RateLimitOverrides,
)
from district_spine.execution.concurrency import ConcurrencyLimiter
from district_spine.execution.rate_limit import RateLimiter, RateLimiterConfig
from district_spine.backfill.analytics_generator import (
    AnalyticsGenerator,
    GenerationOptions,
    GenerationPreview,
)
from district_spine.backfill.data_collector import (
    CollectionOptions,
    CollectionPreview,
    DataCollector,
)
from district_spine.backfill.job_manager import JobManager, OperatorContext
from district_spine.backfill.progress import ItemError, ProgressUpdate
from district_spine.backfill.recovery_manager import (
    RecoveryManager,
    RecoveryResult,
    RecoveryStatus,
)
from district_spine.storage.jobs.base import BackfillJobStorage
from district_spine.storage.snapshots.base import SnapshotStore

logger = get_logger(__name__)


class UnifiedBackfillService:
    """Creates, runs, cancels and recovers backfill jobs.

    Collaborators are built by :func:`district_spine.backfill.factory.build_service`.
    """

    def __init__(
        self,
        *,
        job_storage: BackfillJobStorage,
        job_manager: JobManager,
        snapshot_store: SnapshotStore,
        data_collector: DataCollector,
        analytics_generator: AnalyticsGenerator,
        recovery_manager: RecoveryManager,
        rate_limiter: RateLimiter,
        concurrency_limiter: ConcurrencyLimiter,
        cancellations: CancellationRegistry | None = None,
        auto_recover_on_init: bool = True,
        job_retention_days: int = 30,
    ):
        self._storage = job_storage
        self._jobs = job_manager
        self._snapshots = snapshot_store
        self._collector = data_collector
        self._generator = analytics_generator
        self._recovery = recovery_manager
        self._rate_limiter = rate_limiter
        self._limiter = concurrency_limiter
        self._cancellations = cancellations or CancellationRegistry()
        self._auto_recover = auto_recover_on_init
        self._retention_days = job_retention_days

        self._create_lock = asyncio.Lock()
        self._running: dict[str, asyncio.Task[None]] = {}
        self._initialized = False
        self._recovery.set_resume_callback(self._resume_job)

    # ── Lifecycle ────────────────────────────────────────────────

    async def initialize(self) -> RecoveryResult | None:
        """Check storage, load the rate-limit record and (optionally) recover jobs.

        Raises:
            StorageError: Job or snapshot storage is not reachable
        """
        if self._initialized:
            return None
        if not await self._storage.is_ready():
            raise StorageError("Job storage is not ready").with_context(
                backend=self._storage.backend_name
            )
        if not await self._snapshots.is_ready():
            raise StorageError("Snapshot storage is not ready").with_context(
                backend=self._snapshots.backend_name
            )
        self._apply_rate_limit(await self.get_rate_limit_config())
        self._initialized = True
        logger.info(
            "backfill_service.initialized",
            job_backend=self._storage.backend_name,
            snapshot_backend=self._snapshots.backend_name,
            auto_recover=self._auto_recover,
        )
        if self._auto_recover:
            return await self._recovery.recover_incomplete_jobs()
        return None

    async def dispose(self) -> None:
        """Signal every running job, wait for the runs to wind down and flush progress."""
        self._cancellations.cancel_all("Service shutting down")
        tasks = list(self._running.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._jobs.dispose()
        logger.info("backfill_service.disposed", jobs_signalled=len(tasks))

    # ── Jobs ─────────────────────────────────────────────────────

    async def create_job(self, request: BackfillRequest | dict[str, Any]) -> BackfillJob:
        """Create a job and start running it in the background.

        Raises:
            ValidationError: Invalid request
            ScopeViolationError: Target districts outside the configured set
            JobConflictError: Another job is active
        """
        async with self._create_lock:
            job = await self._jobs.create_job(request)
            job = await self._jobs.start_job(job.job_id)
            self._dispatch(job, None)
        return job

    def _dispatch(self, job: BackfillJob, checkpoint: JobCheckpoint | None) -> asyncio.Task[None]:
        token = self._cancellations.create(job.job_id)
        task = asyncio.create_task(self._execute(job, checkpoint, token))
        self._running[job.job_id] = task
        task.add_done_callback(lambda _t, job_id=job.job_id: self._running.pop(job_id, None))
        return task

    async def _resume_job(self, job: BackfillJob, checkpoint: JobCheckpoint | None) -> None:
        job = await self._storage.update_job(job.job_id, {"status": JobStatus.RUNNING})
        await self._dispatch(job, checkpoint)

    async def wait_for_job(self, job_id: str) -> None:
        """Wait until the in-process run of ``job_id`` (if any) has finished."""
        task = self._running.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _execute(
        self, job: BackfillJob, checkpoint: JobCheckpoint | None, token: CancellationToken
    ) -> None:
        job_id = job.job_id
        async with LogContext(job_id=job_id, job_type=job.job_type.value):
            base_limits: RateLimitConfig | None = None
            try:
                if job.config.rate_limit_overrides is not None:
                    base_limits = await self.get_rate_limit_config()
                    self._apply_rate_limit(job.config.rate_limit_overrides.apply_to(base_limits))

                if job.job_type is JobType.DATA_COLLECTION:
                    result, errors, cancelled = await self._run_collection(job, checkpoint, token)
                else:
                    result, errors, cancelled = await self._run_analytics(job, checkpoint, token)

                now = utc_now_iso()
                for error in errors:
                    await self._jobs.add_error(
                        job_id,
                        JobError(
                            item_id=error.item_id,
                            message=error.message,
                            occurred_at=now,
                            is_retryable=error.is_retryable,
                        ),
                    )
                if cancelled or token.cancelled:
                    await self._jobs.finish_cancelled(job_id, result)
                else:
                    await self._jobs.complete_job(job_id, result)
            except Exception as e:
                logger.error(
                    "backfill_service.job_execution_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if token.cancelled:
                    await self._jobs.finish_cancelled(job_id, JobResult())
                else:
                    await self._jobs.fail_job(job_id, str(e))
            finally:
                if base_limits is not None:
                    self._apply_rate_limit(base_limits)
                self._cancellations.remove(job_id)

    def _progress_sink(self, job_id: str):
        async def _on_progress(update: ProgressUpdate) -> None:
            await self._jobs.update_progress(
                job_id,
                total_items=update.total_items,
                processed_items=update.processed_items,
                failed_items=update.failed_items,
                skipped_items=update.skipped_items,
                current_item=update.current_item,
            )

        return _on_progress

    def _checkpoint_sink(self, job_id: str, checkpoint: JobCheckpoint | None):
        state = {"checkpoint": checkpoint}

        async def _on_item_done(item: str) -> None:
            now = utc_now_iso()
            current = state["checkpoint"]
            if current is None:
                current = JobCheckpoint(
                    last_processed_item=item, last_processed_at=now, items_completed=[item]
                )
            else:
                current = current.with_item(item, now)
            state["checkpoint"] = current
            await self._jobs.update_checkpoint(job_id, current)

        return _on_item_done

    async def _run_collection(
        self, job: BackfillJob, checkpoint: JobCheckpoint | None, token: CancellationToken
    ) -> tuple[JobResult, list[ItemError], bool]:
        config = job.config
        outcome = await self._collector.collect_for_date_range(
            config.start_date,
            config.end_date,
            CollectionOptions(
                target_districts=config.target_districts,
                skip_existing=config.skip_existing,
                completed_items=list(checkpoint.items_completed) if checkpoint else [],
            ),
            progress_callback=self._progress_sink(job.job_id),
            cancel_token=token,
            checkpoint_callback=self._checkpoint_sink(job.job_id, checkpoint),
        )
        result = JobResult(
            items_processed=outcome.processed_items,
            items_failed=outcome.failed_items,
            items_skipped=outcome.skipped_items,
            snapshot_ids=outcome.snapshot_ids,
            duration=outcome.duration,
        )
        return result, outcome.errors, outcome.cancelled

    async def _run_analytics(
        self, job: BackfillJob, checkpoint: JobCheckpoint | None, token: CancellationToken
    ) -> tuple[JobResult, list[ItemError], bool]:
        preview = await self._generator.preview_generation(
            job.config.start_date, job.config.end_date
        )
        outcome = await self._generator.generate_for_snapshots(
            preview.snapshot_ids,
            GenerationOptions(
                completed_items=list(checkpoint.items_completed) if checkpoint else []
            ),
            progress_callback=self._progress_sink(job.job_id),
            cancel_token=token,
            checkpoint_callback=self._checkpoint_sink(job.job_id, checkpoint),
        )
        result = JobResult(
            items_processed=outcome.processed_items,
            items_failed=outcome.failed_items,
            items_skipped=outcome.skipped_items,
            snapshot_ids=outcome.snapshot_ids,
            duration=outcome.duration,
        )
        return result, outcome.errors, outcome.cancelled

    async def get_job(self, job_id: str) -> BackfillJob | None:
        return await self._jobs.get_job(job_id)

    async def get_job_status(self, job_id: str) -> dict[str, Any] | None:
        """The job record plus ``percentComplete``, or None if unknown."""
        job = await self._jobs.get_job(job_id)
        if job is None:
            return None
        record = job.to_record()
        record["progress"]["percentComplete"] = job.progress.percent_complete
        record["isRunning"] = job_id in self._running
        return record

    async def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]:
        return await self._jobs.list_jobs(options)

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or running job; in-flight items finish first."""
        cancelled = await self._jobs.cancel_job(job_id)
        if cancelled:
            self._cancellations.cancel(job_id, "Cancelled by user")
        return cancelled

    async def force_cancel_job(self, job_id: str, operator: OperatorContext | None = None) -> bool:
        """Cancel any non-terminal job, including a stuck or recovering one."""
        cancelled = await self._jobs.force_cancel_job(job_id, operator)
        if cancelled:
            self._cancellations.cancel(job_id, "Force-cancelled by operator")
        return cancelled

    async def preview_job(
        self, request: BackfillRequest | dict[str, Any]
    ) -> CollectionPreview | GenerationPreview:
        """What a job would do, without creating it.

        Raises:
            ValidationError: Invalid request
            ScopeViolationError: Target districts outside the configured set
        """
        request = self._jobs.validate_request(request)
        if request.job_type is JobType.DATA_COLLECTION:
            return await self._collector.preview_collection(
                request.start_date,
                request.end_date,
                CollectionOptions(
                    target_districts=request.target_districts,
                    skip_existing=request.skip_existing,
                ),
            )
        return await self._generator.preview_generation(request.start_date, request.end_date)

    async def cleanup_old_jobs(self, retention_days: int | None = None) -> int:
        return await self._jobs.cleanup_old_jobs(retention_days or self._retention_days)

    # ── Rate limits ──────────────────────────────────────────────

    async def get_rate_limit_config(self) -> RateLimitConfig:
        """The stored record, or the defaults when storage cannot be read."""
        try:
            return await self._storage.get_rate_limit_config()
        except SpineError as e:
            logger.warning("backfill_service.rate_limit_config_unavailable", error=e.message)
            return RateLimitConfig()

    async def update_rate_limit_config(
        self, updates: RateLimitOverrides | dict[str, Any]
    ) -> RateLimitConfig:
        """Merge ``updates`` into the stored record, persist it and reconfigure the live guards.

        Raises:
            ValidationError: The merged record is invalid
        """
        try:
            overrides = (
                updates
                if isinstance(updates, RateLimitOverrides)
                else RateLimitOverrides.model_validate(updates)
            )
            config = overrides.apply_to(await self.get_rate_limit_config())
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid rate limit configuration: {e.errors()[0]['msg']}",
                code="INVALID_RATE_LIMIT_CONFIG",
                cause=e,
            ) from e
        await self._storage.set_rate_limit_config(config)
        self._apply_rate_limit(config)
        logger.info("backfill_service.rate_limit_updated", **config.to_record())
        return config

    def _apply_rate_limit(self, config: RateLimitConfig) -> None:
        self._rate_limiter.update_config(RateLimiterConfig.from_record(config))
        self._limiter.update_limit(config.max_concurrent)

    # ── Recovery ─────────────────────────────────────────────────

    async def recover_incomplete_jobs(self) -> RecoveryResult:
        return await self._recovery.recover_incomplete_jobs()

    def get_recovery_status(self) -> RecoveryStatus:
        return self._recovery.get_recovery_status()
