"""Recompute all-districts rankings for snapshots that already exist.

Each snapshot is processed on its own: a missing snapshot, or one without
districts, is skipped; a failure is recorded and the run moves on. Snapshots
are processed one at a time in the order given.

Tags:
    backfill, analytics, rankings
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from district_spine.core.cancellation import CancellationToken
from district_spine.core.errors import is_retryable
from district_spine.core.logging import get_logger
from district_spine.domain.models import SnapshotFilters
from district_spine.domain.protocols import RankingService
from district_spine.backfill.progress import (
    CheckpointCallback,
    ItemError,
    ProgressCallback,
    ProgressUpdate,
    notify,
)
from district_spine.storage.snapshots.base import SnapshotStore

logger = get_logger(__name__)


@dataclass
class GenerationOptions:
    completed_items: list[str] = field(default_factory=list)


@dataclass
class GenerationResult:
    success: bool
    processed_items: int
    failed_items: int
    skipped_items: int
    snapshot_ids: list[str]
    errors: list[ItemError]
    duration: int
    cancelled: bool = False


@dataclass
class GenerationPreview:
    total_items: int
    date_range: dict[str, str]
    snapshot_ids: list[str]
    estimated_duration: float


class AnalyticsGenerator:
    def __init__(
        self,
        snapshot_store: SnapshotStore,
        ranking_service: RankingService,
        *,
        seconds_per_snapshot_estimate: float = 5.0,
    ):
        self._store = snapshot_store
        self._ranking = ranking_service
        self._seconds_per_snapshot = seconds_per_snapshot_estimate
        self._token: CancellationToken | None = None

    async def generate_for_snapshots(
        self,
        snapshot_ids: list[str],
        options: GenerationOptions | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        checkpoint_callback: CheckpointCallback | None = None,
    ) -> GenerationResult:
        started = time.monotonic()
        options = options or GenerationOptions()
        token = cancel_token or CancellationToken()
        self._token = token

        completed = set(options.completed_items)
        pending = [s for s in snapshot_ids if s not in completed]
        total = len(snapshot_ids)
        processed = failed = 0
        skipped = total - len(pending)
        written: list[str] = []
        errors: list[ItemError] = []

        def _progress(current: str | None) -> ProgressUpdate:
            return ProgressUpdate(total, processed, failed, skipped, current)

        logger.info("analytics.started", total=total, pending=len(pending))
        await notify(progress_callback, _progress(None))

        for snapshot_id in pending:
            if token.cancelled:
                logger.info("analytics.cancelled", next_snapshot=snapshot_id, reason=token.reason)
                break
            await notify(progress_callback, _progress(snapshot_id))
            done_for_good = True
            try:
                generated = await self._generate_one(snapshot_id)
            except Exception as e:
                retryable = is_retryable(e)
                done_for_good = not retryable
                failed += 1
                errors.append(ItemError(item_id=snapshot_id, message=str(e), is_retryable=retryable))
                logger.warning(
                    "analytics.snapshot_failed",
                    snapshot_id=snapshot_id,
                    error=str(e),
                    retryable=retryable,
                )
            else:
                if generated:
                    processed += 1
                    written.append(snapshot_id)
                else:
                    skipped += 1
            await notify(progress_callback, _progress(snapshot_id))
            if done_for_good:
                await notify(checkpoint_callback, snapshot_id)

        duration = int((time.monotonic() - started) * 1000)
        logger.info(
            "analytics.finished",
            processed=processed,
            failed=failed,
            skipped=skipped,
            duration_ms=duration,
        )
        return GenerationResult(
            success=failed == 0 and not token.cancelled,
            processed_items=processed,
            failed_items=failed,
            skipped_items=skipped,
            snapshot_ids=written,
            errors=errors,
            duration=duration,
            cancelled=token.cancelled,
        )

    async def _generate_one(self, snapshot_id: str) -> bool:
        snapshot = await self._store.get_snapshot(snapshot_id)
        if snapshot is None:
            logger.info("analytics.snapshot_missing", snapshot_id=snapshot_id)
            return False
        if not snapshot.payload.districts:
            logger.info("analytics.snapshot_empty", snapshot_id=snapshot_id)
            return False
        ranked = await self._ranking.calculate_rankings(snapshot.payload.districts)
        data = self._ranking.build_rankings_data(ranked, snapshot_id)
        await self._store.write_all_districts_rankings(snapshot_id, data)
        return True

    async def preview_generation(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> GenerationPreview:
        """Successful snapshots within the optional range, oldest first."""
        items = await self._store.list_snapshots(filters=SnapshotFilters(status="success"))
        ids = sorted(
            i.snapshot_id
            for i in items
            if (start_date is None or i.snapshot_id >= start_date)
            and (end_date is None or i.snapshot_id <= end_date)
        )
        return GenerationPreview(
            total_items=len(ids),
            date_range={
                "startDate": ids[0] if ids else (start_date or ""),
                "endDate": ids[-1] if ids else (end_date or ""),
            },
            snapshot_ids=ids,
            estimated_duration=len(ids) * self._seconds_per_snapshot,
        )

    def cancel(self, reason: str = "Generation cancelled") -> None:
        if self._token is not None and self._token.cancel(reason):
            logger.info("analytics.cancel_requested", reason=reason)
