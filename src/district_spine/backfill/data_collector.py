"""Historical data collection over a date range.

Manifesto:
    - **Newest first:** dates are collected most-recent-first
    - **Guarded I/O:** every fetch waits on the rate limiter, runs behind
      the circuit breaker and is retried with backoff when the error type
      says it is transient
    - **Per-date isolation:** one date failing never stops the run
    - **Resume-safe checkpoints:** a date is checkpointed only once it is
      done for good (written, skipped, or failed permanently)
    - **Cooperative cancellation:** the token is checked before each date;
      dates already in flight finish

Architecture:
    ::

        collect_for_date_range(start, end, options, progress, cancel_token)
          ├── validate_date_range / generate_date_range (newest first)
          ├── drop checkpointed dates, drop dates with a successful snapshot
          └── per chunk of max_concurrent dates ── ConcurrencyLimiter
                └── _collect_date(date)
                      ├── RateLimiter.acquire ── CircuitBreaker.execute(fetch)
                      │     └── retry_async(ExponentialBackoff)
                      ├── all districts failed → DataUnavailableError
                      ├── ValidationService.validate (optional)
                      ├── ClosingPeriodDetector → snapshot date
                      ├── RankingService.calculate_rankings (optional)
                      ├── SnapshotStore.write_snapshot (success | partial)
                      └── DistrictAvailabilityIndex.update (optional, non-fatal)

Tags:
    backfill, collection, rate-limit, circuit-breaker, checkpoint
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from district_spine.core.cancellation import CancellationToken, CancelledByToken
from district_spine.core.closing_period import ClosingPeriodDetector, ClosingPeriodResult
from district_spine.core.dates import generate_date_range, validate_date_range
from district_spine.core.errors import (
    DataUnavailableError,
    RateLimitError,
    SchemaError,
    SpineError,
    StorageError,
    ValidationError,
    is_retryable,
)
from district_spine.core.logging import get_logger
from district_spine.core.timestamps import utc_now_iso
from district_spine.domain.models import (
    NormalizedData,
    Snapshot,
    SnapshotPayloadMetadata,
)
from district_spine.domain.protocols import (
    CollectionService,
    FetchResult,
    RankingService,
    ValidationService,
)
from district_spine.execution.circuit_breaker import CircuitBreaker
from district_spine.execution.concurrency import ConcurrencyLimiter
from district_spine.execution.rate_limit import RateLimiter
from district_spine.execution.retry import ExponentialBackoff, RetryStrategy, retry_async
from district_spine.backfill.progress import (
    CheckpointCallback,
    ItemError,
    ProgressCallback,
    ProgressUpdate,
    notify,
)
from district_spine.storage.availability import DistrictAvailabilityIndex
from district_spine.storage.snapshots.base import SnapshotStore

logger = get_logger(__name__)


@dataclass
class CollectionOptions:
    target_districts: list[str] | None = None
    skip_existing: bool = True
    completed_items: list[str] = field(default_factory=list)


@dataclass
class CollectionResult:
    success: bool
    processed_items: int
    failed_items: int
    skipped_items: int
    snapshot_ids: list[str]
    errors: list[ItemError]
    duration: int
    cancelled: bool = False


@dataclass
class CollectionPreview:
    total_items: int
    date_range: dict[str, str]
    affected_districts: list[str]
    estimated_duration: float
    dates: list[str]
    skipped_dates: list[str]


@dataclass
class _RunState:
    total: int
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    snapshot_ids: list[str] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)
    settled: set[str] = field(default_factory=set)

    def progress(self, current_item: str | None) -> ProgressUpdate:
        return ProgressUpdate(
            total_items=self.total,
            processed_items=self.processed,
            failed_items=self.failed,
            skipped_items=self.skipped,
            current_item=current_item,
        )


class DataCollector:
    """Collects one snapshot per date through the guard layer.

    Args:
        collection_service: Fetches per-district records for a date
        snapshot_store: Where snapshots are written
        rate_limiter: Spacing between fetches
        circuit_breaker: Fast-fail when the source is unstable
        concurrency_limiter: How many dates are in flight at once
        configured_districts: Districts collected when a job names none
        ranking_service: Attaches rankings before writing (optional)
        validation_service: Rejects malformed payloads (optional)
        availability_index: Updated after each write (optional)
        retry_strategy: Retries for a single date's fetch
        seconds_per_date_estimate: Used by :meth:`preview_collection`
    """

    def __init__(
        self,
        collection_service: CollectionService,
        snapshot_store: SnapshotStore,
        *,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        concurrency_limiter: ConcurrencyLimiter,
        configured_districts: list[str] | None = None,
        ranking_service: RankingService | None = None,
        validation_service: ValidationService | None = None,
        availability_index: DistrictAvailabilityIndex | None = None,
        closing_period_detector: ClosingPeriodDetector | None = None,
        retry_strategy: RetryStrategy | None = None,
        seconds_per_date_estimate: float = 30.0,
    ):
        self._collection = collection_service
        self._store = snapshot_store
        self._rate_limiter = rate_limiter
        self._breaker = circuit_breaker
        self._limiter = concurrency_limiter
        self._configured = list(configured_districts or [])
        self._ranking = ranking_service
        self._validation = validation_service
        self._availability = availability_index
        self._detector = closing_period_detector or ClosingPeriodDetector()
        self._retry = retry_strategy or ExponentialBackoff(max_retries=2, base_delay=2.0)
        self._seconds_per_date = seconds_per_date_estimate
        self._token: CancellationToken | None = None

    # ── Date helpers ─────────────────────────────────────────────

    def validate_date_range(self, start_date: str, end_date: str):
        return validate_date_range(start_date, end_date)

    def generate_date_range(self, start_date: str, end_date: str) -> list[str]:
        return generate_date_range(start_date, end_date)

    def _require_valid_range(self, start_date: str, end_date: str) -> None:
        check = validate_date_range(start_date, end_date)
        if not check.is_valid:
            raise ValidationError(
                check.error or "Invalid date range",
                field="date_range",
                value=f"{start_date}..{end_date}",
                code=check.code.value if check.code else None,
            )

    async def _split_existing(self, dates: list[str]) -> tuple[list[str], list[str]]:
        to_collect: list[str] = []
        existing: list[str] = []
        for date in dates:
            if await self._store.has_successful_snapshot(date):
                existing.append(date)
            else:
                to_collect.append(date)
        return to_collect, existing

    # ── Collection ───────────────────────────────────────────────

    async def collect_for_date_range(
        self,
        start_date: str,
        end_date: str,
        options: CollectionOptions | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        checkpoint_callback: CheckpointCallback | None = None,
    ) -> CollectionResult:
        """Collect every date in ``[start_date, end_date]`` not already done.

        Raises:
            ValidationError: The date range is invalid
        """
        started = time.monotonic()
        options = options or CollectionOptions()
        self._require_valid_range(start_date, end_date)
        token = cancel_token or CancellationToken()
        self._token = token

        all_dates = generate_date_range(start_date, end_date)
        completed = set(options.completed_items)
        remaining = [d for d in all_dates if d not in completed]
        if options.skip_existing:
            to_collect, existing = await self._split_existing(remaining)
        else:
            to_collect, existing = remaining, []

        state = _RunState(
            total=len(all_dates),
            skipped=len(all_dates) - len(remaining) + len(existing),
        )
        districts = options.target_districts or self._configured
        logger.info(
            "data_collector.started",
            start_date=start_date,
            end_date=end_date,
            total_dates=state.total,
            to_collect=len(to_collect),
            skipped_from_checkpoint=len(all_dates) - len(remaining),
            skipped_existing=len(existing),
        )
        await notify(progress_callback, state.progress(None))

        async def _run(date: str) -> None:
            if token.cancelled:
                return
            await notify(progress_callback, state.progress(date))
            done_for_good = True
            try:
                snapshot_id = await self._collect_date(date, districts, token)
            except CancelledByToken:
                return
            except Exception as e:
                retryable = is_retryable(e)
                done_for_good = not retryable
                state.failed += 1
                state.errors.append(ItemError(item_id=date, message=str(e), is_retryable=retryable))
                logger.warning(
                    "data_collector.date_failed",
                    date=date,
                    error=str(e),
                    error_type=type(e).__name__,
                    retryable=retryable,
                )
            else:
                if snapshot_id is None:
                    state.skipped += 1
                else:
                    state.processed += 1
                    state.snapshot_ids.append(snapshot_id)
            state.settled.add(date)
            await notify(progress_callback, state.progress(date))
            if done_for_good:
                await notify(checkpoint_callback, date)

        chunk = max(1, self._limiter.max_concurrent)
        for i in range(0, len(to_collect), chunk):
            if token.cancelled:
                logger.info(
                    "data_collector.cancelled",
                    next_date=to_collect[i],
                    processed=state.processed,
                    reason=token.reason,
                )
                break
            window = to_collect[i : i + chunk]
            results = await self._limiter.execute_all_settled(
                [lambda d=d: _run(d) for d in window],
                context={"start_date": start_date, "end_date": end_date},
            )
            for date, outcome in zip(window, results):
                if not outcome.fulfilled and date not in state.settled:
                    state.failed += 1
                    state.errors.append(
                        ItemError(
                            item_id=date,
                            message=str(outcome.error),
                            is_retryable=is_retryable(outcome.error),
                        )
                    )

        duration = int((time.monotonic() - started) * 1000)
        logger.info(
            "data_collector.finished",
            processed=state.processed,
            failed=state.failed,
            skipped=state.skipped,
            snapshots=len(state.snapshot_ids),
            duration_ms=duration,
            cancelled=token.cancelled,
        )
        return CollectionResult(
            success=state.failed == 0 and not token.cancelled,
            processed_items=state.processed,
            failed_items=state.failed,
            skipped_items=state.skipped,
            snapshot_ids=state.snapshot_ids,
            errors=state.errors,
            duration=duration,
            cancelled=token.cancelled,
        )

    async def _fetch(self, date: str, districts: list[str], token: CancellationToken) -> FetchResult:
        async def _attempt() -> FetchResult:
            await self._rate_limiter.acquire(token)
            try:
                result = await self._breaker.execute(
                    lambda: self._collection.fetch_for_date(date, districts)
                )
            except RateLimitError as e:
                self._rate_limiter.record_throttle(e.retry_after)
                raise
            self._rate_limiter.record_success()
            return result

        return await retry_async(
            _attempt, self._retry, operation_name=f"fetch_for_date:{date}", sleep=token.sleep
        )

    async def _collect_date(
        self, date: str, districts: list[str], token: CancellationToken
    ) -> str | None:
        """Fetch, rank and write one date. Returns the snapshot id, or None if skipped."""
        started = time.monotonic()
        fetch = await self._fetch(date, districts, token)

        if fetch.all_failed:
            raise DataUnavailableError(
                f"No district data available for {date}",
                retryable=any(is_retryable(e) for e in fetch.failures.values()),
            ).with_context(failed_districts=sorted(fetch.failures))

        as_of_date = fetch.as_of_date or date
        closing: ClosingPeriodResult | None = None
        snapshot_date = date
        if fetch.data_month:
            closing = self._detector.detect(as_of_date, fetch.data_month)
            if closing.is_closing_period:
                snapshot_date = closing.snapshot_date
                comparison = await self._store.should_update_closing_period_snapshot(
                    snapshot_date, as_of_date
                )
                if not comparison.should_update:
                    logger.info(
                        "data_collector.closing_period_kept_existing",
                        date=date,
                        snapshot_date=snapshot_date,
                        existing_collection_date=comparison.existing_collection_date,
                    )
                    return None

        if self._validation is not None:
            report = self._validation.validate(
                {"districts": [d.to_record() for d in fetch.records], "date": snapshot_date}
            )
            if not report.is_valid:
                raise SchemaError(
                    f"Payload for {date} failed validation: {'; '.join(report.errors)}",
                    code="PAYLOAD_INVALID",
                )

        districts_data = fetch.records
        rankings = None
        ranking_version = None
        if self._ranking is not None:
            districts_data = await self._ranking.calculate_rankings(fetch.records)
            rankings = self._ranking.build_rankings_data(districts_data, snapshot_date)
            ranking_version = self._ranking.get_ranking_version()

        errors = [f"District {d}: {e}" for d, e in sorted(fetch.failures.items())]
        now = utc_now_iso()
        snapshot = Snapshot(
            snapshot_id=date,
            created_at=now,
            status="partial" if errors else "success",
            errors=errors,
            payload=NormalizedData(
                districts=districts_data,
                metadata=SnapshotPayloadMetadata(
                    source=fetch.source,
                    fetched_at=now,
                    data_as_of_date=as_of_date,
                    district_count=len(districts_data),
                    processing_duration_ms=int((time.monotonic() - started) * 1000),
                    is_closing_period_data=closing.is_closing_period if closing else None,
                    collection_date=as_of_date,
                    logical_date=snapshot_date,
                ),
            ),
        )
        result = await self._store.write_snapshot(
            snapshot,
            rankings=rankings,
            ranking_version=ranking_version,
            override_snapshot_date=snapshot_date if snapshot_date != date else None,
        )
        if not result.complete:
            raise StorageError(
                f"No district data written for {date}", retryable=True
            ).with_context(snapshot_id=result.snapshot_id, failed_districts=result.failed_districts)

        if self._availability is not None and result.districts_written:
            try:
                await self._availability.update(result.snapshot_id, result.districts_written)
            except SpineError as e:
                logger.warning(
                    "data_collector.availability_update_failed",
                    snapshot_id=result.snapshot_id,
                    error=e.message,
                )

        logger.info(
            "data_collector.date_collected",
            date=date,
            snapshot_id=result.snapshot_id,
            status=result.status,
            districts=len(result.districts_written),
            failed_districts=len(fetch.failures) + len(result.failed_districts),
        )
        return result.snapshot_id

    # ── Preview / control ────────────────────────────────────────

    async def preview_collection(
        self, start_date: str, end_date: str, options: CollectionOptions | None = None
    ) -> CollectionPreview:
        """What a collection run would do, without fetching anything.

        Raises:
            ValidationError: The date range is invalid
        """
        options = options or CollectionOptions()
        self._require_valid_range(start_date, end_date)
        all_dates = generate_date_range(start_date, end_date)
        if options.skip_existing:
            dates, skipped = await self._split_existing(all_dates)
        else:
            dates, skipped = all_dates, []
        affected = options.target_districts or list(self._configured)
        return CollectionPreview(
            total_items=len(dates),
            date_range={"startDate": start_date, "endDate": end_date},
            affected_districts=affected,
            estimated_duration=len(dates) * self._seconds_per_date,
            dates=dates,
            skipped_dates=skipped,
        )

    def cancel(self, reason: str = "Collection cancelled") -> None:
        """Signal the current run's token; in-flight dates finish."""
        if self._token is not None and self._token.cancel(reason):
            logger.info("data_collector.cancel_requested", reason=reason)

    def get_status(self) -> dict[str, Any]:
        return {
            "rate_limiter": self._rate_limiter.get_status(),
            "circuit_breaker": self._breaker.get_stats(),
            "concurrency": self._limiter.get_status(),
        }
