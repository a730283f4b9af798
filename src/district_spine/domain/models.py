"""Persisted records for backfill jobs and snapshots.

All records are pydantic v2 models. Python attributes are snake_case and
job/manifest/metadata records serialize with camelCase aliases
(``jobId``, ``writeComplete``) to match the on-disk and document layout.
The top-level ``Snapshot`` keeps snake_case keys (``snapshot_id``).

Use ``to_record()`` for JSON-ready dicts and ``Model.model_validate(data)``
to load them back.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

SnapshotStatus = Literal["success", "partial", "failed"]

CURRENT_SCHEMA_VERSION = "2.0.0"
CURRENT_CALCULATION_VERSION = "2.0.0"


class CamelModel(BaseModel):
    """Base for records persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        """JSON-ready dict using the persisted key names."""
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# JOBS
# =============================================================================


class JobStatus(str, Enum):
    """Lifecycle status of a backfill job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RECOVERING = "recovering"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Running or recovering; at most one such job exists at a time."""
        return self in (JobStatus.RUNNING, JobStatus.RECOVERING)


class JobType(str, Enum):
    DATA_COLLECTION = "data-collection"
    ANALYTICS_GENERATION = "analytics-generation"


class RateLimitConfig(CamelModel):
    """Persisted rate-limit record; defaults apply when nothing is stored."""

    max_requests_per_minute: int = Field(default=10, ge=1)
    max_concurrent: int = Field(default=3, ge=1)
    min_delay_ms: int = Field(default=2000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def _check_delays(self) -> RateLimitConfig:
        if self.max_delay_ms < self.min_delay_ms:
            raise ValueError("maxDelayMs must be >= minDelayMs")
        return self


class RateLimitOverrides(CamelModel):
    """Per-job partial override of :class:`RateLimitConfig`."""

    max_requests_per_minute: int | None = Field(default=None, ge=1)
    max_concurrent: int | None = Field(default=None, ge=1)
    min_delay_ms: int | None = Field(default=None, ge=0)
    max_delay_ms: int | None = Field(default=None, ge=0)
    backoff_multiplier: float | None = Field(default=None, ge=1.0)

    def apply_to(self, base: RateLimitConfig) -> RateLimitConfig:
        updates = self.model_dump(exclude_none=True)
        return RateLimitConfig.model_validate({**base.model_dump(), **updates})


class JobConfig(CamelModel):
    start_date: str | None = None
    end_date: str | None = None
    target_districts: list[str] | None = None
    skip_existing: bool = True
    rate_limit_overrides: RateLimitOverrides | None = None


class DistrictProgress(CamelModel):
    district_id: str
    status: Literal["pending", "processing", "completed", "failed", "skipped"] = "pending"
    items_processed: int = 0
    items_total: int = 0
    last_error: str | None = None


class JobError(CamelModel):
    item_id: str
    message: str
    occurred_at: str
    is_retryable: bool = False


class JobProgress(CamelModel):
    """Live counters; processed + failed + skipped never exceeds total."""

    total_items: int = Field(default=0, ge=0)
    processed_items: int = Field(default=0, ge=0)
    failed_items: int = Field(default=0, ge=0)
    skipped_items: int = Field(default=0, ge=0)
    current_item: str | None = None
    district_progress: dict[str, DistrictProgress] = Field(default_factory=dict)
    errors: list[JobError] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_counters(self) -> JobProgress:
        done = self.processed_items + self.failed_items + self.skipped_items
        if done > self.total_items:
            raise ValueError(
                f"processed + failed + skipped ({done}) exceeds totalItems ({self.total_items})"
            )
        return self

    @property
    def percent_complete(self) -> int:
        if self.total_items == 0:
            return 100
        done = self.processed_items + self.failed_items + self.skipped_items
        return round(done / self.total_items * 100)


class JobCheckpoint(CamelModel):
    last_processed_item: str
    last_processed_at: str
    items_completed: list[str] = Field(default_factory=list)

    def with_item(self, item: str, processed_at: str) -> JobCheckpoint:
        """New checkpoint recording ``item``; the completed set only grows."""
        completed = list(self.items_completed)
        if item not in completed:
            completed.append(item)
        return JobCheckpoint(
            last_processed_item=item,
            last_processed_at=processed_at,
            items_completed=completed,
        )


class JobResult(CamelModel):
    items_processed: int = 0
    items_failed: int = 0
    items_skipped: int = 0
    snapshot_ids: list[str] = Field(default_factory=list)
    duration: int = 0


class BackfillJob(CamelModel):
    """One scheduled unit of work. ``job_id`` never changes once created."""

    job_id: str
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    config: JobConfig = Field(default_factory=JobConfig)
    progress: JobProgress = Field(default_factory=JobProgress)
    checkpoint: JobCheckpoint | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    resumed_at: str | None = None
    result: JobResult | None = None
    error: str | None = None


class BackfillRequest(CamelModel):
    """Request to create a job, as submitted by an operator."""

    job_type: JobType
    start_date: str | None = None
    end_date: str | None = None
    target_districts: list[str] | None = None
    skip_existing: bool = True
    rate_limit_overrides: RateLimitOverrides | None = None

    def to_job_config(self) -> JobConfig:
        return JobConfig(
            start_date=self.start_date,
            end_date=self.end_date,
            target_districts=self.target_districts,
            skip_existing=self.skip_existing,
            rate_limit_overrides=self.rate_limit_overrides,
        )


class ListJobsOptions(BaseModel):
    """Filters for job listing; results are always newest first."""

    limit: int | None = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)
    status: list[JobStatus] | None = None
    job_type: list[JobType] | None = None
    start_date_from: str | None = None
    start_date_to: str | None = None


# =============================================================================
# SNAPSHOTS
# =============================================================================


class DistrictStatistics(CamelModel):
    """Per-district statistics. Unknown source fields are preserved."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    district_id: str
    as_of_date: str | None = None
    district_performance: list[dict[str, Any]] = Field(default_factory=list)
    ranking: dict[str, Any] | None = None


class SnapshotPayloadMetadata(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    source: str = "dashboard"
    fetched_at: str | None = None
    data_as_of_date: str
    district_count: int = 0
    processing_duration_ms: int = 0
    is_closing_period_data: bool | None = None
    collection_date: str | None = None
    logical_date: str | None = None


class NormalizedData(CamelModel):
    districts: list[DistrictStatistics] = Field(default_factory=list)
    metadata: SnapshotPayloadMetadata


class Snapshot(BaseModel):
    """Normalized data for one calendar date.

    A ``success`` snapshot never carries errors: one that does is
    downgraded to ``partial`` on construction.
    """

    snapshot_id: str
    created_at: str
    schema_version: str = CURRENT_SCHEMA_VERSION
    calculation_version: str = CURRENT_CALCULATION_VERSION
    status: SnapshotStatus = "success"
    errors: list[str] = Field(default_factory=list)
    payload: NormalizedData

    @model_validator(mode="after")
    def _success_has_no_errors(self) -> Snapshot:
        if self.status == "success" and self.errors:
            self.status = "partial"
        return self

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class PerDistrictData(CamelModel):
    """Contents of one ``district_{id}.json`` object."""

    district_id: str
    district_name: str
    collected_at: str
    status: Literal["success", "failed"] = "success"
    data: DistrictStatistics


class DistrictManifestEntry(CamelModel):
    district_id: str
    file_name: str
    status: Literal["success", "failed"]
    file_size: int = 0
    last_modified: str
    error_message: str | None = None


class RankingsFileEntry(CamelModel):
    filename: str = "all-districts-rankings.json"
    size: int = 0
    status: Literal["present", "missing"] = "missing"


class SnapshotManifest(CamelModel):
    """Index of a snapshot's district objects plus the completion marker."""

    snapshot_id: str
    created_at: str
    districts: list[DistrictManifestEntry] = Field(default_factory=list)
    total_districts: int = 0
    successful_districts: int = 0
    failed_districts: int = 0
    write_complete: bool = False
    all_districts_rankings: RankingsFileEntry | None = None

    @model_validator(mode="after")
    def _check_totals(self) -> SnapshotManifest:
        if self.successful_districts + self.failed_districts > self.total_districts:
            raise ValueError("successfulDistricts + failedDistricts exceeds totalDistricts")
        return self


class DistrictErrorRecord(CamelModel):
    district_id: str
    operation: str
    error: str
    timestamp: str
    should_retry: bool = False


class SnapshotMetadataRecord(CamelModel):
    """Contents of ``metadata.json``."""

    snapshot_id: str
    created_at: str
    schema_version: str = CURRENT_SCHEMA_VERSION
    calculation_version: str = CURRENT_CALCULATION_VERSION
    ranking_version: str | None = None
    status: SnapshotStatus
    configured_districts: list[str] = Field(default_factory=list)
    successful_districts: list[str] = Field(default_factory=list)
    failed_districts: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    district_errors: list[DistrictErrorRecord] = Field(default_factory=list)
    processing_duration: int = 0
    source: str = "dashboard"
    data_as_of_date: str
    is_closing_period_data: bool | None = None
    collection_date: str | None = None
    logical_date: str | None = None


class SnapshotListItem(BaseModel):
    """Lightweight listing row built from metadata only."""

    snapshot_id: str
    created_at: str
    status: SnapshotStatus
    schema_version: str
    calculation_version: str
    error_count: int = 0
    district_count: int = 0


class SnapshotFilters(BaseModel):
    status: SnapshotStatus | None = None
    schema_version: str | None = None
    calculation_version: str | None = None
    created_after: str | None = None
    created_before: str | None = None
    min_district_count: int | None = None

    def matches(self, item: SnapshotListItem) -> bool:
        if self.status and item.status != self.status:
            return False
        if self.schema_version and item.schema_version != self.schema_version:
            return False
        if self.calculation_version and item.calculation_version != self.calculation_version:
            return False
        if self.created_after and item.created_at < self.created_after:
            return False
        if self.created_before and item.created_at > self.created_before:
            return False
        if self.min_district_count and item.district_count < self.min_district_count:
            return False
        return True


class SnapshotComparisonResult(BaseModel):
    """Whether new closing-period data may replace an existing snapshot."""

    should_update: bool
    reason: Literal["no_existing", "newer_data", "same_day_refresh", "existing_is_newer"]
    existing_collection_date: str | None = None
    new_collection_date: str


# =============================================================================
# RANKINGS
# =============================================================================


class DistrictRanking(CamelModel):
    district_id: str
    district_name: str
    region: str
    paid_clubs: int = 0
    paid_club_base: int = 0
    club_growth_percent: float = 0.0
    total_payments: int = 0
    payment_base: int = 0
    payment_growth_percent: float = 0.0
    active_clubs: int = 0
    distinguished_clubs: int = 0
    select_distinguished: int = 0
    presidents_distinguished: int = 0
    distinguished_percent: float = 0.0
    clubs_rank: int
    payments_rank: int
    distinguished_rank: int
    aggregate_score: int
    overall_rank: int


class AllDistrictsRankingsMetadata(CamelModel):
    snapshot_id: str
    calculated_at: str
    schema_version: str = "1.0"
    calculation_version: str = "1.0"
    ranking_version: str
    source_csv_date: str
    csv_fetched_at: str
    total_districts: int
    from_cache: bool = False


class AllDistrictsRankingsData(CamelModel):
    """Contents of ``all-districts-rankings.json``."""

    metadata: AllDistrictsRankingsMetadata
    rankings: list[DistrictRanking] = Field(default_factory=list)


__all__ = [
    "CURRENT_CALCULATION_VERSION",
    "CURRENT_SCHEMA_VERSION",
    "AllDistrictsRankingsData",
    "AllDistrictsRankingsMetadata",
    "BackfillJob",
    "BackfillRequest",
    "DistrictErrorRecord",
    "DistrictManifestEntry",
    "DistrictProgress",
    "DistrictRanking",
    "DistrictStatistics",
    "JobCheckpoint",
    "JobConfig",
    "JobError",
    "JobProgress",
    "JobResult",
    "JobStatus",
    "JobType",
    "ListJobsOptions",
    "NormalizedData",
    "PerDistrictData",
    "RankingsFileEntry",
    "RateLimitConfig",
    "RateLimitOverrides",
    "Snapshot",
    "SnapshotComparisonResult",
    "SnapshotFilters",
    "SnapshotListItem",
    "SnapshotManifest",
    "SnapshotMetadataRecord",
    "SnapshotPayloadMetadata",
    "SnapshotStatus",
]
