"""Snapshot store: atomic multi-object writes and consistent reads.

A snapshot is physically several objects under one id: a manifest, a
metadata record, one object per district and optionally the
all-districts rankings object. Every backend implements a handful of
primitives and inherits the commit protocol from :class:`SnapshotStore`.

Manifesto:
    - **Two-phase commit:** content first, completion marker last
    - **Readers never see partial data:** ``writeComplete`` is checked both
      before and after assembling a snapshot
    - **Bounded writes:** districts go out in batches with per-batch retry,
      per-batch timeout and a ceiling on total wall-clock time
    - **Loud corruption:** malformed JSON or schema mismatch raises
      :class:`StorageCorruptionError` with recovery recommendations

Architecture:
    ::

        write_snapshot(snapshot)
          ├── phase 0   existing manifest  writeComplete=false (overwrite)
          ├── phase 1a  district objects  ── batches × ConcurrencyLimiter
          │                                   └── retry + backoff + jitter
          ├── phase 1b  rankings object (optional)
          ├── phase 1c  metadata.json
          ├── phase 2a  manifest.json   writeComplete=false
          └── phase 2b  manifest.json   writeComplete=true
                        (skipped when no district object was written)

        get_snapshot(id)
          ├── manifest.writeComplete?      ── no → None
          ├── metadata + successful district objects
          └── manifest.writeComplete again ── no / replaced → None

    Backend primitives (abstract):
        _read_json, _write_json, _write_district_batch,
        _list_snapshot_ids, _delete_snapshot, is_ready

Examples:
    >>> store = LocalSnapshotStore(tmp_path)
    >>> result = await store.write_snapshot(snapshot)
    >>> result.complete
    True
    >>> (await store.get_latest_successful()).snapshot_id
    '2024-01-15'

Guardrails:
    ❌ DON'T: Write the manifest before district objects are confirmed
    ✅ DO: Let the base class drive the order; backends only move bytes

    ❌ DON'T: Return half-assembled snapshots on a failed check
    ✅ DO: Return None and let the caller fall back to an older snapshot

Tags:
    storage, snapshot, two-phase-commit, batching, retry, consistency
"""

from __future__ import annotations

import asyncio
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import pydantic

from district_spine.core.errors import (
    StorageCorruptionError,
    StorageError,
    ValidationError,
    is_retryable,
)
from district_spine.core.errors import TimeoutError as SpineTimeoutError
from district_spine.core.logging import get_logger
from district_spine.core.timestamps import DATE_PATTERN, parse_iso_date, utc_now_iso
from district_spine.domain.models import (
    AllDistrictsRankingsData,
    DistrictErrorRecord,
    DistrictManifestEntry,
    DistrictStatistics,
    NormalizedData,
    PerDistrictData,
    RankingsFileEntry,
    Snapshot,
    SnapshotComparisonResult,
    SnapshotFilters,
    SnapshotListItem,
    SnapshotManifest,
    SnapshotMetadataRecord,
    SnapshotPayloadMetadata,
)
from district_spine.execution.concurrency import ConcurrencyLimiter
from district_spine.execution.retry import ExponentialBackoff

logger = get_logger(__name__)

M = TypeVar("M", bound=pydantic.BaseModel)

MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.json"
RANKINGS_FILE = "all-districts-rankings.json"

_DISTRICT_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
_DISTRICT_FILE_PATTERN = re.compile(r"^district_([A-Za-z0-9]+)\.json$")


# ── Validation ───────────────────────────────────────────────────────


def validate_snapshot_id(snapshot_id: str) -> str:
    """Require a real ``YYYY-MM-DD`` date with no traversal or encoded characters."""
    if not isinstance(snapshot_id, str) or not snapshot_id:
        raise ValidationError("Snapshot id must be a non-empty string", field="snapshot_id")
    if ".." in snapshot_id or "/" in snapshot_id or "\\" in snapshot_id or "%" in snapshot_id:
        raise ValidationError(
            f"Snapshot id contains forbidden characters: {snapshot_id!r}",
            field="snapshot_id",
            value=snapshot_id,
            code="PATH_TRAVERSAL",
        )
    if not DATE_PATTERN.match(snapshot_id) or parse_iso_date(snapshot_id) is None:
        raise ValidationError(
            f"Snapshot id must be a valid YYYY-MM-DD date: {snapshot_id!r}",
            field="snapshot_id",
            value=snapshot_id,
            code="INVALID_SNAPSHOT_ID",
        )
    return snapshot_id


def validate_district_id(district_id: str) -> str:
    if not isinstance(district_id, str) or not _DISTRICT_ID_PATTERN.match(district_id):
        raise ValidationError(
            f"District id must be alphanumeric: {district_id!r}",
            field="district_id",
            value=district_id,
            code="INVALID_DISTRICT_ID",
        )
    return district_id


def is_valid_snapshot_id(snapshot_id: str) -> bool:
    try:
        validate_snapshot_id(snapshot_id)
    except ValidationError:
        return False
    return True


def district_file_name(district_id: str) -> str:
    return f"district_{validate_district_id(district_id)}.json"


def parse_district_file_name(name: str) -> str | None:
    match = _DISTRICT_FILE_PATTERN.match(name)
    return match.group(1) if match else None


# ── Batch writing ────────────────────────────────────────────────────


@dataclass(frozen=True)
class BatchWriteConfig:
    """Bounds for writing district objects.

    Attributes:
        max_operations_per_batch: District objects per batch
        max_concurrent_batches: Batches in flight at once
        batch_timeout_seconds: Ceiling for one batch attempt
        total_timeout_seconds: Ceiling for all district batches together
        max_retries: Retries per batch after the first attempt
        initial_backoff_seconds: First retry delay
        max_backoff_seconds: Retry delay cap before jitter
        jitter: Proportional jitter applied to each delay
    """

    max_operations_per_batch: int = 50
    max_concurrent_batches: int = 3
    batch_timeout_seconds: float = 30.0
    total_timeout_seconds: float = 300.0
    max_retries: int = 3
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    jitter: float = 0.2

    def backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            max_retries=self.max_retries,
            base_delay=self.initial_backoff_seconds,
            max_delay=self.max_backoff_seconds,
            jitter=self.jitter,
            retry_on=is_retryable,
        )


@dataclass
class BatchResult:
    batch_index: int
    district_ids: list[str]
    success: bool
    attempts: int
    duration_ms: int
    file_sizes: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "district_ids": self.district_ids,
            "success": self.success,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class SnapshotWriteResult:
    snapshot_id: str
    complete: bool
    total_batches: int
    successful_batches: int
    failed_batches: int
    districts_written: list[str]
    failed_districts: list[str]
    total_duration_ms: int
    status: str
    batch_results: list[BatchResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "complete": self.complete,
            "status": self.status,
            "total_batches": self.total_batches,
            "successful_batches": self.successful_batches,
            "failed_batches": self.failed_batches,
            "districts_written": self.districts_written,
            "failed_districts": self.failed_districts,
            "total_duration_ms": self.total_duration_ms,
            "batch_results": [b.to_dict() for b in self.batch_results],
        }


def _chunk(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


# ── Store ────────────────────────────────────────────────────────────


class SnapshotStore(ABC):
    """Abstract snapshot store implementing the commit and read protocols.

    Args:
        batch_config: Bounds for district batch writes
        sleep: Async sleep used between retries, injectable for tests
    """

    backend_name: str = "abstract"

    def __init__(
        self,
        *,
        batch_config: BatchWriteConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.batch_config = batch_config or BatchWriteConfig()
        self._sleep = sleep

    # ── Backend primitives ───────────────────────────────────────────

    @abstractmethod
    async def _read_json(self, snapshot_id: str, name: str) -> dict[str, Any] | None:
        """Parsed object, or None if it does not exist.

        Raises:
            StorageCorruptionError: The object exists but is not valid JSON
            StorageError: The backend failed
        """

    @abstractmethod
    async def _write_json(self, snapshot_id: str, name: str, data: dict[str, Any]) -> int:
        """Write one object; returns its size in bytes."""

    @abstractmethod
    async def _write_district_batch(
        self, snapshot_id: str, items: list[tuple[str, dict[str, Any]]]
    ) -> dict[str, int]:
        """Write one batch of district objects; returns district id → size. All or nothing."""

    @abstractmethod
    async def _list_snapshot_ids(self) -> list[str]:
        """Raw snapshot identifiers present in the backend (unvalidated)."""

    @abstractmethod
    async def _delete_snapshot(self, snapshot_id: str) -> bool:
        """Remove every object of a snapshot; False if nothing existed."""

    @abstractmethod
    async def is_ready(self) -> bool:
        """True when the backend is reachable and writable."""

    # ── Parsing ──────────────────────────────────────────────────────

    def _parse(self, model: type[M], raw: dict[str, Any], snapshot_id: str, name: str) -> M:
        try:
            return model.model_validate(raw)
        except pydantic.ValidationError as e:
            raise StorageCorruptionError(
                f"{name} for snapshot {snapshot_id} does not match the expected schema: "
                f"{e.error_count()} error(s)",
                path=f"{snapshot_id}/{name}",
                cause=e,
            ).with_context(snapshot_id=snapshot_id, backend=self.backend_name) from e

    async def _read_model(self, model: type[M], snapshot_id: str, name: str) -> M | None:
        raw = await self._read_json(snapshot_id, name)
        if raw is None:
            return None
        return self._parse(model, raw, snapshot_id, name)

    # ── Write protocol ───────────────────────────────────────────────

    async def write_snapshot(
        self,
        snapshot: Snapshot,
        *,
        rankings: AllDistrictsRankingsData | None = None,
        ranking_version: str | None = None,
        override_snapshot_date: str | None = None,
    ) -> SnapshotWriteResult:
        """Write ``snapshot`` with the two-phase commit.

        Args:
            snapshot: Snapshot to persist
            rankings: Optional all-districts rankings written alongside
            ranking_version: Recorded in metadata when rankings were computed
            override_snapshot_date: Store under this id instead of
                ``snapshot.snapshot_id`` (closing-period re-dating)

        Raises:
            ValidationError: Invalid snapshot or district id
            StorageError: Metadata or manifest could not be written
        """
        snapshot_id = validate_snapshot_id(override_snapshot_date or snapshot.snapshot_id)
        started = time.monotonic()
        collected_at = utc_now_iso()

        items: list[tuple[str, dict[str, Any]]] = []
        for district in snapshot.payload.districts:
            validate_district_id(district.district_id)
            record = PerDistrictData(
                district_id=district.district_id,
                district_name=f"District {district.district_id}",
                collected_at=collected_at,
                status="success",
                data=district,
            )
            items.append((district.district_id, record.to_record()))

        await self._retract_existing(snapshot_id)
        batch_results = await self._write_batches(snapshot_id, items)

        written: list[str] = []
        failed: list[str] = []
        entries: list[DistrictManifestEntry] = []
        district_errors: list[DistrictErrorRecord] = []
        now = utc_now_iso()
        for batch in batch_results:
            for district_id in batch.district_ids:
                if batch.success:
                    written.append(district_id)
                    entries.append(
                        DistrictManifestEntry(
                            district_id=district_id,
                            file_name=district_file_name(district_id),
                            status="success",
                            file_size=batch.file_sizes.get(district_id, 0),
                            last_modified=now,
                        )
                    )
                else:
                    failed.append(district_id)
                    entries.append(
                        DistrictManifestEntry(
                            district_id=district_id,
                            file_name=district_file_name(district_id),
                            status="failed",
                            last_modified=now,
                            error_message=batch.error,
                        )
                    )
                    district_errors.append(
                        DistrictErrorRecord(
                            district_id=district_id,
                            operation="write_district",
                            error=batch.error or "unknown error",
                            timestamp=now,
                            should_retry=True,
                        )
                    )

        status = snapshot.status
        errors = list(snapshot.errors)
        if failed:
            errors.extend(
                f"Failed to write district {e.district_id}: {e.error}" for e in district_errors
            )
            status = "failed" if not written else "partial"

        rankings_entry: RankingsFileEntry | None = None
        if rankings is not None:
            size = await self._write_json(snapshot_id, RANKINGS_FILE, rankings.to_record())
            rankings_entry = RankingsFileEntry(filename=RANKINGS_FILE, size=size, status="present")

        payload_meta = snapshot.payload.metadata
        metadata = SnapshotMetadataRecord(
            snapshot_id=snapshot_id,
            created_at=snapshot.created_at,
            schema_version=snapshot.schema_version,
            calculation_version=snapshot.calculation_version,
            ranking_version=ranking_version,
            status=status,
            configured_districts=[d for d, _ in items],
            successful_districts=written,
            failed_districts=failed,
            errors=errors,
            district_errors=district_errors,
            processing_duration=payload_meta.processing_duration_ms,
            source=payload_meta.source,
            data_as_of_date=payload_meta.data_as_of_date,
            is_closing_period_data=payload_meta.is_closing_period_data,
            collection_date=payload_meta.collection_date,
            logical_date=payload_meta.logical_date,
        )
        await self._write_json(snapshot_id, METADATA_FILE, metadata.to_record())

        manifest = SnapshotManifest(
            snapshot_id=snapshot_id,
            created_at=snapshot.created_at,
            districts=entries,
            total_districts=len(items),
            successful_districts=len(written),
            failed_districts=len(failed),
            write_complete=False,
            all_districts_rankings=rankings_entry,
        )
        await self._write_json(snapshot_id, MANIFEST_FILE, manifest.to_record())
        complete = bool(written) or not items
        if complete:
            manifest.write_complete = True
            await self._write_json(snapshot_id, MANIFEST_FILE, manifest.to_record())

        successful_batches = sum(1 for b in batch_results if b.success)
        result = SnapshotWriteResult(
            snapshot_id=snapshot_id,
            complete=complete,
            total_batches=len(batch_results),
            successful_batches=successful_batches,
            failed_batches=len(batch_results) - successful_batches,
            districts_written=written,
            failed_districts=failed,
            total_duration_ms=int((time.monotonic() - started) * 1000),
            status=status,
            batch_results=batch_results,
        )
        log = logger.info if complete else logger.warning
        log(
            "snapshot_store.write_complete" if complete else "snapshot_store.write_incomplete",
            backend=self.backend_name,
            snapshot_id=snapshot_id,
            status=status,
            districts_written=len(written),
            failed_districts=len(failed),
            total_batches=result.total_batches,
            duration_ms=result.total_duration_ms,
        )
        return result

    async def _retract_existing(self, snapshot_id: str) -> None:
        """Clear ``writeComplete`` on a snapshot about to be overwritten."""
        try:
            existing = await self._read_json(snapshot_id, MANIFEST_FILE)
        except StorageCorruptionError as e:
            logger.warning(
                "snapshot_store.overwriting_corrupt_manifest",
                backend=self.backend_name,
                snapshot_id=snapshot_id,
                error=e.message,
            )
            return
        if existing is None or not existing.get("writeComplete"):
            return
        existing["writeComplete"] = False
        await self._write_json(snapshot_id, MANIFEST_FILE, existing)
        logger.info(
            "snapshot_store.overwrite_started",
            backend=self.backend_name,
            snapshot_id=snapshot_id,
        )

    async def _write_batches(
        self, snapshot_id: str, items: list[tuple[str, dict[str, Any]]]
    ) -> list[BatchResult]:
        if not items:
            return []
        config = self.batch_config
        batches = _chunk(items, max(1, config.max_operations_per_batch))
        deadline = time.monotonic() + config.total_timeout_seconds
        limiter = ConcurrencyLimiter(
            f"{self.backend_name}-snapshot-writes",
            config.max_concurrent_batches,
            queue_limit=len(batches),
            acquire_timeout=None,
        )
        settled = await limiter.execute_all_settled(
            [
                (lambda i=i, b=b: self._write_batch_with_retry(snapshot_id, i, b, deadline))
                for i, b in enumerate(batches)
            ],
            context={"snapshot_id": snapshot_id},
        )
        results: list[BatchResult] = []
        for index, outcome in enumerate(settled):
            if outcome.fulfilled and outcome.value is not None:
                results.append(outcome.value)
            else:
                results.append(
                    BatchResult(
                        batch_index=index,
                        district_ids=[d for d, _ in batches[index]],
                        success=False,
                        attempts=0,
                        duration_ms=0,
                        error=str(outcome.error),
                    )
                )
        return results

    async def _write_batch_with_retry(
        self,
        snapshot_id: str,
        index: int,
        batch: list[tuple[str, dict[str, Any]]],
        deadline: float,
    ) -> BatchResult:
        config = self.batch_config
        strategy = config.backoff()
        district_ids = [d for d, _ in batch]
        started = time.monotonic()
        attempt = 0

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                error: BaseException = SpineTimeoutError(
                    f"Total write timeout of {config.total_timeout_seconds}s exceeded"
                )
                break
            try:
                sizes = await asyncio.wait_for(
                    self._write_district_batch(snapshot_id, batch),
                    min(config.batch_timeout_seconds, remaining),
                )
                return BatchResult(
                    batch_index=index,
                    district_ids=district_ids,
                    success=True,
                    attempts=attempt + 1,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    file_sizes=sizes,
                )
            except asyncio.TimeoutError:
                error = SpineTimeoutError(
                    f"Batch {index} timed out after {config.batch_timeout_seconds}s"
                )
            except Exception as e:
                error = e

            if not strategy.should_retry(attempt, error):
                break
            delay = min(strategy.next_delay(attempt), max(0.0, deadline - time.monotonic()))
            logger.warning(
                "snapshot_store.batch_retry",
                backend=self.backend_name,
                snapshot_id=snapshot_id,
                batch_index=index,
                attempt=attempt + 1,
                delay_seconds=round(delay, 3),
                error=str(error),
            )
            attempt += 1
            await self._sleep(delay)

        logger.error(
            "snapshot_store.batch_failed",
            backend=self.backend_name,
            snapshot_id=snapshot_id,
            batch_index=index,
            districts=district_ids,
            attempts=attempt + 1,
            error=str(error),
        )
        return BatchResult(
            batch_index=index,
            district_ids=district_ids,
            success=False,
            attempts=attempt + 1,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=str(error),
        )

    # ── Read protocol ────────────────────────────────────────────────

    async def get_snapshot_manifest(self, snapshot_id: str) -> SnapshotManifest | None:
        validate_snapshot_id(snapshot_id)
        return await self._read_model(SnapshotManifest, snapshot_id, MANIFEST_FILE)

    async def get_snapshot_metadata(self, snapshot_id: str) -> SnapshotMetadataRecord | None:
        validate_snapshot_id(snapshot_id)
        return await self._read_model(SnapshotMetadataRecord, snapshot_id, METADATA_FILE)

    async def is_snapshot_write_complete(self, snapshot_id: str) -> bool:
        manifest = await self.get_snapshot_manifest(snapshot_id)
        return bool(manifest and manifest.write_complete)

    async def read_district_data(
        self, snapshot_id: str, district_id: str
    ) -> DistrictStatistics | None:
        validate_snapshot_id(snapshot_id)
        name = district_file_name(district_id)
        record = await self._read_model(PerDistrictData, snapshot_id, name)
        return record.data if record else None

    async def list_districts_in_snapshot(self, snapshot_id: str) -> list[str]:
        """District ids whose objects were written successfully."""
        manifest = await self.get_snapshot_manifest(snapshot_id)
        if manifest is None:
            return []
        return [e.district_id for e in manifest.districts if e.status == "success"]

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        """Assemble a snapshot, or None unless it is complete before and after reading.

        Raises:
            ValidationError: Malformed snapshot id
            StorageCorruptionError: A constituent object is corrupt
        """
        validate_snapshot_id(snapshot_id)
        before = await self.get_snapshot_manifest(snapshot_id)
        if before is None or not before.write_complete:
            return None

        metadata = await self.get_snapshot_metadata(snapshot_id)
        if metadata is None:
            return None

        districts: list[DistrictStatistics] = []
        for entry in before.districts:
            if entry.status != "success":
                continue
            data = await self.read_district_data(snapshot_id, entry.district_id)
            if data is not None:
                districts.append(data)

        after = await self.get_snapshot_manifest(snapshot_id)
        if after is None or not after.write_complete or after.created_at != before.created_at:
            logger.warning(
                "snapshot_store.snapshot_changed_during_read",
                backend=self.backend_name,
                snapshot_id=snapshot_id,
            )
            return None

        return Snapshot(
            snapshot_id=metadata.snapshot_id,
            created_at=metadata.created_at,
            schema_version=metadata.schema_version,
            calculation_version=metadata.calculation_version,
            status=metadata.status,
            errors=metadata.errors,
            payload=NormalizedData(
                districts=districts,
                metadata=SnapshotPayloadMetadata(
                    source=metadata.source,
                    fetched_at=metadata.created_at,
                    data_as_of_date=metadata.data_as_of_date,
                    district_count=len(districts),
                    processing_duration_ms=metadata.processing_duration,
                    is_closing_period_data=metadata.is_closing_period_data,
                    collection_date=metadata.collection_date,
                    logical_date=metadata.logical_date,
                ),
            ),
        )

    async def list_snapshot_ids(self) -> list[str]:
        """Valid snapshot ids, ascending."""
        return sorted(i for i in await self._list_snapshot_ids() if is_valid_snapshot_id(i))

    async def _latest(self, *, require_success: bool) -> Snapshot | None:
        for snapshot_id in reversed(await self.list_snapshot_ids()):
            try:
                metadata = await self.get_snapshot_metadata(snapshot_id)
                if metadata is None:
                    continue
                if require_success and metadata.status != "success":
                    continue
                snapshot = await self.get_snapshot(snapshot_id)
            except StorageCorruptionError as e:
                logger.warning(
                    "snapshot_store.skipping_corrupt_snapshot",
                    backend=self.backend_name,
                    snapshot_id=snapshot_id,
                    error=e.message,
                    recommendations=e.recommendations,
                )
                continue
            if snapshot is None:
                continue
            if require_success and snapshot.status != "success":
                continue
            return snapshot
        return None

    async def get_latest_successful(self) -> Snapshot | None:
        """Newest snapshot that is write-complete with status ``success``."""
        return await self._latest(require_success=True)

    async def get_latest(self) -> Snapshot | None:
        """Newest write-complete snapshot of any status."""
        return await self._latest(require_success=False)

    async def list_snapshots(
        self, limit: int | None = None, filters: SnapshotFilters | None = None
    ) -> list[SnapshotListItem]:
        """Newest first, from metadata only; stops once ``limit`` rows match."""
        items: list[SnapshotListItem] = []
        for snapshot_id in reversed(await self.list_snapshot_ids()):
            try:
                metadata = await self.get_snapshot_metadata(snapshot_id)
            except StorageCorruptionError as e:
                logger.warning(
                    "snapshot_store.skipping_corrupt_metadata",
                    backend=self.backend_name,
                    snapshot_id=snapshot_id,
                    error=e.message,
                )
                continue
            if metadata is None:
                continue
            item = SnapshotListItem(
                snapshot_id=metadata.snapshot_id,
                created_at=metadata.created_at,
                status=metadata.status,
                schema_version=metadata.schema_version,
                calculation_version=metadata.calculation_version,
                error_count=len(metadata.errors),
                district_count=len(metadata.successful_districts),
            )
            if filters is not None and not filters.matches(item):
                continue
            items.append(item)
            if limit and len(items) >= limit:
                break
        return items

    async def has_successful_snapshot(self, date: str) -> bool:
        """True when ``date`` has a write-complete snapshot with status ``success``."""
        try:
            metadata = await self.get_snapshot_metadata(date)
            if metadata is None or metadata.status != "success":
                return False
            return await self.is_snapshot_write_complete(date)
        except StorageCorruptionError:
            return False

    # ── Rankings ─────────────────────────────────────────────────────

    async def write_all_districts_rankings(
        self, snapshot_id: str, data: AllDistrictsRankingsData
    ) -> int:
        """Write the rankings object and record it in the manifest if one exists."""
        validate_snapshot_id(snapshot_id)
        size = await self._write_json(snapshot_id, RANKINGS_FILE, data.to_record())
        manifest = await self.get_snapshot_manifest(snapshot_id)
        if manifest is not None:
            manifest.all_districts_rankings = RankingsFileEntry(
                filename=RANKINGS_FILE, size=size, status="present"
            )
            await self._write_json(snapshot_id, MANIFEST_FILE, manifest.to_record())
        logger.info(
            "snapshot_store.rankings_written",
            backend=self.backend_name,
            snapshot_id=snapshot_id,
            districts=len(data.rankings),
        )
        return size

    async def read_all_districts_rankings(
        self, snapshot_id: str
    ) -> AllDistrictsRankingsData | None:
        validate_snapshot_id(snapshot_id)
        return await self._read_model(AllDistrictsRankingsData, snapshot_id, RANKINGS_FILE)

    async def has_all_districts_rankings(self, snapshot_id: str) -> bool:
        validate_snapshot_id(snapshot_id)
        return await self._read_json(snapshot_id, RANKINGS_FILE) is not None

    # ── Maintenance ──────────────────────────────────────────────────

    async def delete_snapshot(self, snapshot_id: str) -> bool:
        validate_snapshot_id(snapshot_id)
        deleted = await self._delete_snapshot(snapshot_id)
        logger.info(
            "snapshot_store.snapshot_deleted",
            backend=self.backend_name,
            snapshot_id=snapshot_id,
            existed=deleted,
        )
        return deleted

    async def should_update_closing_period_snapshot(
        self, snapshot_date: str, new_collection_date: str
    ) -> SnapshotComparisonResult:
        """Newer data wins: replace only when the new collection date is not older."""
        metadata = await self.get_snapshot_metadata(snapshot_date)
        if metadata is None:
            return SnapshotComparisonResult(
                should_update=True, reason="no_existing", new_collection_date=new_collection_date
            )
        existing = metadata.collection_date or metadata.data_as_of_date
        if new_collection_date > existing:
            reason = "newer_data"
        elif new_collection_date == existing:
            reason = "same_day_refresh"
        else:
            reason = "existing_is_newer"
        return SnapshotComparisonResult(
            should_update=reason != "existing_is_newer",
            reason=reason,
            existing_collection_date=existing,
            new_collection_date=new_collection_date,
        )

    def _storage_error(self, message: str, snapshot_id: str, cause: BaseException) -> StorageError:
        return StorageError(message, cause=cause).with_context(
            snapshot_id=snapshot_id, backend=self.backend_name
        )


__all__ = [
    "MANIFEST_FILE",
    "METADATA_FILE",
    "RANKINGS_FILE",
    "BatchResult",
    "BatchWriteConfig",
    "SnapshotStore",
    "SnapshotWriteResult",
    "district_file_name",
    "is_valid_snapshot_id",
    "parse_district_file_name",
    "validate_district_id",
    "validate_snapshot_id",
]
