"""District availability index: which dates have a snapshot for each district.

A single small JSON document answers "which dates can I show for district
X?" without listing snapshots::

    {
      "generatedAt": "2024-02-01T06:00:00+00:00",
      "districts": {"42": ["2024-01-30", "2024-01-31"], "61": ["2024-01-31"]}
    }

It lives at ``config/district-snapshot-index.json``, either under the local
data directory or in the GCS bucket. Reads go through an
:class:`IntermediateCache` so the document is fetched at most once per TTL.
Lookups never raise: a missing or unreadable index yields
``AvailabilityResult(available=False, reason=...)``.

Tags:
    storage, availability, index, cache
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import pydantic
from pydantic import Field

from district_spine.core.cache import IntermediateCache
from district_spine.core.errors import ConfigError, SpineError, StorageCorruptionError
from district_spine.core.logging import get_logger
from district_spine.core.timestamps import utc_now_iso
from district_spine.domain.models import CamelModel
from district_spine.execution.circuit_breaker import CircuitBreaker
from district_spine.storage.cloud import run_cloud_call
from district_spine.storage.files import atomic_write_json, read_json_file
from district_spine.storage.snapshots.base import SnapshotStore

logger = get_logger(__name__)

INDEX_OBJECT = "config/district-snapshot-index.json"
_CACHE_KEY = "district-snapshot-index"


class DistrictSnapshotIndex(CamelModel):
    generated_at: str
    districts: dict[str, list[str]] = Field(default_factory=dict)


@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    dates: list[str] = field(default_factory=list)
    reason: str | None = None


class IndexStore(Protocol):
    """Raw access to the index document."""

    async def read_index(self) -> dict[str, Any] | None: ...

    async def write_index(self, data: dict[str, Any]) -> None: ...


class LocalIndexStore:
    def __init__(self, root: str | Path):
        self.path = Path(root) / INDEX_OBJECT

    async def read_index(self) -> dict[str, Any] | None:
        return read_json_file(self.path)

    async def write_index(self, data: dict[str, Any]) -> None:
        atomic_write_json(self.path, data)


class GCSIndexStore:
    def __init__(
        self,
        bucket_name: str,
        *,
        project: str | None = None,
        client: Any = None,
        breaker: CircuitBreaker | None = None,
    ):
        if client is None:
            try:
                from google.cloud import storage
            except ImportError:
                raise ConfigError(
                    "google-cloud-storage is required for the GCS availability index. "
                    "Install with: pip install google-cloud-storage"
                ) from None
            client = storage.Client(project=project)
        self._blob = client.bucket(bucket_name).blob(INDEX_OBJECT)
        self._breaker = breaker or CircuitBreaker(
            name="gcs-availability-index", failure_threshold=5, recovery_timeout=60.0
        )

    async def read_index(self) -> dict[str, Any] | None:
        text = await run_cloud_call(
            self._breaker, self._blob.download_as_text, operation="read_index", backend="gcs"
        )
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageCorruptionError(
                f"{INDEX_OBJECT} is not valid JSON: {e.msg}", path=INDEX_OBJECT, cause=e
            ) from e

    async def write_index(self, data: dict[str, Any]) -> None:
        payload = json.dumps(data, indent=2)
        await run_cloud_call(
            self._breaker,
            lambda: self._blob.upload_from_string(payload, content_type="application/json"),
            operation="write_index",
            backend="gcs",
        )


class DistrictAvailabilityIndex:
    """Cached district → available-dates lookup.

    Args:
        store: Where the index document lives
        cache: Cache for the parsed index; a private one is created if omitted
        ttl_seconds: How long a read stays cached
    """

    def __init__(
        self,
        store: IndexStore,
        *,
        cache: IntermediateCache[DistrictSnapshotIndex | None] | None = None,
        ttl_seconds: float = 300.0,
    ):
        self._store = store
        if cache is None:
            cache = IntermediateCache(
                name="district-availability", max_entries=4, cleanup_interval_seconds=None
            )
        self._cache = cache
        self._ttl = ttl_seconds

    async def _load(self) -> DistrictSnapshotIndex | None:
        raw = await self._store.read_index()
        if raw is None:
            return None
        try:
            return DistrictSnapshotIndex.model_validate(raw)
        except pydantic.ValidationError as e:
            raise StorageCorruptionError(
                f"{INDEX_OBJECT} does not match the index schema ({e.error_count()} errors)",
                path=INDEX_OBJECT,
                recommendations=["Rebuild the index from the snapshot store"],
                cause=e,
            ) from e

    async def get_index(self) -> DistrictSnapshotIndex | None:
        """The parsed index (cached), or None when it does not exist."""
        return await self._cache.get_or_compute(_CACHE_KEY, self._load, self._ttl)

    def invalidate(self) -> None:
        self._cache.delete(_CACHE_KEY)

    async def get_available_dates(self, district_id: str) -> AvailabilityResult:
        try:
            index = await self.get_index()
        except SpineError as e:
            logger.warning("availability.index_unreadable", error=e.message)
            return AvailabilityResult(available=False, reason=f"Index unavailable: {e.message}")

        if index is None:
            return AvailabilityResult(available=False, reason="Index not found")
        dates = index.districts.get(district_id)
        if not dates:
            return AvailabilityResult(
                available=False, reason=f"No snapshots indexed for district {district_id}"
            )
        return AvailabilityResult(available=True, dates=sorted(dates))

    async def is_available(self, district_id: str, date: str) -> bool:
        result = await self.get_available_dates(district_id)
        return date in result.dates

    async def update(self, date: str, district_ids: list[str]) -> DistrictSnapshotIndex:
        """Record ``date`` for each district and persist the index."""
        current = await self._load() or DistrictSnapshotIndex(generated_at=utc_now_iso())
        districts = {k: set(v) for k, v in current.districts.items()}
        for district_id in district_ids:
            districts.setdefault(district_id, set()).add(date)
        return await self._publish(districts)

    async def rebuild_from_store(self, store: SnapshotStore) -> DistrictSnapshotIndex:
        """Regenerate the index from every complete snapshot in ``store``."""
        districts: dict[str, set[str]] = {}
        for snapshot_id in await store.list_snapshot_ids():
            try:
                if not await store.is_snapshot_write_complete(snapshot_id):
                    continue
                for district_id in await store.list_districts_in_snapshot(snapshot_id):
                    districts.setdefault(district_id, set()).add(snapshot_id)
            except StorageCorruptionError as e:
                logger.warning(
                    "availability.snapshot_skipped", snapshot_id=snapshot_id, error=e.message
                )
        index = await self._publish(districts)
        logger.info(
            "availability.index_rebuilt",
            districts=len(index.districts),
            backend=store.backend_name,
        )
        return index

    async def _publish(self, districts: dict[str, set[str]]) -> DistrictSnapshotIndex:
        index = DistrictSnapshotIndex(
            generated_at=utc_now_iso(),
            districts={k: sorted(v) for k, v in sorted(districts.items())},
        )
        await self._store.write_index(index.to_record())
        self.invalidate()
        return index
