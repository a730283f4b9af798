"""Tests for the district availability index.

Covers:
- Lookups never raise: missing, corrupt and unreachable indexes give reasons
- Reads are cached until the TTL passes or the index is republished
- Incremental updates and rebuilding from a snapshot store
- Local and GCS index locations
"""

import pytest

from district_spine.core.cache import IntermediateCache
from district_spine.storage.availability import (
    INDEX_OBJECT,
    DistrictAvailabilityIndex,
    GCSIndexStore,
    LocalIndexStore,
)
from tests._support import read_json
from tests._support.fakes import FakeGCSClient, ServiceUnavailable, make_snapshot


class CountingStore(LocalIndexStore):
    def __init__(self, root):
        super().__init__(root)
        self.reads = 0

    async def read_index(self):
        self.reads += 1
        return await super().read_index()


@pytest.fixture
def index_store(tmp_path):
    return CountingStore(tmp_path)


@pytest.fixture
def index(index_store):
    return DistrictAvailabilityIndex(index_store)


class TestLookups:
    """Test get_available_dates() and is_available()."""

    @pytest.mark.asyncio
    async def test_missing_index(self, index):
        result = await index.get_available_dates("42")
        assert result.available is False
        assert result.reason == "Index not found"

    @pytest.mark.asyncio
    async def test_unknown_district(self, index):
        await index.update("2024-01-31", ["42"])
        result = await index.get_available_dates("61")
        assert result.available is False
        assert result.reason == "No snapshots indexed for district 61"

    @pytest.mark.asyncio
    async def test_corrupt_index(self, index, index_store):
        index_store.path.parent.mkdir(parents=True)
        index_store.path.write_text("[broken")
        result = await index.get_available_dates("42")
        assert result.available is False
        assert result.reason.startswith("Index unavailable:")

    @pytest.mark.asyncio
    async def test_wrong_schema(self, index, index_store):
        index_store.path.parent.mkdir(parents=True)
        index_store.path.write_text('{"districts": []}')
        result = await index.get_available_dates("42")
        assert result.reason.startswith("Index unavailable:")

    @pytest.mark.asyncio
    async def test_dates_sorted(self, index):
        await index.update("2024-01-31", ["42"])
        await index.update("2024-01-15", ["42", "61"])

        result = await index.get_available_dates("42")
        assert result.available is True
        assert result.dates == ["2024-01-15", "2024-01-31"]
        assert await index.is_available("61", "2024-01-15") is True
        assert await index.is_available("61", "2024-01-31") is False


class TestCaching:
    """Test index caching."""

    @pytest.mark.asyncio
    async def test_reads_cached(self, index, index_store):
        await index.update("2024-01-31", ["42"])
        reads_after_update = index_store.reads

        for _ in range(3):
            await index.get_available_dates("42")
        assert index_store.reads == reads_after_update + 1

    @pytest.mark.asyncio
    async def test_update_invalidates(self, index):
        await index.update("2024-01-31", ["42"])
        assert (await index.get_available_dates("42")).dates == ["2024-01-31"]

        await index.update("2024-02-01", ["42"])
        assert (await index.get_available_dates("42")).dates == ["2024-01-31", "2024-02-01"]

    @pytest.mark.asyncio
    async def test_shared_cache_entry(self, index_store):
        cache = IntermediateCache(name="shared", cleanup_interval_seconds=None)
        index = DistrictAvailabilityIndex(index_store, cache=cache, ttl_seconds=60)
        await index.update("2024-01-31", ["42"])
        await index.get_index()
        assert len(cache) == 1
        index.invalidate()
        assert len(cache) == 0


class TestRebuild:
    """Test rebuild_from_store()."""

    @pytest.mark.asyncio
    async def test_rebuild(self, index, index_store, snapshot_store, data_dir):
        await snapshot_store.write_snapshot(make_snapshot("2024-01-30", ("42",)))
        await snapshot_store.write_snapshot(make_snapshot("2024-01-31", ("42", "61")))
        await snapshot_store.write_snapshot(make_snapshot("2024-02-01", ("61",)))
        (data_dir / "snapshots" / "2024-02-01" / "manifest.json").write_text("{bad")

        rebuilt = await index.rebuild_from_store(snapshot_store)

        assert rebuilt.districts == {"42": ["2024-01-30", "2024-01-31"], "61": ["2024-01-31"]}
        assert read_json(index_store.path)["districts"]["61"] == ["2024-01-31"]
        assert (await index.get_available_dates("42")).dates == ["2024-01-30", "2024-01-31"]


class TestGCSIndexStore:
    """Test the GCS index location."""

    @pytest.mark.asyncio
    async def test_round_trip_through_bucket(self):
        client = FakeGCSClient()
        index = DistrictAvailabilityIndex(GCSIndexStore("district-data", client=client))

        assert (await index.get_available_dates("42")).reason == "Index not found"
        await index.update("2024-01-31", ["42"])
        assert INDEX_OBJECT in client.bucket("district-data").objects
        assert await index.is_available("42", "2024-01-31") is True

    @pytest.mark.asyncio
    async def test_outage_reported_not_raised(self):
        client = FakeGCSClient()
        client.bucket("district-data").download_error = lambda key: ServiceUnavailable("down")
        index = DistrictAvailabilityIndex(GCSIndexStore("district-data", client=client))

        result = await index.get_available_dates("42")
        assert result.available is False
        assert "Index unavailable" in result.reason
