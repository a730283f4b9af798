"""Tests for district_spine.backfill.factory.

Covers:
- Backend selection per storage provider
- Required settings enforced with ConfigError
- Named guards shared through the registries
"""

import pytest

from district_spine.backfill.factory import (
    COLLECTION_LIMITER,
    DASHBOARD_GUARD,
    Registries,
    build_service,
    build_storage,
)
from district_spine.backfill.service import UnifiedBackfillService
from district_spine.core.errors import ConfigError
from district_spine.core.settings import DistrictSpineSettings
from district_spine.domain.models import BackfillJob, JobType
from district_spine.storage.availability import GCSIndexStore, LocalIndexStore
from district_spine.storage.jobs import FirestoreBackfillJobStorage, LocalBackfillJobStorage
from district_spine.storage.snapshots import (
    FirestoreSnapshotStore,
    GCSSnapshotStore,
    LocalSnapshotStore,
)
from tests._support.fakes import (
    FakeCollectionService,
    FakeFirestoreClient,
    FakeGCSClient,
    make_snapshot,
)


def make_settings(data_dir, **overrides):
    return DistrictSpineSettings(_env_file=None, data_dir=str(data_dir), **overrides)


class TestBuildStorage:
    """Test build_storage()."""

    @pytest.mark.asyncio
    async def test_local(self, data_dir):
        snapshots, jobs, index = build_storage(make_settings(data_dir), Registries())

        assert isinstance(snapshots, LocalSnapshotStore)
        assert isinstance(jobs, LocalBackfillJobStorage)
        assert isinstance(index, LocalIndexStore)
        assert index.path == data_dir / "config" / "district-snapshot-index.json"

        await snapshots.write_snapshot(make_snapshot("2024-01-31"))
        assert (data_dir / "snapshots" / "2024-01-31" / "manifest.json").exists()

    def test_gcp_requires_bucket(self, data_dir):
        settings = make_settings(data_dir, storage_provider="gcp")
        with pytest.raises(ConfigError, match="DISTRICT_SPINE_GCS_BUCKET"):
            build_storage(
                settings,
                Registries(),
                gcs_client=FakeGCSClient(),
                firestore_client=FakeFirestoreClient(),
            )

    @pytest.mark.asyncio
    async def test_gcp(self, data_dir):
        gcs = FakeGCSClient()
        firestore = FakeFirestoreClient()
        registries = Registries()
        settings = make_settings(
            data_dir, storage_provider="gcp", gcs_bucket="district-data", gcs_prefix="prod/snapshots"
        )

        snapshots, jobs, index = build_storage(
            settings, registries, gcs_client=gcs, firestore_client=firestore
        )

        assert isinstance(snapshots, GCSSnapshotStore)
        assert isinstance(jobs, FirestoreBackfillJobStorage)
        assert isinstance(index, GCSIndexStore)
        assert set(registries.circuit_breakers.list_all()) == {
            "gcs-snapshot",
            "firestore-jobs",
            "gcs-availability-index",
        }

        await snapshots.write_snapshot(make_snapshot("2024-01-31"))
        assert "prod/snapshots/2024-01-31/manifest.json" in gcs.bucket("district-data").objects

        await jobs.create_job(
            BackfillJob(job_id="job-1", job_type=JobType.DATA_COLLECTION, created_at="2024-02-01T00:00:00+00:00")
        )
        assert "backfill-jobs/job-1" in firestore.docs

    @pytest.mark.asyncio
    async def test_firestore_without_bucket(self, data_dir):
        firestore = FakeFirestoreClient()
        settings = make_settings(data_dir, storage_provider="firestore", firestore_collection="district-snapshots")

        snapshots, jobs, index = build_storage(settings, Registries(), firestore_client=firestore)

        assert isinstance(snapshots, FirestoreSnapshotStore)
        assert isinstance(jobs, FirestoreBackfillJobStorage)
        assert isinstance(index, LocalIndexStore)

        await snapshots.write_snapshot(make_snapshot("2024-01-31"))
        assert "district-snapshots/2024-01-31" in firestore.docs

    def test_firestore_with_bucket_uses_gcs_index(self, data_dir):
        settings = make_settings(data_dir, storage_provider="firestore", gcs_bucket="district-data")
        _, _, index = build_storage(
            settings,
            Registries(),
            gcs_client=FakeGCSClient(),
            firestore_client=FakeFirestoreClient(),
        )
        assert isinstance(index, GCSIndexStore)

    def test_unknown_provider(self, data_dir):
        settings = make_settings(data_dir).model_copy(update={"storage_provider": "s3"})
        with pytest.raises(ConfigError, match="Unknown storage provider"):
            build_storage(settings, Registries(), firestore_client=FakeFirestoreClient())


class TestBuildService:
    """Test build_service()."""

    def test_builds_service_with_named_guards(self, data_dir):
        registries = Registries()
        service = build_service(
            make_settings(data_dir, configured_districts=["42", "61"]),
            FakeCollectionService(),
            registries=registries,
        )

        assert isinstance(service, UnifiedBackfillService)
        assert registries.rate_limiters.get(DASHBOARD_GUARD) is not None
        assert registries.circuit_breakers.get(DASHBOARD_GUARD) is not None
        assert registries.concurrency.get(COLLECTION_LIMITER).max_concurrent == 3

    def test_guards_shared_across_services(self, data_dir):
        registries = Registries()
        settings = make_settings(data_dir)

        build_service(settings, FakeCollectionService(), registries=registries)
        limiter = registries.rate_limiters.get(DASHBOARD_GUARD)
        breaker = registries.circuit_breakers.get(DASHBOARD_GUARD)
        build_service(settings, FakeCollectionService(), registries=registries)

        assert registries.rate_limiters.get(DASHBOARD_GUARD) is limiter
        assert registries.circuit_breakers.get(DASHBOARD_GUARD) is breaker

    @pytest.mark.asyncio
    async def test_injected_backends_skip_provider_lookup(self, data_dir, snapshot_store, job_storage):
        settings = make_settings(data_dir, storage_provider="gcp")

        service = build_service(
            settings,
            FakeCollectionService(),
            snapshot_store=snapshot_store,
            job_storage=job_storage,
            index_store=LocalIndexStore(data_dir),
        )

        await service.initialize()
        assert await service.list_jobs() == []
        await service.dispose()
