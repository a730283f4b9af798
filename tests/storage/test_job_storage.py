"""Tests for backfill job storage, run against every backend.

Covers:
- create/get/update/delete with duplicate detection and immutable jobId
- Listing filters, newest-first ordering and pagination
- Active job lookup and checkpoints
- Retention cleanup of terminal jobs only
- Rate-limit record defaults and persistence
- Local backend tolerance of unreadable files
"""

from datetime import timedelta

import pytest

from district_spine.core.errors import JobNotFoundError, StorageError, ValidationError
from district_spine.core.timestamps import to_iso8601, utc_now
from district_spine.domain.models import (
    BackfillJob,
    JobCheckpoint,
    JobStatus,
    JobType,
    ListJobsOptions,
    RateLimitConfig,
)
from district_spine.execution.circuit_breaker import CircuitBreaker
from district_spine.storage.jobs import (
    FirestoreBackfillJobStorage,
    InMemoryBackfillJobStorage,
    LocalBackfillJobStorage,
)
from tests._support import read_json
from tests._support.fakes import FakeFirestoreClient, ServiceUnavailable


def make_job(job_id, created_at, *, status=JobStatus.PENDING, job_type=JobType.DATA_COLLECTION, completed_at=None):
    return BackfillJob(
        job_id=job_id,
        job_type=job_type,
        status=status,
        created_at=created_at,
        completed_at=completed_at,
    )


def days_ago(days):
    return to_iso8601(utc_now() - timedelta(days=days))


@pytest.fixture(params=["local", "memory", "firestore"])
def storage(request, tmp_path):
    if request.param == "local":
        return LocalBackfillJobStorage(tmp_path)
    if request.param == "memory":
        return InMemoryBackfillJobStorage()
    return FirestoreBackfillJobStorage(
        client=FakeFirestoreClient(), breaker=CircuitBreaker(name="jobs-test", failure_threshold=50)
    )


class TestJobCrud:
    """Test basic job persistence."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, storage):
        job = make_job("job-1", "2024-02-01T00:00:00+00:00")
        await storage.create_job(job)
        assert await storage.get_job("job-1") == job
        assert await storage.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, storage):
        await storage.create_job(make_job("job-1", "2024-02-01T00:00:00+00:00"))
        with pytest.raises(StorageError, match="already exists"):
            await storage.create_job(make_job("job-1", "2024-02-02T00:00:00+00:00"))

    @pytest.mark.asyncio
    async def test_update_merges_and_keeps_id(self, storage):
        await storage.create_job(make_job("job-1", "2024-02-01T00:00:00+00:00"))
        updated = await storage.update_job(
            "job-1", {"status": JobStatus.RUNNING, "started_at": "2024-02-01T00:01:00+00:00", "job_id": "other"}
        )
        assert updated.job_id == "job-1"
        assert updated.status == JobStatus.RUNNING
        stored = await storage.get_job("job-1")
        assert stored.started_at == "2024-02-01T00:01:00+00:00"
        assert await storage.get_job("other") is None

    @pytest.mark.asyncio
    async def test_update_missing_job(self, storage):
        with pytest.raises(JobNotFoundError):
            await storage.update_job("missing", {"status": JobStatus.RUNNING})

    @pytest.mark.asyncio
    async def test_delete(self, storage):
        await storage.create_job(make_job("job-1", "2024-02-01T00:00:00+00:00"))
        assert await storage.delete_job("job-1") is True
        assert await storage.delete_job("job-1") is False

    @pytest.mark.asyncio
    async def test_checkpoint(self, storage):
        await storage.create_job(make_job("job-1", "2024-02-01T00:00:00+00:00"))
        assert await storage.get_checkpoint("job-1") is None

        checkpoint = JobCheckpoint(
            last_processed_item="2024-01-30", last_processed_at="t", items_completed=["2024-01-31", "2024-01-30"]
        )
        await storage.update_checkpoint("job-1", checkpoint)
        assert await storage.get_checkpoint("job-1") == checkpoint
        assert await storage.get_checkpoint("missing") is None

    @pytest.mark.asyncio
    async def test_is_ready(self, storage):
        assert await storage.is_ready() is True


class TestListing:
    """Test list_jobs() and friends."""

    @pytest.fixture
    async def populated(self, storage):
        await storage.create_job(make_job("a", "2024-02-01T00:00:00+00:00", status=JobStatus.COMPLETED))
        await storage.create_job(
            make_job("b", "2024-02-03T00:00:00+00:00", status=JobStatus.RUNNING)
        )
        await storage.create_job(
            make_job("c", "2024-02-02T00:00:00+00:00", job_type=JobType.ANALYTICS_GENERATION)
        )
        await storage.create_job(make_job("d", "2024-02-04T00:00:00+00:00", status=JobStatus.FAILED))
        return storage

    @pytest.mark.asyncio
    async def test_newest_first(self, populated):
        assert [j.job_id for j in await populated.list_jobs()] == ["d", "b", "c", "a"]

    @pytest.mark.asyncio
    async def test_pagination(self, populated):
        page = await populated.list_jobs(ListJobsOptions(offset=1, limit=2))
        assert [j.job_id for j in page] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_filters(self, populated):
        by_status = await populated.list_jobs(
            ListJobsOptions(status=[JobStatus.COMPLETED, JobStatus.FAILED])
        )
        assert [j.job_id for j in by_status] == ["d", "a"]

        by_type = await populated.list_jobs(ListJobsOptions(job_type=[JobType.ANALYTICS_GENERATION]))
        assert [j.job_id for j in by_type] == ["c"]

        window = await populated.list_jobs(
            ListJobsOptions(start_date_from="2024-02-02", start_date_to="2024-02-03T23:59:59")
        )
        assert [j.job_id for j in window] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_active_job(self, populated):
        assert (await populated.get_active_job()).job_id == "b"
        await populated.update_job("b", {"status": JobStatus.COMPLETED})
        assert await populated.get_active_job() is None


class TestCleanup:
    """Test retention cleanup."""

    @pytest.mark.asyncio
    async def test_only_old_terminal_jobs_removed(self, storage):
        await storage.create_job(
            make_job("old-done", days_ago(60), status=JobStatus.COMPLETED, completed_at=days_ago(45))
        )
        await storage.create_job(
            make_job("recently-done", days_ago(60), status=JobStatus.FAILED, completed_at=days_ago(2))
        )
        await storage.create_job(make_job("old-cancelled", days_ago(40), status=JobStatus.CANCELLED))
        await storage.create_job(make_job("old-pending", days_ago(90)))
        await storage.create_job(make_job("old-running", days_ago(90), status=JobStatus.RUNNING))

        assert await storage.cleanup_old_jobs(30) == 2
        remaining = sorted(j.job_id for j in await storage.list_jobs())
        assert remaining == ["old-pending", "old-running", "recently-done"]


class TestRateLimitRecord:
    """Test the global rate-limit record."""

    @pytest.mark.asyncio
    async def test_defaults_written_on_first_read(self, storage):
        config = await storage.get_rate_limit_config()
        assert config == RateLimitConfig()
        assert await storage._load_rate_limit_config() == RateLimitConfig()

    @pytest.mark.asyncio
    async def test_set_and_get(self, storage):
        custom = RateLimitConfig(maxRequestsPerMinute=30, maxConcurrent=1, minDelayMs=500, maxDelayMs=5000)
        await storage.set_rate_limit_config(custom)
        assert await storage.get_rate_limit_config() == custom


class TestLocalBackend:
    """Local-only behaviour."""

    @pytest.mark.asyncio
    async def test_file_layout(self, tmp_path):
        storage = LocalBackfillJobStorage(tmp_path)
        await storage.create_job(make_job("job-1", "2024-02-01T00:00:00+00:00"))
        await storage.get_rate_limit_config()

        assert read_json(tmp_path / "backfill-jobs" / "job-1.json")["jobId"] == "job-1"
        assert read_json(tmp_path / "backfill-jobs" / "rate-limit-config.json")["maxConcurrent"] == 3

    @pytest.mark.asyncio
    async def test_unreadable_files_skipped(self, tmp_path):
        storage = LocalBackfillJobStorage(tmp_path)
        await storage.create_job(make_job("job-1", "2024-02-01T00:00:00+00:00"))
        (tmp_path / "backfill-jobs" / "broken.json").write_text("{")
        (tmp_path / "backfill-jobs" / "wrong-shape.json").write_text('{"jobId": 1}')

        assert [j.job_id for j in await storage.list_jobs()] == ["job-1"]

    @pytest.mark.asyncio
    async def test_invalid_job_id(self, tmp_path):
        storage = LocalBackfillJobStorage(tmp_path)
        assert await storage.get_job("../etc/passwd") is None
        with pytest.raises(ValidationError):
            await storage.create_job(make_job("../escape", "2024-02-01T00:00:00+00:00"))


class TestFirestoreBackend:
    """Firestore-only behaviour."""

    @pytest.mark.asyncio
    async def test_documents(self):
        client = FakeFirestoreClient()
        storage = FirestoreBackfillJobStorage(client=client)
        await storage.create_job(make_job("job-1", "2024-02-01T00:00:00+00:00"))
        await storage.get_rate_limit_config()

        assert client.docs["backfill-jobs/job-1"]["jobType"] == "data-collection"
        assert client.docs["config/rate-limit"]["minDelayMs"] == 2000

    @pytest.mark.asyncio
    async def test_outage_surfaces_as_storage_error(self):
        client = FakeFirestoreClient()
        storage = FirestoreBackfillJobStorage(client=client)
        client.faults["get"] = lambda path: ServiceUnavailable("down")

        with pytest.raises(StorageError) as exc_info:
            await storage.get_job("job-1")
        assert exc_info.value.retryable is True
        assert await storage.is_ready() is True
