"""Tests for district_spine.backfill.analytics_generator.

Covers:
- Rankings recomputed and written for each snapshot
- Missing or empty snapshots skipped; failures isolated
- Checkpoint resume and cancellation
- Preview of successful snapshots in a range
"""

import pytest

from district_spine.backfill.analytics_generator import AnalyticsGenerator, GenerationOptions
from district_spine.core.cancellation import CancellationToken
from district_spine.core.errors import NetworkError
from district_spine.domain.ranking import BordaCountRankingCalculator
from tests._support.fakes import make_snapshot


@pytest.fixture
def generator(snapshot_store):
    return AnalyticsGenerator(snapshot_store, BordaCountRankingCalculator())


@pytest.fixture
async def three_snapshots(snapshot_store):
    for snapshot_id in ("2024-01-01", "2024-01-02", "2024-01-03"):
        await snapshot_store.write_snapshot(make_snapshot(snapshot_id))
    return ["2024-01-01", "2024-01-02", "2024-01-03"]


class FailingRanking(BordaCountRankingCalculator):
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def build_rankings_data(self, districts, snapshot_id):
        if snapshot_id == self.fail_on:
            raise NetworkError("ranking backend unavailable")
        return super().build_rankings_data(districts, snapshot_id)


class TestGeneration:
    """Test generate_for_snapshots()."""

    @pytest.mark.asyncio
    async def test_writes_rankings(self, generator, snapshot_store, three_snapshots):
        result = await generator.generate_for_snapshots(three_snapshots)

        assert result.success is True
        assert result.processed_items == 3
        assert result.snapshot_ids == three_snapshots
        data = await snapshot_store.read_all_districts_rankings("2024-01-02")
        assert [r.overall_rank for r in data.rankings] == [1, 2]

    @pytest.mark.asyncio
    async def test_missing_and_empty_skipped(self, generator, snapshot_store):
        await snapshot_store.write_snapshot(make_snapshot("2024-01-01", ()))
        result = await generator.generate_for_snapshots(["2024-01-01", "2024-01-02"])

        assert result.skipped_items == 2
        assert result.processed_items == 0
        assert result.success is True

    @pytest.mark.asyncio
    async def test_failure_isolated(self, snapshot_store, three_snapshots):
        generator = AnalyticsGenerator(snapshot_store, FailingRanking(fail_on="2024-01-02"))
        checkpoints = []

        result = await generator.generate_for_snapshots(
            three_snapshots, checkpoint_callback=checkpoints.append
        )

        assert result.processed_items == 2
        assert result.failed_items == 1
        assert result.success is False
        assert result.errors[0].item_id == "2024-01-02"
        assert result.errors[0].is_retryable is True
        assert checkpoints == ["2024-01-01", "2024-01-03"]

    @pytest.mark.asyncio
    async def test_resume_from_checkpoint(self, generator, three_snapshots):
        updates = []
        result = await generator.generate_for_snapshots(
            three_snapshots,
            GenerationOptions(completed_items=["2024-01-01"]),
            progress_callback=updates.append,
        )

        assert result.skipped_items == 1
        assert result.snapshot_ids == ["2024-01-02", "2024-01-03"]
        assert updates[0].skipped_items == 1
        assert updates[-1].percent_complete == 100

    @pytest.mark.asyncio
    async def test_cancellation(self, generator, three_snapshots):
        token = CancellationToken()

        async def on_checkpoint(snapshot_id):
            token.cancel("operator")

        result = await generator.generate_for_snapshots(
            three_snapshots, cancel_token=token, checkpoint_callback=on_checkpoint
        )

        assert result.processed_items == 1
        assert result.cancelled is True
        assert result.success is False


class TestPreview:
    """Test preview_generation()."""

    @pytest.mark.asyncio
    async def test_successful_snapshots_in_range(self, generator, snapshot_store, three_snapshots):
        await snapshot_store.write_snapshot(make_snapshot("2024-01-04", errors=["District 61: x"]))

        preview = await generator.preview_generation("2024-01-02", "2024-01-31")

        assert preview.snapshot_ids == ["2024-01-02", "2024-01-03"]
        assert preview.total_items == 2
        assert preview.estimated_duration == 10
        assert preview.date_range == {"startDate": "2024-01-02", "endDate": "2024-01-03"}

    @pytest.mark.asyncio
    async def test_unbounded(self, generator, three_snapshots):
        preview = await generator.preview_generation()
        assert preview.snapshot_ids == three_snapshots

    @pytest.mark.asyncio
    async def test_empty_store(self, generator):
        preview = await generator.preview_generation("2024-01-01", "2024-01-31")
        assert preview.total_items == 0
        assert preview.date_range == {"startDate": "2024-01-01", "endDate": "2024-01-31"}
