"""
Shared pytest fixtures and configuration for district-spine tests.

This module provides:
- Temporary data directories
- A scripted fake collection service
- In-memory job storage and a local snapshot store
- Guards configured not to wait, so collection runs finish instantly

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    async def test_collects(collector, collection_service):
        result = await collector.collect_for_date_range("2024-01-01", "2024-01-03")
"""

import sys
from pathlib import Path

import pytest

# Ensure district_spine (src layout) and tests._support are importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from district_spine.backfill.data_collector import DataCollector
from district_spine.domain.ranking import BordaCountRankingCalculator
from district_spine.execution.circuit_breaker import CircuitBreaker
from district_spine.execution.concurrency import ConcurrencyLimiter
from district_spine.execution.rate_limit import RateLimiter, RateLimiterConfig
from district_spine.execution.retry import NoRetry
from district_spine.storage.jobs.memory import InMemoryBackfillJobStorage
from district_spine.storage.snapshots.base import BatchWriteConfig
from district_spine.storage.snapshots.local import LocalSnapshotStore
from tests._support.fakes import FakeCollectionService, no_sleep

NO_WAIT_LIMITS = RateLimiterConfig(
    max_requests=10_000,
    window_seconds=60.0,
    min_delay_seconds=0.0,
    max_delay_seconds=0.0,
    backoff_multiplier=1.0,
)


# =============================================================================
# Storage
# =============================================================================


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Empty data directory for local backends."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def snapshot_store(data_dir: Path) -> LocalSnapshotStore:
    """Local snapshot store with instant retries."""
    return LocalSnapshotStore(
        data_dir,
        batch_config=BatchWriteConfig(max_operations_per_batch=2, initial_backoff_seconds=0.0),
        sleep=no_sleep,
    )


@pytest.fixture
def job_storage() -> InMemoryBackfillJobStorage:
    return InMemoryBackfillJobStorage()


# =============================================================================
# Collaborators and guards
# =============================================================================


@pytest.fixture
def collection_service() -> FakeCollectionService:
    return FakeCollectionService()


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter("test-dashboard", NO_WAIT_LIMITS, sleep=no_sleep)


@pytest.fixture
def circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker(name="test-dashboard", failure_threshold=50, recovery_timeout=60.0)


@pytest.fixture
def concurrency_limiter() -> ConcurrencyLimiter:
    return ConcurrencyLimiter("test-collection", max_concurrent=2, queue_limit=10)


@pytest.fixture
def collector(
    collection_service: FakeCollectionService,
    snapshot_store: LocalSnapshotStore,
    rate_limiter: RateLimiter,
    circuit_breaker: CircuitBreaker,
    concurrency_limiter: ConcurrencyLimiter,
) -> DataCollector:
    """DataCollector over the fake service and a local store; no retries."""
    return DataCollector(
        collection_service,
        snapshot_store,
        rate_limiter=rate_limiter,
        circuit_breaker=circuit_breaker,
        concurrency_limiter=concurrency_limiter,
        configured_districts=["42", "61", "F"],
        ranking_service=BordaCountRankingCalculator(),
        retry_strategy=NoRetry(),
    )
