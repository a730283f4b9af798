"""Composition root: settings + collaborators → a ready UnifiedBackfillService.

``build_service`` owns every registry. Guards are named instances, so a
second job reuses the same bucket level and breaker history:

==========================  ==========================================
Registry name               Guard
==========================  ==========================================
``dashboard``               RateLimiter and CircuitBreaker for fetches
``collection``              ConcurrencyLimiter for dates in flight
``gcs-snapshot`` etc.       CircuitBreaker per storage backend
``district-availability``   IntermediateCache for the availability index
==========================  ==========================================

Storage by ``storage_provider``:

- ``local``: snapshots, jobs and the availability index under ``data_dir``
- ``gcp``: snapshots and availability index in GCS, jobs in Firestore
- ``firestore``: snapshots and jobs in Firestore; availability index in GCS
  when ``gcs_bucket`` is set, else under ``data_dir``

Example:
    >>> settings = DistrictSpineSettings(configured_districts=["42", "61"])
    >>> service = build_service(settings, MyDashboardCollector())
    >>> await service.initialize()
    >>> job = await service.create_job({"jobType": "data-collection",
    ...                                 "startDate": "2024-01-01",
    ...                                 "endDate": "2024-01-31"})
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from district_spine.core.cache import CacheRegistry
from district_spine.core.cancellation import CancellationRegistry
from district_spine.core.errors import ConfigError
from district_spine.core.logging import get_logger
from district_spine.core.settings import DistrictSpineSettings
from district_spine.domain.models import RateLimitConfig
from district_spine.domain.protocols import CollectionService, RankingService, ValidationService
from district_spine.domain.ranking import BordaCountRankingCalculator
from district_spine.execution.circuit_breaker import CircuitBreakerRegistry
from district_spine.execution.concurrency import ConcurrencyLimiterRegistry
from district_spine.execution.rate_limit import RateLimiterConfig, RateLimiterRegistry
from district_spine.backfill.analytics_generator import AnalyticsGenerator
from district_spine.backfill.data_collector import DataCollector
from district_spine.backfill.job_manager import JobManager
from district_spine.backfill.recovery_manager import RecoveryManager
from district_spine.backfill.service import UnifiedBackfillService
from district_spine.storage.availability import (
    DistrictAvailabilityIndex,
    GCSIndexStore,
    IndexStore,
    LocalIndexStore,
)
from district_spine.storage.jobs import (
    BackfillJobStorage,
    FirestoreBackfillJobStorage,
    LocalBackfillJobStorage,
)
from district_spine.storage.snapshots import (
    FirestoreSnapshotStore,
    GCSSnapshotStore,
    LocalSnapshotStore,
    SnapshotStore,
)

logger = get_logger(__name__)

DASHBOARD_GUARD = "dashboard"
COLLECTION_LIMITER = "collection"


@dataclass
class Registries:
    """Every named guard and cache the service uses."""

    rate_limiters: RateLimiterRegistry = field(default_factory=RateLimiterRegistry)
    circuit_breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    concurrency: ConcurrencyLimiterRegistry = field(default_factory=ConcurrencyLimiterRegistry)
    caches: CacheRegistry = field(default_factory=CacheRegistry)
    cancellations: CancellationRegistry = field(default_factory=CancellationRegistry)


def build_storage(
    settings: DistrictSpineSettings,
    registries: Registries,
    *,
    gcs_client: Any = None,
    firestore_client: Any = None,
) -> tuple[SnapshotStore, BackfillJobStorage, IndexStore]:
    """Snapshot store, job storage and availability index store for ``settings``.

    Raises:
        ConfigError: A required setting is missing for the chosen provider
    """
    breakers = registries.circuit_breakers
    threshold = settings.circuit_failure_threshold
    timeout = settings.circuit_recovery_timeout
    provider = settings.storage_provider

    if provider == "local":
        root = settings.local_root
        return LocalSnapshotStore(root), LocalBackfillJobStorage(root), LocalIndexStore(root)

    jobs = FirestoreBackfillJobStorage(
        settings.firestore_jobs_collection,
        project=settings.gcp_project,
        client=firestore_client,
        breaker=breakers.get_or_create("firestore-jobs", threshold, timeout),
    )

    if provider == "gcp":
        if not settings.gcs_bucket:
            raise ConfigError("DISTRICT_SPINE_GCS_BUCKET is required when storage_provider=gcp")
        snapshots: SnapshotStore = GCSSnapshotStore(
            settings.gcs_bucket,
            prefix=settings.gcs_prefix,
            project=settings.gcp_project,
            client=gcs_client,
            breaker=breakers.get_or_create("gcs-snapshot", threshold, timeout),
        )
    elif provider == "firestore":
        snapshots = FirestoreSnapshotStore(
            settings.firestore_collection,
            project=settings.gcp_project,
            client=firestore_client,
            breaker=breakers.get_or_create("firestore-snapshot", threshold, timeout),
        )
    else:
        raise ConfigError(f"Unknown storage provider: {provider!r}")

    index: IndexStore
    if settings.gcs_bucket:
        index = GCSIndexStore(
            settings.gcs_bucket,
            project=settings.gcp_project,
            client=gcs_client,
            breaker=breakers.get_or_create("gcs-availability-index", threshold, timeout),
        )
    else:
        index = LocalIndexStore(settings.local_root)
    return snapshots, jobs, index


def build_service(
    settings: DistrictSpineSettings,
    collection_service: CollectionService,
    *,
    ranking_service: RankingService | None = None,
    validation_service: ValidationService | None = None,
    registries: Registries | None = None,
    snapshot_store: SnapshotStore | None = None,
    job_storage: BackfillJobStorage | None = None,
    index_store: IndexStore | None = None,
    gcs_client: Any = None,
    firestore_client: Any = None,
) -> UnifiedBackfillService:
    """Wire a :class:`UnifiedBackfillService` from settings.

    Any of ``snapshot_store``, ``job_storage`` or ``index_store`` may be
    supplied to replace the backend ``settings`` would pick.
    """
    registries = registries or Registries(
        concurrency=ConcurrencyLimiterRegistry(
            queue_limit=settings.queue_limit,
            acquire_timeout=settings.acquire_timeout_seconds,
        )
    )
    if snapshot_store is None or job_storage is None or index_store is None:
        default_snapshots, default_jobs, default_index = build_storage(
            settings, registries, gcs_client=gcs_client, firestore_client=firestore_client
        )
        if snapshot_store is None:
            snapshot_store = default_snapshots
        if job_storage is None:
            job_storage = default_jobs
        if index_store is None:
            index_store = default_index

    ranking_service = ranking_service or BordaCountRankingCalculator()
    defaults = RateLimitConfig()
    rate_limiter = registries.rate_limiters.get_or_create(
        DASHBOARD_GUARD, RateLimiterConfig.from_record(defaults)
    )
    breaker = registries.circuit_breakers.get_or_create(
        DASHBOARD_GUARD, settings.circuit_failure_threshold, settings.circuit_recovery_timeout
    )
    limiter = registries.concurrency.get_or_create(COLLECTION_LIMITER, defaults.max_concurrent)
    availability = DistrictAvailabilityIndex(
        index_store,
        cache=registries.caches.get_or_create(
            "district-availability", max_entries=4, cleanup_interval_seconds=None
        ),
        ttl_seconds=settings.availability_cache_ttl_seconds,
    )

    job_manager = JobManager(
        job_storage,
        configured_districts=settings.configured_districts,
        stale_job_minutes=settings.stale_job_minutes,
        progress_flush_seconds=settings.progress_flush_seconds,
    )
    collector = DataCollector(
        collection_service,
        snapshot_store,
        rate_limiter=rate_limiter,
        circuit_breaker=breaker,
        concurrency_limiter=limiter,
        configured_districts=settings.configured_districts,
        ranking_service=ranking_service,
        validation_service=validation_service,
        availability_index=availability,
        seconds_per_date_estimate=settings.seconds_per_date_estimate,
    )
    generator = AnalyticsGenerator(
        snapshot_store,
        ranking_service,
        seconds_per_snapshot_estimate=settings.seconds_per_snapshot_estimate,
    )
    service = UnifiedBackfillService(
        job_storage=job_storage,
        job_manager=job_manager,
        snapshot_store=snapshot_store,
        data_collector=collector,
        analytics_generator=generator,
        recovery_manager=RecoveryManager(job_storage, job_manager),
        rate_limiter=rate_limiter,
        concurrency_limiter=limiter,
        cancellations=registries.cancellations,
        auto_recover_on_init=settings.auto_recover_on_init,
        job_retention_days=settings.job_retention_days,
    )
    logger.info(
        "factory.service_built",
        storage_provider=settings.storage_provider,
        snapshot_backend=snapshot_store.backend_name,
        job_backend=job_storage.backend_name,
        configured_districts=len(settings.configured_districts),
    )
    return service
