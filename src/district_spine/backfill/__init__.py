"""Backfill orchestration.

Architecture::

    job_manager.py          Job lifecycle, single-active-job, batched progress
    data_collector.py       Date-range collection through the guard layer
    analytics_generator.py  Rankings recomputation for existing snapshots
    recovery_manager.py     Resume interrupted jobs after a restart
    service.py              UnifiedBackfillService (operator entry point)
    factory.py              build_service (composition root)
"""

from district_spine.backfill.analytics_generator import AnalyticsGenerator, GenerationResult
from district_spine.backfill.data_collector import (
    CollectionOptions,
    CollectionPreview,
    CollectionResult,
    DataCollector,
)
from district_spine.backfill.factory import Registries, build_service, build_storage
from district_spine.backfill.job_manager import JobManager, OperatorContext
from district_spine.backfill.progress import ItemError, ProgressUpdate
from district_spine.backfill.recovery_manager import (
    RecoveryManager,
    RecoveryResult,
    RecoveryStatus,
)
from district_spine.backfill.service import UnifiedBackfillService

__all__ = [
    "AnalyticsGenerator",
    "CollectionOptions",
    "CollectionPreview",
    "CollectionResult",
    "DataCollector",
    "GenerationResult",
    "ItemError",
    "JobManager",
    "OperatorContext",
    "ProgressUpdate",
    "RecoveryManager",
    "RecoveryResult",
    "RecoveryStatus",
    "Registries",
    "UnifiedBackfillService",
    "build_service",
    "build_storage",
]
