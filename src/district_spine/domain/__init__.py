"""Domain layer: persisted records, collaborator protocols and ranking.

Architecture::

    models.py     pydantic records (BackfillJob, Snapshot, SnapshotManifest, ...)
    protocols.py  CollectionService / ValidationService / RankingService
    ranking.py    BordaCountRankingCalculator
"""

from district_spine.domain.models import (
    BackfillJob,
    BackfillRequest,
    JobCheckpoint,
    JobStatus,
    JobType,
    RateLimitConfig,
    Snapshot,
    SnapshotManifest,
    SnapshotMetadataRecord,
)
from district_spine.domain.protocols import CollectionService, FetchResult, RankingService
from district_spine.domain.ranking import BordaCountRankingCalculator

__all__ = [
    "BackfillJob",
    "BackfillRequest",
    "BordaCountRankingCalculator",
    "CollectionService",
    "FetchResult",
    "JobCheckpoint",
    "JobStatus",
    "JobType",
    "RankingService",
    "RateLimitConfig",
    "Snapshot",
    "SnapshotManifest",
    "SnapshotMetadataRecord",
]
