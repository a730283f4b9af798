"""Storage layer.

Architecture::

    snapshots/       SnapshotStore (two-phase commit) + local/gcs/firestore
    jobs/            BackfillJobStorage + local/memory/firestore
    availability.py  District → available-dates index (cached)
    cloud.py         SDK error classification + breaker-wrapped calls
    files.py         Atomic JSON file helpers
"""

from district_spine.storage.availability import (
    AvailabilityResult,
    DistrictAvailabilityIndex,
    DistrictSnapshotIndex,
    GCSIndexStore,
    LocalIndexStore,
)
from district_spine.storage.jobs import (
    BackfillJobStorage,
    FirestoreBackfillJobStorage,
    InMemoryBackfillJobStorage,
    LocalBackfillJobStorage,
)
from district_spine.storage.snapshots import (
    FirestoreSnapshotStore,
    GCSSnapshotStore,
    LocalSnapshotStore,
    SnapshotStore,
)

__all__ = [
    "AvailabilityResult",
    "BackfillJobStorage",
    "DistrictAvailabilityIndex",
    "DistrictSnapshotIndex",
    "FirestoreBackfillJobStorage",
    "FirestoreSnapshotStore",
    "GCSIndexStore",
    "GCSSnapshotStore",
    "InMemoryBackfillJobStorage",
    "LocalBackfillJobStorage",
    "LocalIndexStore",
    "LocalSnapshotStore",
    "SnapshotStore",
]
