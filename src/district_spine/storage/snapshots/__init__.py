"""Snapshot stores: one commit protocol, three backends."""

from district_spine.storage.snapshots.base import (
    MANIFEST_FILE,
    METADATA_FILE,
    RANKINGS_FILE,
    BatchResult,
    BatchWriteConfig,
    SnapshotStore,
    SnapshotWriteResult,
    district_file_name,
    is_valid_snapshot_id,
    parse_district_file_name,
    validate_district_id,
    validate_snapshot_id,
)
from district_spine.storage.snapshots.firestore import FirestoreSnapshotStore
from district_spine.storage.snapshots.gcs import GCSSnapshotStore
from district_spine.storage.snapshots.local import LocalSnapshotStore

__all__ = [
    "MANIFEST_FILE",
    "METADATA_FILE",
    "RANKINGS_FILE",
    "BatchResult",
    "BatchWriteConfig",
    "SnapshotStore",
    "SnapshotWriteResult",
    "district_file_name",
    "is_valid_snapshot_id",
    "parse_district_file_name",
    "validate_district_id",
    "validate_snapshot_id",
    "LocalSnapshotStore",
    "GCSSnapshotStore",
    "FirestoreSnapshotStore",
]
