"""Backfill job storage backends."""

from district_spine.storage.jobs.base import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BackfillJobStorage,
    filter_jobs,
    merge_job,
)
from district_spine.storage.jobs.firestore import FirestoreBackfillJobStorage
from district_spine.storage.jobs.local import LocalBackfillJobStorage
from district_spine.storage.jobs.memory import InMemoryBackfillJobStorage

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "BackfillJobStorage",
    "FirestoreBackfillJobStorage",
    "InMemoryBackfillJobStorage",
    "LocalBackfillJobStorage",
    "filter_jobs",
    "merge_job",
]
