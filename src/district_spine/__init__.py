"""
District Spine - resumable backfill of district performance snapshots.

Subpackages:
- district_spine.core: errors, logging, settings, dates, cache
- district_spine.execution: rate limiting, concurrency limiting, circuit breaking
- district_spine.domain: persisted records, collaborator protocols, ranking
- district_spine.storage: snapshot and job storage backends
- district_spine.backfill: job orchestration and the service façade
"""

__version__ = "0.1.0"
