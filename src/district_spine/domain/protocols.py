"""
Collaborator protocols consumed by the backfill engine.

The engine never scrapes, validates payloads, or computes statistics
itself. It talks to those services through the structural contracts
below, so tests and alternative deployments can plug in any object with
the right shape.

Manifesto:
    - **Decoupling:** The collector depends on shape, not implementation
    - **Typed outcomes:** A fetch reports per-district failures as typed
      errors, never as free text to be re-parsed

Architecture:
    ::

        protocols.py
        ├── CollectionService  : fetch_for_date(date, districts) → FetchResult
        ├── ValidationService  : validate(payload) → ValidationReport
        └── RankingService     : calculate_rankings / get_ranking_version / build_rankings_data

    Consumers:
        backfill/data_collector.py, backfill/analytics_generator.py

Guardrails:
    ❌ DON'T: Return a partially filled FetchResult with failures as strings
    ✅ DO: Put a SpineError subclass in ``failures`` for every failed district

    ❌ DON'T: Raise for a single district's missing data
    ✅ DO: Raise only when the whole fetch failed (network, throttling, 5xx)

Tags:
    protocol, collaborator, collection, validation, ranking
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from district_spine.domain.models import AllDistrictsRankingsData, DistrictStatistics


@dataclass
class FetchResult:
    """Outcome of fetching one date from the external source.

    Attributes:
        records: Statistics for every district fetched successfully
        failures: District id → typed error for each district that failed
        data_month: Month the data represents (``YYYY-MM`` or ``MM``), if reported
        as_of_date: The source's own "as of" date for this data, if reported
        source: Label stored in snapshot metadata
    """

    records: list[DistrictStatistics] = field(default_factory=list)
    failures: dict[str, BaseException] = field(default_factory=dict)
    data_month: str | None = None
    as_of_date: str | None = None
    source: str = "dashboard"

    @property
    def all_failed(self) -> bool:
        return not self.records


@dataclass
class ValidationReport:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@runtime_checkable
class CollectionService(Protocol):
    """Scraping/collection boundary.

    Raises a transient :class:`~district_spine.core.errors.SpineError` when the
    whole date could not be fetched.
    """

    async def fetch_for_date(self, date: str, districts: list[str]) -> FetchResult: ...


@runtime_checkable
class ValidationService(Protocol):
    def validate(self, payload: dict[str, Any]) -> ValidationReport: ...


@runtime_checkable
class RankingService(Protocol):
    async def calculate_rankings(
        self, districts: list[DistrictStatistics]
    ) -> list[DistrictStatistics]: ...

    def get_ranking_version(self) -> str: ...

    def build_rankings_data(
        self, ranked: list[DistrictStatistics], snapshot_id: str
    ) -> AllDistrictsRankingsData:
        """Shape ranked districts into the all-districts rankings record."""


__all__ = [
    "CollectionService",
    "FetchResult",
    "RankingService",
    "ValidationReport",
    "ValidationService",
]
