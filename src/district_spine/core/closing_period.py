"""
Closing-period date resolution.

At the start of each month the dashboard keeps publishing the previous
month's figures while they are being finalised. A pull made on
``2024-02-03`` can therefore report data for January. Stored under the
pull date it would overwrite February's history with January's month-end
numbers, so such a snapshot is re-dated to the last day of the data month.

Architecture:
    ::

        as_of_date ──┐
                     ├──> parse ──> data month < as-of month ? ──┐
        data_month ──┘        (YYYY-MM | MM)                     │
                                                  yes ───────────┴─── no / bad input
                                                   │                     │
                                  last day of data month          as_of_date verbatim

Examples:
    >>> detector = ClosingPeriodDetector()
    >>> detector.detect("2024-02-03", "01").snapshot_date
    '2024-01-31'
    >>> detector.detect("2025-01-05", "12").snapshot_date
    '2024-12-31'
    >>> detector.detect("2024-01-15", "13").is_closing_period
    False

Guardrails:
    ❌ DON'T: Raise on malformed input
    ✅ DO: Degrade to the non-closing-period result and log the anomaly

Tags:
    dates, closing-period, snapshot-dating, pure-function
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from district_spine.core.logging import get_logger
from district_spine.core.timestamps import parse_iso_date

logger = get_logger(__name__)

_FULL_MONTH = re.compile(r"^(\d{4})-(\d{2})$")
_BARE_MONTH = re.compile(r"^(\d{1,2})$")


@dataclass(frozen=True)
class DataMonth:
    year: int
    month: int

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class ClosingPeriodResult:
    """Outcome of closing-period detection.

    Attributes:
        is_closing_period: Data month precedes the as-of month
        data_month: ``YYYY-MM`` the data represents (None if unknown)
        collection_date: The as-of date reported by the source
        snapshot_date: Date the snapshot must be stored under
        logical_date: Date the snapshot represents (same as snapshot_date)
    """

    is_closing_period: bool
    data_month: str | None
    collection_date: str
    snapshot_date: str
    logical_date: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_closing_period": self.is_closing_period,
            "data_month": self.data_month,
            "collection_date": self.collection_date,
            "snapshot_date": self.snapshot_date,
            "logical_date": self.logical_date,
        }


class ClosingPeriodDetector:
    """Resolve the date a pull of source data must be stored under."""

    def detect(self, as_of_date: str, data_month: str | None) -> ClosingPeriodResult:
        """Determine whether ``data_month`` is a closing period relative to ``as_of_date``.

        Never raises. Any parse failure yields the non-closing-period result
        dated ``as_of_date`` verbatim.
        """
        as_of = parse_iso_date(as_of_date) if isinstance(as_of_date, str) else None
        if as_of is None:
            logger.warning(
                "closing_period.invalid_as_of_date",
                as_of_date=as_of_date,
                data_month=data_month,
            )
            return self._fallback(as_of_date, None)

        own_month = str(DataMonth(as_of.year, as_of.month))
        parsed = self.parse_data_month(data_month, as_of.year, as_of.month)
        if parsed is None:
            if data_month:
                logger.warning(
                    "closing_period.invalid_data_month",
                    as_of_date=as_of_date,
                    data_month=data_month,
                )
            return self._fallback(as_of_date, own_month)

        if (parsed.year, parsed.month) >= (as_of.year, as_of.month):
            if (parsed.year, parsed.month) > (as_of.year, as_of.month):
                logger.warning(
                    "closing_period.data_month_after_as_of",
                    as_of_date=as_of_date,
                    data_month=str(parsed),
                )
            return self._fallback(as_of_date, str(parsed))

        last_day = self.get_last_day_of_month(parsed.year, parsed.month)
        snapshot_date = date(parsed.year, parsed.month, last_day).isoformat()

        logger.info(
            "closing_period.detected",
            as_of_date=as_of_date,
            data_month=str(parsed),
            snapshot_date=snapshot_date,
        )
        return ClosingPeriodResult(
            is_closing_period=True,
            data_month=str(parsed),
            collection_date=as_of_date,
            snapshot_date=snapshot_date,
            logical_date=snapshot_date,
        )

    @staticmethod
    def parse_data_month(
        value: str | None, reference_year: int, reference_month: int
    ) -> DataMonth | None:
        """Parse ``YYYY-MM`` or bare ``MM``.

        A bare month greater than ``reference_month`` belongs to the previous
        year (December data observed in January).
        """
        if not isinstance(value, str):
            return None
        value = value.strip()

        full = _FULL_MONTH.match(value)
        if full:
            year, month = int(full.group(1)), int(full.group(2))
        else:
            bare = _BARE_MONTH.match(value)
            if not bare:
                return None
            month = int(bare.group(1))
            year = reference_year - 1 if month > reference_month else reference_year

        if not 1 <= month <= 12:
            return None
        return DataMonth(year, month)

    @staticmethod
    def get_last_day_of_month(year: int, month: int) -> int:
        """Day zero of the following month."""
        first_of_next = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
        return (first_of_next - timedelta(days=1)).day

    @staticmethod
    def _fallback(as_of_date: str, data_month: str | None) -> ClosingPeriodResult:
        return ClosingPeriodResult(
            is_closing_period=False,
            data_month=data_month,
            collection_date=as_of_date,
            snapshot_date=as_of_date,
            logical_date=as_of_date,
        )
