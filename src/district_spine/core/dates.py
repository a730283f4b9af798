"""Date-range validation and expansion for collection jobs.

The external dashboard lags by one to two days, so a range must end strictly
before today: same-day data is never trusted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from district_spine.core.timestamps import parse_iso_date, today_utc


class DateRangeErrorCode(str, Enum):
    INVALID_DATE_FORMAT = "INVALID_DATE_FORMAT"
    START_AFTER_END = "START_AFTER_END"
    END_NOT_BEFORE_TODAY = "END_NOT_BEFORE_TODAY"


@dataclass(frozen=True)
class DateRangeValidation:
    is_valid: bool
    error: str | None = None
    code: DateRangeErrorCode | None = None


def validate_date_range(
    start_date: str, end_date: str, *, today: date | None = None
) -> DateRangeValidation:
    """Check both dates are real ``YYYY-MM-DD`` dates, start <= end < today."""
    start = parse_iso_date(start_date)
    if start is None:
        return DateRangeValidation(
            False,
            f"Invalid start date format: {start_date!r}. Expected YYYY-MM-DD",
            DateRangeErrorCode.INVALID_DATE_FORMAT,
        )
    end = parse_iso_date(end_date)
    if end is None:
        return DateRangeValidation(
            False,
            f"Invalid end date format: {end_date!r}. Expected YYYY-MM-DD",
            DateRangeErrorCode.INVALID_DATE_FORMAT,
        )
    if start > end:
        return DateRangeValidation(
            False,
            "Start date must be before or equal to end date",
            DateRangeErrorCode.START_AFTER_END,
        )
    today = today or today_utc()
    if end >= today:
        return DateRangeValidation(
            False,
            "End date must be before today (data is typically delayed by 1-2 days)",
            DateRangeErrorCode.END_NOT_BEFORE_TODAY,
        )
    return DateRangeValidation(True)


def generate_date_range(start_date: str, end_date: str, *, newest_first: bool = True) -> list[str]:
    """Every calendar date from start to end inclusive.

    Returns most-recent-first unless ``newest_first`` is False. An empty list
    when either bound is malformed or start > end.
    """
    start = parse_iso_date(start_date)
    end = parse_iso_date(end_date)
    if start is None or end is None or start > end:
        return []

    span = (end - start).days
    dates = [(start + timedelta(days=offset)).isoformat() for offset in range(span + 1)]
    if newest_first:
        dates.reverse()
    return dates
