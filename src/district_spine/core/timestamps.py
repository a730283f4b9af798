"""
Timestamp and calendar-date utilities (stdlib-only).

Job records store ISO 8601 UTC timestamps. Snapshot ids and collection
items are plain ``YYYY-MM-DD`` calendar dates.

STDLIB ONLY - NO PYDANTIC.
"""

import re
from datetime import UTC, date, datetime

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return utc_now().isoformat()


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to an aware datetime (naive input is taken as UTC)."""
    if s is None:
        return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def parse_iso_date(value: str) -> date | None:
    """Parse a strict ``YYYY-MM-DD`` string; None if malformed or not a real date."""
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def today_utc() -> date:
    """Today's calendar date in UTC."""
    return utc_now().date()
