"""
Timestamp parsing and calendar utilities.

Upstream sources disagree on how they encode time: CloudWatch-style APIs emit
ISO8601 strings, billing exports use epoch seconds, and store analytics
report epoch milliseconds. Everything is normalized to aware UTC datetimes
here, along with the calendar arithmetic used by month-to-date ranges and
cost projection.
"""

import calendar
import logging
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Epoch values at or above this are milliseconds (year 2286 in seconds)
EPOCH_MILLIS_THRESHOLD = 10_000_000_000

_PERIOD_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_timestamp(value: Optional[Union[str, int, float]]) -> Optional[datetime]:
    """
    Parse an upstream timestamp into an aware UTC datetime.

    Accepts ISO8601 strings (a trailing ``Z`` is allowed, naive strings are
    read as UTC) and epoch numbers in seconds or milliseconds. Returns None
    for anything unparseable; booleans are rejected even though they are ints.

    >>> parse_timestamp("2025-10-15T12:00:00Z")
    datetime.datetime(2025, 10, 15, 12, 0, tzinfo=datetime.timezone.utc)
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return _from_iso(value) if value else None
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    return None


def _from_iso(text: str) -> Optional[datetime]:
    normalized = f"{text[:-1]}+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        logger.warning("timestamps.invalid_iso", extra={"value": text})
        return None
    return ensure_utc(parsed)


def _from_epoch(number: Union[int, float]) -> Optional[datetime]:
    seconds = number / 1000.0 if number >= EPOCH_MILLIS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OSError, OverflowError):
        logger.warning("timestamps.invalid_epoch", extra={"value": number})
        return None


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` in UTC; naive datetimes are assumed to already be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso8601(dt: Optional[datetime]) -> Optional[str]:
    """Render ``dt`` as ISO8601 in UTC with a ``Z`` suffix (None passes through)."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def month_start(dt: datetime) -> datetime:
    """First instant of the UTC month containing ``dt``."""
    return ensure_utc(dt).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def days_in_month(dt: datetime) -> int:
    utc = ensure_utc(dt)
    return calendar.monthrange(utc.year, utc.month)[1]


def format_period(start: datetime, end: datetime) -> str:
    """Label such as '2025-10-01 00:00:00 to 2025-10-02 00:00:00'."""
    return (
        f"{ensure_utc(start).strftime(_PERIOD_FORMAT)} "
        f"to {ensure_utc(end).strftime(_PERIOD_FORMAT)}"
    )
