"""
Tests for timestamp utilities.
"""

from datetime import datetime, timedelta, timezone

from appmetrics.domain.utils.timestamps import (
    days_in_month,
    ensure_utc,
    format_period,
    month_start,
    parse_timestamp,
    to_iso8601,
)


def test_parse_timestamp_iso8601_with_z():
    """Test parsing ISO8601 timestamp with Z suffix."""
    result = parse_timestamp("2025-10-15T12:00:00Z")
    assert result == datetime(2025, 10, 15, 12, 0, tzinfo=timezone.utc)
    assert result.tzinfo == timezone.utc


def test_parse_timestamp_iso8601_with_offset_converts_to_utc():
    result = parse_timestamp("2025-10-15T14:00:00+02:00")
    assert result == datetime(2025, 10, 15, 12, 0, tzinfo=timezone.utc)
    assert result.utcoffset() == timedelta(0)


def test_parse_timestamp_iso8601_without_timezone():
    """Naive ISO strings are taken as UTC."""
    result = parse_timestamp("2025-10-15T12:00:00")
    assert result is not None
    assert result.tzinfo == timezone.utc


def test_parse_timestamp_unix_seconds():
    result = parse_timestamp(1697385600)
    assert result == datetime(2023, 10, 15, 16, 0, tzinfo=timezone.utc)


def test_parse_timestamp_unix_milliseconds():
    result = parse_timestamp(1697385600000)
    assert result == datetime(2023, 10, 15, 16, 0, tzinfo=timezone.utc)


def test_parse_timestamp_rejects_none_bool_and_garbage():
    assert parse_timestamp(None) is None
    assert parse_timestamp(True) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("not-a-date") is None


def test_ensure_utc_naive_and_aware():
    naive = datetime(2025, 1, 1, 8, 30)
    assert ensure_utc(naive).tzinfo == timezone.utc
    aware = datetime(2025, 1, 1, 10, 30, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(aware) == datetime(2025, 1, 1, 8, 30, tzinfo=timezone.utc)


def test_to_iso8601_uses_z_suffix():
    dt = datetime(2025, 10, 15, 12, 0, 0, tzinfo=timezone.utc)
    assert to_iso8601(dt) == "2025-10-15T12:00:00Z"
    assert to_iso8601(None) is None


def test_month_start_and_days_in_month():
    dt = datetime(2024, 2, 17, 9, 45, 12, tzinfo=timezone.utc)
    assert month_start(dt) == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert days_in_month(dt) == 29
    assert days_in_month(datetime(2025, 2, 3)) == 28
    assert days_in_month(datetime(2025, 12, 31)) == 31


def test_format_period():
    start = datetime(2025, 10, 1, tzinfo=timezone.utc)
    end = datetime(2025, 10, 2, 6, 30, tzinfo=timezone.utc)
    assert format_period(start, end) == "2025-10-01 00:00:00 to 2025-10-02 06:30:00"
