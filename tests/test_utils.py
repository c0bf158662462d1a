from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from tracklog.utils import (
    duration_seconds,
    format_duration,
    format_duration_human,
    from_iso,
    parse_client_datetime,
    parse_duration,
    to_datetime_local,
    to_iso,
)


def test_iso_text_sorts_like_time() -> None:
    early = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    late = early + timedelta(microseconds=1)
    tokyo = late.astimezone(ZoneInfo("Asia/Tokyo"))
    assert to_iso(early) < to_iso(tokyo)
    assert to_iso(early) == "2026-03-02T09:00:00.000000Z"
    assert from_iso(to_iso(tokyo)) == late


def test_naive_datetime_cannot_be_stored() -> None:
    with pytest.raises(ValueError):
        to_iso(datetime(2026, 3, 2, 9, 0))


def test_from_iso_blank_is_none() -> None:
    assert from_iso(None) is None
    assert from_iso("  ") is None


def test_client_datetime_uses_local_zone() -> None:
    tz = ZoneInfo("Europe/Berlin")
    parsed = parse_client_datetime("2026-07-01T10:30", tz=tz)
    assert parsed == datetime(2026, 7, 1, 8, 30, tzinfo=timezone.utc)
    assert to_datetime_local(parsed, tz=tz) == "2026-07-01T10:30"
    assert parse_client_datetime("", tz=tz) is None


def test_duration_is_floored() -> None:
    start = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    assert duration_seconds(start, start + timedelta(seconds=59, microseconds=999_999)) == 59
    assert duration_seconds(start, start + timedelta(hours=1)) == 3600


@pytest.mark.parametrize(
    ("seconds", "clock", "human"),
    [
        (0, "00:00:00", "0s"),
        (59, "00:00:59", "59s"),
        (90, "00:01:30", "1m 30s"),
        (120, "00:02:00", "2m"),
        (3600, "01:00:00", "1h"),
        (3900, "01:05:00", "1h 5m"),
        (100 * 3600, "100:00:00", "100h"),
    ],
)
def test_format_duration(seconds, clock, human) -> None:
    assert format_duration(seconds) == clock
    assert format_duration_human(seconds) == human


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1:30", 5400),
        ("2h 30m", 9000),
        ("2h", 7200),
        ("45m", 2700),
        ("90", 5400),
        ("", None),
        ("1:75", None),
        ("later", None),
    ],
)
def test_parse_duration(text, expected) -> None:
    assert parse_duration(text) == expected
