from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_DURATION_COLON = re.compile(r"^(\d{1,2}):(\d{2})$")
_DURATION_HOURS = re.compile(r"(\d+)\s*h")
_DURATION_MINUTES = re.compile(r"(\d+)\s*m")
_DURATION_PLAIN = re.compile(r"^(\d+)$")


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed width UTC text, so lexical order in SQLite matches time order.
    if value.tzinfo is None:
        raise ValueError("naive datetime cannot be stored")
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(raw: Optional[str]) -> Optional[datetime]:
    text = str(raw or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_client_datetime(raw: Optional[str], *, tz: tzinfo) -> Optional[datetime]:
    """Parse a form value; `datetime-local` values carry no offset and use `tz`."""
    text = str(raw or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def to_datetime_local(value: Optional[datetime], *, tz: tzinfo) -> str:
    if value is None:
        return ""
    return value.astimezone(tz).strftime("%Y-%m-%dT%H:%M")


def duration_seconds(start: datetime, end: datetime) -> int:
    return (end - start) // timedelta(seconds=1)


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def format_duration_human(seconds: int) -> str:
    seconds = max(0, int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}h {m}m" if m > 0 else f"{h}h"
    if m > 0:
        return f"{m}m {s}s" if s > 0 else f"{m}m"
    return f"{s}s"


def parse_duration(text: Optional[str]) -> Optional[int]:
    """Parse "2h 30m", "2h", "90m", "1:30" or a plain minute count into seconds."""
    raw = str(text or "").strip().lower()
    if not raw:
        return None

    m = _DURATION_COLON.match(raw)
    if m:
        hours, minutes = int(m.group(1)), int(m.group(2))
        if minutes >= 60:
            return None
        return hours * 3600 + minutes * 60

    total = 0
    matched = False
    hm = _DURATION_HOURS.search(raw)
    if hm:
        total += int(hm.group(1)) * 3600
        matched = True
    mm = _DURATION_MINUTES.search(raw)
    if mm:
        total += int(mm.group(1)) * 60
        matched = True
    if matched:
        return total

    pm = _DURATION_PLAIN.match(raw)
    if pm:
        return int(pm.group(1)) * 60
    return None

