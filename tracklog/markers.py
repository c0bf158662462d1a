"""Durable active-timer marker stored on the user's profile row.

The marker is the source of truth for "is a timer running" across reloads,
logins and devices. Every write is a single UPDATE of the three marker
columns, so a reader sees either the old marker or the new one.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Literal, Optional

from tracklog.db import MarkerRow, TracklogDB
from tracklog.errors import MarkerInconsistency, MissingTarget, WriteError
from tracklog.utils import from_iso, to_iso, utc_now

log = logging.getLogger("tracklog.markers")

TARGET_PROJECT = "project"
TARGET_CATEGORY = "category"

TargetKind = Literal["project", "category"]


def _positive_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


@dataclass(frozen=True)
class TimerTarget:
    kind: TargetKind
    id: int

    @classmethod
    def from_ids(cls, project_id: Any = None, category_id: Any = None) -> "TimerTarget":
        pid = _positive_id(project_id)
        cid = _positive_id(category_id)
        if pid is not None and cid is not None:
            raise MissingTarget("Choose either a project or a category, not both.")
        if pid is not None:
            return cls(kind=TARGET_PROJECT, id=pid)
        if cid is not None:
            return cls(kind=TARGET_CATEGORY, id=cid)
        raise MissingTarget("Please select a project or category.")

    @property
    def project_id(self) -> Optional[int]:
        return self.id if self.kind == TARGET_PROJECT else None

    @property
    def category_id(self) -> Optional[int]:
        return self.id if self.kind == TARGET_CATEGORY else None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "id": self.id}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TimerTarget":
        kind = str(raw.get("kind", ""))
        if kind == TARGET_PROJECT:
            return cls.from_ids(project_id=raw.get("id"))
        if kind == TARGET_CATEGORY:
            return cls.from_ids(category_id=raw.get("id"))
        raise MissingTarget(f"Unknown target kind: {kind!r}")


@dataclass(frozen=True)
class ActiveTimerMarker:
    active_timer_start: Optional[datetime] = None
    active_timer_project_id: Optional[int] = None
    active_timer_category_id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.active_timer_start is not None

    @property
    def target(self) -> TimerTarget:
        return TimerTarget.from_ids(self.active_timer_project_id, self.active_timer_category_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_timer_start": to_iso(self.active_timer_start) if self.active_timer_start else None,
            "active_timer_project_id": self.active_timer_project_id,
            "active_timer_category_id": self.active_timer_category_id,
        }


EMPTY_MARKER = ActiveTimerMarker()


def marker_from_row(row: MarkerRow) -> ActiveTimerMarker:
    start = from_iso(row.active_timer_start)
    marker = ActiveTimerMarker(
        active_timer_start=start,
        active_timer_project_id=row.active_timer_project_id,
        active_timer_category_id=row.active_timer_category_id,
    )
    if start is None:
        return EMPTY_MARKER
    try:
        marker.target
    except MissingTarget as e:
        raise MarkerInconsistency(f"Active timer for user {row.user_id} has no single target: {e}") from e
    return marker


class MarkerStore:
    """Persistence adapter for the active-timer marker."""

    def __init__(self, db: TracklogDB, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    def record_start(self, user_id: int, target: TimerTarget) -> ActiveTimerMarker:
        started_at = self._clock()
        try:
            updated = self._db.set_active_timer(
                user_id,
                started_at=to_iso(started_at),
                project_id=target.project_id,
                category_id=target.category_id,
            )
        except sqlite3.Error as e:
            log.warning("Failed to record timer start for user_id=%s: %s", user_id, e)
            raise WriteError(f"Could not start the timer: {e}") from e
        if not updated:
            raise WriteError(f"Could not start the timer: unknown user {user_id}")
        log.info("Timer started user_id=%s target=%s:%s", user_id, target.kind, target.id)
        return ActiveTimerMarker(
            active_timer_start=started_at,
            active_timer_project_id=target.project_id,
            active_timer_category_id=target.category_id,
        )

    def clear(self, user_id: int) -> None:
        try:
            updated = self._db.clear_active_timer(user_id)
        except sqlite3.Error as e:
            log.warning("Failed to clear active timer for user_id=%s: %s", user_id, e)
            raise WriteError(f"Could not clear the active timer: {e}") from e
        if not updated:
            raise WriteError(f"Could not clear the active timer: unknown user {user_id}")
        log.debug("Active timer cleared user_id=%s", user_id)

    def read_marker(self, user_id: int) -> ActiveTimerMarker:
        row = self._db.get_active_timer(user_id)
        if row is None:
            return EMPTY_MARKER
        return marker_from_row(row)
