"""Turns an interval + target + notes into a persisted time entry.

Both the timer commit path and manual quick entry go through
`EntryMaterializer.materialize`, so the validation rules are identical:

1. ``end_time > start_time`` strictly, else `InvalidInterval`.
2. exactly one of project/category, else `MissingTarget`.
3. ``duration_seconds`` is always recomputed here as the floor of the
   wall-clock difference; a client-supplied value is ignored.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Any, Mapping, Optional

from tracklog.audit import (
    ACTION_ENTRY_CREATED,
    ACTION_ENTRY_DELETED,
    ACTION_ENTRY_UPDATED,
    ENTITY_TIME_ENTRY,
    AuditEvent,
    AuditSink,
    deliver,
)
from tracklog.db import EntryRow, TracklogDB
from tracklog.errors import EntryNotFound, InvalidInterval, WriteError
from tracklog.markers import TimerTarget
from tracklog.utils import duration_seconds, parse_client_datetime, parse_duration, to_iso

log = logging.getLogger("tracklog.entries")


@dataclass(frozen=True)
class EntryDraft:
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    project_id: Optional[int] = None
    category_id: Optional[int] = None
    notes: Optional[str] = None
    # Whatever the client claimed; never stored.
    duration_seconds: Optional[int] = None

    @classmethod
    def for_target(
        cls,
        target: TimerTarget,
        *,
        start_time: datetime,
        end_time: datetime,
        notes: Optional[str] = None,
    ) -> "EntryDraft":
        return cls(
            start_time=start_time,
            end_time=end_time,
            project_id=target.project_id,
            category_id=target.category_id,
            notes=notes,
        )


def normalize_notes(notes: Any) -> Optional[str]:
    text = str(notes or "").strip()
    return text or None


def validate_interval(start: Optional[datetime], end: Optional[datetime]) -> int:
    if start is None or end is None:
        raise InvalidInterval("Start and end time are required.")
    if end <= start:
        raise InvalidInterval("End time must be after start time.")
    return duration_seconds(start, end)


def validate_draft(draft: EntryDraft) -> tuple[TimerTarget, int]:
    duration = validate_interval(draft.start_time, draft.end_time)
    target = TimerTarget.from_ids(draft.project_id, draft.category_id)
    return target, duration


def _parse_time_field(payload: Mapping[str, Any], key: str, *, tz: tzinfo) -> Optional[datetime]:
    try:
        return parse_client_datetime(payload.get(key), tz=tz)
    except ValueError as e:
        raise InvalidInterval(f"Invalid {key.replace('_', ' ')}.") from e


def _end_from_duration(start: Optional[datetime], raw: Any) -> Optional[datetime]:
    seconds = parse_duration(raw)
    if seconds is None:
        raise InvalidInterval(f"Could not understand duration {raw!r}.")
    if start is None:
        return None
    return start + timedelta(seconds=seconds)


def _client_duration(raw: Any) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def draft_from_form(payload: Mapping[str, Any], *, tz: tzinfo) -> EntryDraft:
    """Quick entry: explicit start/end, or start plus a duration such as "2h 30m"."""
    start = _parse_time_field(payload, "start_time", tz=tz)
    end = _parse_time_field(payload, "end_time", tz=tz)
    if end is None and str(payload.get("duration") or "").strip():
        end = _end_from_duration(start, payload.get("duration"))
    return EntryDraft(
        start_time=start,
        end_time=end,
        project_id=payload.get("project_id") or None,
        category_id=payload.get("category_id") or None,
        notes=normalize_notes(payload.get("notes")),
        duration_seconds=_client_duration(payload.get("duration_seconds")),
    )


def merge_draft(existing: EntryRow, payload: Mapping[str, Any], *, tz: tzinfo) -> EntryDraft:
    """Edit form: fields missing from the payload keep their stored value."""
    start = _parse_time_field(payload, "start_time", tz=tz) if "start_time" in payload else existing.start
    end = _parse_time_field(payload, "end_time", tz=tz) if "end_time" in payload else existing.end
    if "project_id" in payload or "category_id" in payload:
        project_id = payload.get("project_id") or None
        category_id = payload.get("category_id") or None
    else:
        project_id, category_id = existing.project_id, existing.category_id
    notes = normalize_notes(payload.get("notes")) if "notes" in payload else existing.notes
    return EntryDraft(
        start_time=start,
        end_time=end,
        project_id=project_id,
        category_id=category_id,
        notes=notes,
        duration_seconds=_client_duration(payload.get("duration_seconds")),
    )


class EntryMaterializer:
    def __init__(
        self,
        db: TracklogDB,
        *,
        audit: AuditSink | None = None,
    ) -> None:
        self._db = db
        self._audit = audit

    def materialize(
        self,
        user_id: int,
        draft: EntryDraft,
        *,
        actor_id: int | None = None,
        ip_address: str | None = None,
    ) -> EntryRow:
        target, duration = validate_draft(draft)
        if draft.duration_seconds is not None and draft.duration_seconds != duration:
            log.debug("Ignoring client duration %s (computed %s)", draft.duration_seconds, duration)

        try:
            entry_id = self._db.insert_entry(
                user_id=user_id,
                project_id=target.project_id,
                category_id=target.category_id,
                start_time=to_iso(draft.start_time),  # type: ignore[arg-type]
                end_time=to_iso(draft.end_time),  # type: ignore[arg-type]
                duration_seconds=duration,
                notes=normalize_notes(draft.notes),
            )
        except sqlite3.Error as e:
            log.warning("Failed to save time entry for user_id=%s: %s", user_id, e)
            raise WriteError(f"Could not save the time entry: {e}") from e

        entry = self.get_entry(entry_id)
        log.info("Time entry %s saved user_id=%s duration=%ss", entry.id, user_id, duration)
        self._emit(
            AuditEvent(
                actor_user_id=actor_id if actor_id is not None else user_id,
                action=ACTION_ENTRY_CREATED,
                entity_type=ENTITY_TIME_ENTRY,
                entity_id=str(entry.id),
                new_values=entry.values(),
                ip_address=ip_address,
            )
        )
        return entry

    def update_entry(
        self,
        entry_id: int,
        draft: EntryDraft,
        *,
        actor_id: int,
        ip_address: str | None = None,
    ) -> EntryRow:
        before = self.get_entry(entry_id)
        target, duration = validate_draft(draft)
        try:
            updated = self._db.update_entry(
                entry_id=entry_id,
                project_id=target.project_id,
                category_id=target.category_id,
                start_time=to_iso(draft.start_time),  # type: ignore[arg-type]
                end_time=to_iso(draft.end_time),  # type: ignore[arg-type]
                duration_seconds=duration,
                notes=normalize_notes(draft.notes),
            )
        except sqlite3.Error as e:
            raise WriteError(f"Could not update the time entry: {e}") from e
        if not updated:
            raise EntryNotFound(f"Time entry {entry_id} not found.")

        after = self.get_entry(entry_id)
        self._emit(
            AuditEvent(
                actor_user_id=actor_id,
                action=ACTION_ENTRY_UPDATED,
                entity_type=ENTITY_TIME_ENTRY,
                entity_id=str(entry_id),
                old_values=before.values(),
                new_values=after.values(),
                ip_address=ip_address,
            )
        )
        return after

    def delete_entry(self, entry_id: int, *, actor_id: int, ip_address: str | None = None) -> EntryRow:
        before = self.get_entry(entry_id)
        try:
            deleted = self._db.delete_entry(entry_id)
        except sqlite3.Error as e:
            raise WriteError(f"Could not delete the time entry: {e}") from e
        if not deleted:
            raise EntryNotFound(f"Time entry {entry_id} not found.")

        log.info("Time entry %s deleted by user_id=%s", entry_id, actor_id)
        self._emit(
            AuditEvent(
                actor_user_id=actor_id,
                action=ACTION_ENTRY_DELETED,
                entity_type=ENTITY_TIME_ENTRY,
                entity_id=str(entry_id),
                old_values=before.values(),
                ip_address=ip_address,
            )
        )
        return before

    def get_entry(self, entry_id: int) -> EntryRow:
        entry = self._db.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(f"Time entry {entry_id} not found.")
        return entry

    def entry_covering(self, user_id: int, at: datetime) -> EntryRow | None:
        rows = self._db.list_entries(user_id=user_id, covering=to_iso(at), limit=1)
        return rows[0] if rows else None

    def entry_starting_at(self, user_id: int, at: datetime) -> EntryRow | None:
        stamp = to_iso(at)
        rows = self._db.list_entries(user_id=user_id, from_time=stamp, to_time=stamp, limit=1)
        return rows[0] if rows else None

    def _emit(self, event: AuditEvent) -> None:
        if self._audit is None:
            return
        deliver(self._audit, event)
