from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import CATEGORY_MEETINGS, PROJECT_INTERNAL
from tracklog.audit import (
    ACTION_ENTRY_CREATED,
    ACTION_ENTRY_DELETED,
    ACTION_ENTRY_UPDATED,
    ENTITY_TIME_ENTRY,
    AuditSink,
    DatabaseAuditSink,
)
from tracklog.entries import EntryDraft, EntryMaterializer, draft_from_form, merge_draft
from tracklog.errors import EntryNotFound, InvalidInterval, MissingTarget, WriteError

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingSink(AuditSink):
    name = "recording"

    def __init__(self) -> None:
        self.events = []

    def notify(self, event) -> None:
        self.events.append(event)


class BrokenSink(AuditSink):
    name = "broken"

    def notify(self, event) -> None:
        raise RuntimeError("audit store down")


def _draft(**overrides) -> EntryDraft:
    values = dict(start_time=T0, end_time=T0 + timedelta(hours=1), project_id=PROJECT_INTERNAL)
    values.update(overrides)
    return EntryDraft(**values)


def test_materialize_computes_duration(materializer, user_id) -> None:
    entry = materializer.materialize(
        user_id,
        _draft(end_time=T0 + timedelta(minutes=90, seconds=59, microseconds=999_999), duration_seconds=12),
    )
    assert entry.duration_seconds == 90 * 60 + 59
    assert entry.project_name == "Internal"
    assert entry.username == "alice"


def test_interval_is_checked_before_target(materializer, user_id, db) -> None:
    with pytest.raises(InvalidInterval):
        materializer.materialize(user_id, _draft(end_time=T0 - timedelta(minutes=30), project_id=None))
    assert db.list_entries(user_id=user_id) == []


def test_zero_length_interval_is_rejected(materializer, user_id) -> None:
    with pytest.raises(InvalidInterval):
        materializer.materialize(user_id, _draft(end_time=T0))


def test_missing_or_double_target_is_rejected(materializer, user_id) -> None:
    with pytest.raises(MissingTarget):
        materializer.materialize(user_id, _draft(project_id=None))
    with pytest.raises(MissingTarget):
        materializer.materialize(user_id, _draft(category_id=CATEGORY_MEETINGS))


def test_store_rejection_is_a_write_error(materializer, user_id) -> None:
    with pytest.raises(WriteError):
        materializer.materialize(user_id, _draft(project_id=9999))


def test_audit_trail_for_create_update_delete(db, user_id, admin_id) -> None:
    materializer = EntryMaterializer(db, audit=DatabaseAuditSink(db))
    entry = materializer.materialize(user_id, _draft(notes="draft"), ip_address="10.0.0.1")

    updated = materializer.update_entry(
        entry.id,
        _draft(category_id=CATEGORY_MEETINGS, project_id=None, end_time=T0 + timedelta(hours=2)),
        actor_id=admin_id,
    )
    assert updated.duration_seconds == 7200
    assert updated.category_id == CATEGORY_MEETINGS
    assert updated.notes is None

    materializer.delete_entry(entry.id, actor_id=admin_id)
    with pytest.raises(EntryNotFound):
        materializer.get_entry(entry.id)

    logs = db.list_audit_logs(entity_type=ENTITY_TIME_ENTRY, entity_id=str(entry.id))
    assert [r.action for r in logs] == [ACTION_ENTRY_CREATED, ACTION_ENTRY_UPDATED, ACTION_ENTRY_DELETED]
    created, changed, deleted = logs
    assert created.user_id == user_id
    assert created.ip_address == "10.0.0.1"
    assert created.new_values["notes"] == "draft"
    assert changed.user_id == admin_id
    assert changed.old_values["project_id"] == PROJECT_INTERNAL
    assert changed.new_values["category_id"] == CATEGORY_MEETINGS
    assert deleted.old_values["duration_seconds"] == 7200
    assert deleted.new_values is None


def test_audit_failure_does_not_undo_entry(db, user_id) -> None:
    materializer = EntryMaterializer(db, audit=BrokenSink())
    entry = materializer.materialize(user_id, _draft())
    assert db.get_entry(entry.id) is not None


def test_audit_event_carries_actor(db, user_id, admin_id) -> None:
    sink = RecordingSink()
    materializer = EntryMaterializer(db, audit=sink)
    materializer.materialize(user_id, _draft(), actor_id=admin_id)
    assert len(sink.events) == 1
    assert sink.events[0].actor_user_id == admin_id
    assert sink.events[0].action == ACTION_ENTRY_CREATED


def test_update_missing_entry(materializer) -> None:
    with pytest.raises(EntryNotFound):
        materializer.update_entry(77, _draft(), actor_id=1)


def test_update_validates_like_create(materializer, user_id) -> None:
    entry = materializer.materialize(user_id, _draft())
    with pytest.raises(InvalidInterval):
        materializer.update_entry(entry.id, _draft(end_time=T0), actor_id=user_id)
    assert materializer.get_entry(entry.id).duration_seconds == 3600


def test_entry_covering(materializer, user_id) -> None:
    entry = materializer.materialize(user_id, _draft())
    assert materializer.entry_covering(user_id, T0).id == entry.id
    assert materializer.entry_covering(user_id, T0 + timedelta(minutes=59)).id == entry.id
    assert materializer.entry_covering(user_id, T0 + timedelta(hours=1)) is None
    assert materializer.entry_covering(user_id, T0 - timedelta(seconds=1)) is None


def test_quick_entry_with_duration() -> None:
    tz = ZoneInfo("Asia/Tokyo")
    draft = draft_from_form(
        {"start_time": "2026-03-02T09:00", "duration": "1h 30m", "category_id": CATEGORY_MEETINGS, "notes": " "},
        tz=tz,
    )
    assert draft.start_time == datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
    assert draft.end_time == datetime(2026, 3, 2, 1, 30, tzinfo=timezone.utc)
    assert draft.category_id == CATEGORY_MEETINGS
    assert draft.project_id is None
    assert draft.notes is None


def test_quick_entry_prefers_explicit_end() -> None:
    draft = draft_from_form(
        {"start_time": "2026-03-02T09:00:00Z", "end_time": "2026-03-02T09:20:00Z", "duration": "2h", "project_id": 1},
        tz=timezone.utc,
    )
    assert draft.end_time == datetime(2026, 3, 2, 9, 20, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "payload",
    [
        {"start_time": "yesterday", "end_time": "2026-03-02T09:20"},
        {"start_time": "2026-03-02T09:00", "duration": "soon"},
    ],
)
def test_quick_entry_rejects_unreadable_input(payload) -> None:
    with pytest.raises(InvalidInterval):
        draft_from_form(payload, tz=timezone.utc)


def test_merge_draft_keeps_unspecified_fields(materializer, user_id) -> None:
    entry = materializer.materialize(user_id, _draft(notes="keep me"))

    draft = merge_draft(entry, {"end_time": "2026-03-02T11:00:00Z"}, tz=timezone.utc)
    assert draft.start_time == T0
    assert draft.end_time == T0 + timedelta(hours=2)
    assert draft.project_id == PROJECT_INTERNAL
    assert draft.notes == "keep me"

    switched = merge_draft(entry, {"category_id": CATEGORY_MEETINGS}, tz=timezone.utc)
    assert switched.project_id is None
    assert switched.category_id == CATEGORY_MEETINGS
