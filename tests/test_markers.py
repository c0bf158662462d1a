from __future__ import annotations

import pytest

from conftest import CATEGORY_ADMIN, PROJECT_INTERNAL
from tracklog.db import MarkerRow
from tracklog.errors import MarkerInconsistency, MissingTarget, WriteError
from tracklog.markers import EMPTY_MARKER, TimerTarget, marker_from_row


def test_target_requires_exactly_one_id() -> None:
    with pytest.raises(MissingTarget):
        TimerTarget.from_ids()
    with pytest.raises(MissingTarget):
        TimerTarget.from_ids(project_id=1, category_id=2)
    with pytest.raises(MissingTarget):
        TimerTarget.from_ids(project_id="abc")

    target = TimerTarget.from_ids(project_id="3", category_id="")
    assert target.kind == "project"
    assert target.project_id == 3
    assert target.category_id is None


def test_target_dict_round_trip() -> None:
    target = TimerTarget.from_ids(category_id=CATEGORY_ADMIN)
    assert TimerTarget.from_dict(target.to_dict()) == target
    with pytest.raises(MissingTarget):
        TimerTarget.from_dict({"kind": "client", "id": 1})


def test_record_start_then_clear(markers, user_id, clock) -> None:
    written = markers.record_start(user_id, TimerTarget.from_ids(category_id=CATEGORY_ADMIN))
    assert written.active_timer_start == clock.now

    read = markers.read_marker(user_id)
    assert read == written
    assert read.target.category_id == CATEGORY_ADMIN

    markers.clear(user_id)
    assert markers.read_marker(user_id) == EMPTY_MARKER


def test_record_start_overwrites_previous_marker(markers, user_id, clock) -> None:
    markers.record_start(user_id, TimerTarget.from_ids(category_id=CATEGORY_ADMIN))
    clock.advance(minutes=5)
    markers.record_start(user_id, TimerTarget.from_ids(project_id=PROJECT_INTERNAL))

    read = markers.read_marker(user_id)
    assert read.active_timer_start == clock.now
    assert read.active_timer_project_id == PROJECT_INTERNAL
    assert read.active_timer_category_id is None


def test_clear_unknown_user_is_a_write_error(markers) -> None:
    with pytest.raises(WriteError):
        markers.clear(424242)


def test_record_start_with_unknown_target_is_a_write_error(markers, user_id) -> None:
    with pytest.raises(WriteError):
        markers.record_start(user_id, TimerTarget.from_ids(project_id=9999))
    assert not markers.read_marker(user_id).is_active


def test_read_marker_for_unknown_user_is_empty(markers) -> None:
    assert markers.read_marker(424242) == EMPTY_MARKER


def test_marker_row_without_target_is_inconsistent() -> None:
    row = MarkerRow(
        user_id=1,
        active_timer_start="2026-03-02T09:00:00.000000Z",
        active_timer_project_id=None,
        active_timer_category_id=None,
    )
    with pytest.raises(MarkerInconsistency):
        marker_from_row(row)


def test_marker_row_without_start_is_empty() -> None:
    row = MarkerRow(user_id=1, active_timer_start=None, active_timer_project_id=4, active_timer_category_id=None)
    assert marker_from_row(row) == EMPTY_MARKER


def test_marker_dict_uses_profile_field_names(markers, user_id) -> None:
    markers.record_start(user_id, TimerTarget.from_ids(project_id=PROJECT_INTERNAL))
    data = markers.read_marker(user_id).to_dict()
    assert set(data) == {"active_timer_start", "active_timer_project_id", "active_timer_category_id"}
    assert data["active_timer_start"].endswith("Z")
