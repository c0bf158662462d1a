"""Timer lifecycle for one client session.

States::

    idle --start--> running --stop--> stopped_pending_review --commit/discard--> idle
    idle --resume (marker present)--> running

`start` only transitions after the marker write is acknowledged, `commit`
saves the entry before the marker is cleared, and the elapsed display is
always recomputed from the anchor timestamp, never accumulated per tick.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from tracklog.db import EntryRow
from tracklog.entries import EntryDraft, EntryMaterializer
from tracklog.errors import MarkerInconsistency, MissingTarget, TimerStateError, WriteError
from tracklog.markers import ActiveTimerMarker, MarkerStore, TimerTarget
from tracklog.utils import duration_seconds, format_duration, from_iso, to_iso, utc_now

log = logging.getLogger("tracklog.timer")


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PENDING_REVIEW = "stopped_pending_review"


@dataclass(frozen=True)
class TimerSnapshot:
    state: TimerState = TimerState.IDLE
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    target: Optional[TimerTarget] = None
    elapsed_seconds: int = 0
    stale_marker_suspected: bool = False

    @property
    def running(self) -> bool:
        return self.state is TimerState.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "running": self.running,
            "started_at": to_iso(self.started_at) if self.started_at else None,
            "stopped_at": to_iso(self.stopped_at) if self.stopped_at else None,
            "target": self.target.to_dict() if self.target else None,
            "elapsed_seconds": self.elapsed_seconds,
            "display": format_duration(self.elapsed_seconds),
            "stale_marker_suspected": self.stale_marker_suspected,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "TimerSnapshot":
        """Rebuild a snapshot kept in the session cookie; anything unusable is idle."""
        if not isinstance(raw, dict):
            return IDLE
        try:
            state = TimerState(str(raw.get("state", TimerState.IDLE.value)))
            target = TimerTarget.from_dict(raw["target"]) if raw.get("target") else None
            snapshot = cls(
                state=state,
                started_at=from_iso(raw.get("started_at")),
                stopped_at=from_iso(raw.get("stopped_at")),
                target=target,
                elapsed_seconds=max(0, int(raw.get("elapsed_seconds") or 0)),
                stale_marker_suspected=bool(raw.get("stale_marker_suspected")),
            )
        except (ValueError, TypeError, KeyError, MissingTarget):
            log.warning("Discarding unreadable timer snapshot from session")
            return IDLE
        if state is not TimerState.IDLE and (snapshot.started_at is None or snapshot.target is None):
            return IDLE
        if state is TimerState.PENDING_REVIEW and snapshot.stopped_at is None:
            return IDLE
        return snapshot


IDLE = TimerSnapshot()


@dataclass(frozen=True)
class CommitResult:
    entry: EntryRow
    marker_cleared: bool


class TimerSession:
    def __init__(
        self,
        user_id: int,
        *,
        markers: MarkerStore,
        materializer: EntryMaterializer,
        clock: Callable[[], datetime] = utc_now,
        snapshot: TimerSnapshot | None = None,
        stale_after: timedelta | None = None,
    ) -> None:
        self.user_id = int(user_id)
        self._markers = markers
        self._materializer = materializer
        self._clock = clock
        self._snapshot = snapshot or IDLE
        self._stale_after = stale_after

    @property
    def state(self) -> TimerState:
        return self._snapshot.state

    def current_snapshot(self) -> TimerSnapshot:
        return self.refresh()

    def refresh(self) -> TimerSnapshot:
        snap = self._snapshot
        if snap.running and snap.started_at is not None:
            self._snapshot = replace(snap, elapsed_seconds=self._elapsed_since(snap.started_at))
        return self._snapshot

    def _elapsed_since(self, started_at: datetime) -> int:
        return max(0, duration_seconds(started_at, self._clock()))

    def _require(self, expected: TimerState, action: str) -> None:
        if self._snapshot.state is not expected:
            raise TimerStateError(f"Cannot {action} while the timer is {self._snapshot.state.value}.")

    def start(self, target: TimerTarget) -> TimerSnapshot:
        self._require(TimerState.IDLE, "start")
        if not isinstance(target, TimerTarget):
            raise MissingTarget("Please select a project or category.")
        marker = self._markers.record_start(self.user_id, target)
        self._snapshot = TimerSnapshot(
            state=TimerState.RUNNING,
            started_at=marker.active_timer_start,
            target=target,
        )
        return self.refresh()

    def stop(self) -> TimerSnapshot:
        self._require(TimerState.RUNNING, "stop")
        snap = self._snapshot
        stopped_at = self._clock()
        self._snapshot = replace(
            snap,
            state=TimerState.PENDING_REVIEW,
            stopped_at=stopped_at,
            elapsed_seconds=max(0, duration_seconds(snap.started_at, stopped_at)),  # type: ignore[arg-type]
        )
        log.debug("Timer stopped user_id=%s elapsed=%ss", self.user_id, self._snapshot.elapsed_seconds)
        return self._snapshot

    def commit(
        self,
        notes: str | None = None,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        target: TimerTarget | None = None,
        actor_id: int | None = None,
        ip_address: str | None = None,
    ) -> CommitResult:
        """Persist the reviewed interval, then clear the marker.

        Any failure before the entry is saved leaves the session pending
        review so the captured interval can be retried. An interval whose
        marker is gone, replaced or already saved is never saved again;
        the session goes idle and `TimerStateError` is raised.
        """
        self._require(TimerState.PENDING_REVIEW, "commit")
        snap = self._snapshot
        if not self._owns_marker(self._markers.read_marker(self.user_id)):
            self._snapshot = IDLE
            raise TimerStateError("This timer was already saved or discarded.")
        saved = self._materializer.entry_starting_at(self.user_id, snap.started_at)  # type: ignore[arg-type]
        if saved is not None:
            log.warning("Timer for user_id=%s was already saved as entry %s", self.user_id, saved.id)
            self._snapshot = IDLE
            raise TimerStateError("This timer was already saved.")

        draft = EntryDraft.for_target(
            target or snap.target,  # type: ignore[arg-type]
            start_time=start_time or snap.started_at,  # type: ignore[arg-type]
            end_time=end_time or snap.stopped_at,  # type: ignore[arg-type]
            notes=notes,
        )
        entry = self._materializer.materialize(self.user_id, draft, actor_id=actor_id, ip_address=ip_address)
        cleared = self._clear_marker("commit")
        self._snapshot = IDLE
        return CommitResult(entry=entry, marker_cleared=cleared)

    def discard(self) -> bool:
        """Drop a stopped timer. Always returns to idle; reports whether the marker clear succeeded.

        The stored marker is checked first: a timer running anywhere for
        this user must be stopped before it can be discarded, and a marker
        written by a newer start is left alone. A marker with no single
        target cannot be resumed, so discarding clears it.
        """
        try:
            marker = self._markers.read_marker(self.user_id)
        except MarkerInconsistency as e:
            log.warning("Clearing unreadable active timer for user_id=%s: %s", self.user_id, e)
            if self._snapshot.running:
                self._snapshot = IDLE
            marker = None

        if marker is not None:
            self.resume_from_marker(marker)
            if self._snapshot.running:
                raise TimerStateError("Stop the timer before discarding it.")
            if marker.is_active and not self._owns_marker(marker):
                log.info("Discard left a newer timer for user_id=%s in place", self.user_id)
                self._snapshot = IDLE
                return True

        cleared = self._clear_marker("discard")
        self._snapshot = IDLE
        return cleared

    def _owns_marker(self, marker: ActiveTimerMarker) -> bool:
        snap = self._snapshot
        return marker.is_active and marker.active_timer_start == snap.started_at

    def _clear_marker(self, reason: str) -> bool:
        try:
            self._markers.clear(self.user_id)
        except WriteError as e:
            log.warning("Active timer left set after %s for user_id=%s: %s", reason, self.user_id, e)
            return False
        return True

    def resume(self) -> TimerSnapshot:
        return self.resume_from_marker(self._markers.read_marker(self.user_id))

    def resume_from_marker(self, marker: ActiveTimerMarker) -> TimerSnapshot:
        snap = self._snapshot
        if snap.state is TimerState.PENDING_REVIEW:
            return snap

        if not marker.is_active:
            if snap.running:
                log.info("Timer for user_id=%s was stopped in another session", self.user_id)
                self._snapshot = IDLE
            return self._snapshot

        try:
            target = marker.target
        except MissingTarget as e:
            raise MarkerInconsistency(f"Active timer has no single target: {e}") from e

        if snap.running and snap.started_at == marker.active_timer_start and snap.target == target:
            return self.refresh()

        started_at: datetime = marker.active_timer_start  # type: ignore[assignment]
        self._snapshot = TimerSnapshot(
            state=TimerState.RUNNING,
            started_at=started_at,
            target=target,
            elapsed_seconds=self._elapsed_since(started_at),
            stale_marker_suspected=self._looks_stale(started_at),
        )
        log.info(
            "Resumed timer user_id=%s target=%s:%s elapsed=%ss",
            self.user_id,
            target.kind,
            target.id,
            self._snapshot.elapsed_seconds,
        )
        return self._snapshot

    def _looks_stale(self, started_at: datetime) -> bool:
        if self._stale_after is not None and self._clock() - started_at > self._stale_after:
            return True
        covering = self._materializer.entry_covering(self.user_id, started_at)
        if covering is not None:
            log.warning(
                "Active timer for user_id=%s starts inside saved entry %s; likely left behind by a failed clear",
                self.user_id,
                covering.id,
            )
            return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return self._snapshot.to_dict()
