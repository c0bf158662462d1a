from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tracklog.auth import hash_password
from tracklog.db import ROLE_ADMIN, ROLE_USER, TracklogDB
from tracklog.entries import EntryMaterializer
from tracklog.markers import MarkerStore
from tracklog.timer import TimerSession

# Seeded by TracklogDB.ensure_seed_data on an empty database.
PROJECT_INTERNAL = 1
CATEGORY_MEETINGS = 1
CATEGORY_ADMIN = 2


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0, 250_000, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path):
    database = TracklogDB(tmp_path / "tracklog.sqlite3")
    database.ensure_seed_data()
    yield database
    database.close()


@pytest.fixture
def user_id(db) -> int:
    return db.create_user(username="alice", password_hash=hash_password("alice-pass-1", iterations=1_000), role=ROLE_USER)


@pytest.fixture
def admin_id(db) -> int:
    return db.create_user(username="boss", password_hash=hash_password("boss-pass-1", iterations=1_000), role=ROLE_ADMIN)


@pytest.fixture
def markers(db, clock) -> MarkerStore:
    return MarkerStore(db, clock=clock)


@pytest.fixture
def materializer(db) -> EntryMaterializer:
    return EntryMaterializer(db)


@pytest.fixture
def make_session(markers, materializer, clock):
    def _make(uid: int, **kwargs) -> TimerSession:
        kwargs.setdefault("markers", markers)
        kwargs.setdefault("materializer", materializer)
        kwargs.setdefault("clock", clock)
        return TimerSession(uid, **kwargs)

    return _make
