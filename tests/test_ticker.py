from __future__ import annotations

import asyncio

import pytest

from conftest import PROJECT_INTERNAL
from tracklog.markers import TimerTarget
from tracklog.ticker import ElapsedTicker


def test_interval_must_be_positive(make_session, user_id) -> None:
    with pytest.raises(ValueError):
        ElapsedTicker(make_session(user_id), lambda snap: None, interval=0)


def test_tick_reads_elapsed_from_anchor(make_session, user_id, clock) -> None:
    session = make_session(user_id)
    session.start(TimerTarget.from_ids(project_id=PROJECT_INTERNAL))
    seen = []
    ticker = ElapsedTicker(session, seen.append, interval=1)

    clock.advance(seconds=3)
    ticker.tick()
    # Ticks that never happened (sleep, background tab) cost nothing.
    clock.advance(minutes=10)
    ticker.tick()

    assert [s.elapsed_seconds for s in seen] == [3, 603]


def test_run_until_idle_stops_after_timer_stops(make_session, user_id, clock) -> None:
    session = make_session(user_id)
    session.start(TimerTarget.from_ids(project_id=PROJECT_INTERNAL))
    seen = []

    def on_tick(snap) -> None:
        seen.append(snap.elapsed_seconds)
        clock.advance(seconds=1)
        if len(seen) == 3:
            session.stop()
            session.discard()

    asyncio.run(ElapsedTicker(session, on_tick, interval=0.001).run(until_idle=True))

    assert seen == [0, 1, 2, 0]


def test_cancel_stops_background_task(make_session, user_id) -> None:
    session = make_session(user_id)
    session.start(TimerTarget.from_ids(project_id=PROJECT_INTERNAL))
    ticks = []

    async def scenario() -> bool:
        ticker = ElapsedTicker(session, ticks.append, interval=0.001)
        async with ticker:
            assert ticker.running
            await asyncio.sleep(0.02)
        return ticker.running

    assert asyncio.run(scenario()) is False
    assert len(ticks) >= 1
