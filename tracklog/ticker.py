from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from tracklog.timer import TimerSession, TimerSnapshot

log = logging.getLogger("tracklog.ticker")


class ElapsedTicker:
    """Re-derives the elapsed display from the timer's anchor on a fixed cadence.

    Each tick is a pure read of `TimerSession.refresh()` handed to `on_tick`;
    ticks run one after another on a single task, so they never overlap.
    A missed or delayed tick only delays the display, it never loses time.
    """

    def __init__(
        self,
        session: TimerSession,
        on_tick: Callable[[TimerSnapshot], None],
        *,
        interval: float = 1.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._session = session
        self._on_tick = on_tick
        self._interval = float(interval)
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> TimerSnapshot:
        snapshot = self._session.refresh()
        self._on_tick(snapshot)
        return snapshot

    async def run(self, *, until_idle: bool = False) -> None:
        while True:
            snapshot = self.tick()
            if until_idle and not snapshot.running:
                return
            await asyncio.sleep(self._interval)

    def start(self, *, until_idle: bool = False) -> asyncio.Task[None]:
        if self.running:
            return self._task  # type: ignore[return-value]
        self._task = asyncio.get_running_loop().create_task(self.run(until_idle=until_idle))
        return self._task

    async def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            log.debug("Elapsed ticker cancelled")

    async def __aenter__(self) -> "ElapsedTicker":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.cancel()
