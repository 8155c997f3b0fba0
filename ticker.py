"""
ticker.py -- Fixed-interval heartbeat for periodic market broadcasts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

import config

logger = logging.getLogger(__name__)


class PeriodicTicker:
    """
    Awaits `callback(now)` every `interval_sec` seconds until stopped.

    A failing tick is logged and the next one still fires.
    """

    def __init__(self, interval_sec: float | None, callback: Callable[[float], Awaitable[object]]) -> None:
        interval = float(interval_sec if interval_sec is not None else config.TICK_INTERVAL_SEC)
        if interval <= 0:
            raise ValueError("interval_sec must be positive")
        self.interval_sec = interval
        self.callback = callback
        self.tick_count = 0
        self.error_count = 0
        self.last_tick_at: float | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="periodic-market-ticker")
        logger.info("Periodic ticker started (every %gs)", self.interval_sec)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Periodic ticker stopped after %d ticks", self.tick_count)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            now = time.time()
            try:
                await self.callback(now)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.error_count += 1
                logger.exception("Periodic tick failed")
            self.tick_count += 1
            self.last_tick_at = now

    def stats(self) -> dict:
        return {
            "running": self.running,
            "intervalSec": self.interval_sec,
            "tickCount": self.tick_count,
            "errorCount": self.error_count,
            "lastTickAt": self.last_tick_at,
        }
