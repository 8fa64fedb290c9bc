"""Timer driven poller that promotes due scheduled jobs."""

from __future__ import annotations

import asyncio
import math
from typing import Any, Awaitable, Callable, Optional

from .logger import get_logger


class JobScheduler:
    """Run ``tick`` every ``interval`` seconds until stopped.

    The loop does not try to wake exactly at a job's scheduled time; it scans
    on each tick. ``wake()`` forces an early tick. With an infinite interval
    (test mode) the loop only runs when woken. While suspended, ticks are
    skipped but the loop keeps waiting.
    """

    def __init__(
        self,
        tick: Callable[[], Awaitable[Any]],
        *,
        interval: float = 30.0,
        active: bool = True,
        logger=None,
    ):
        self._tick = tick
        self.interval = interval
        self.active = active
        self.logger = logger or get_logger("scheduler")
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Create the background task (no-op if already running)."""
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="scheduled-jobs-loop")
        self.logger.debug("Scheduler loop task created (interval=%s)", self.interval)

    async def stop(self) -> None:
        """Stop the loop and wait for the current tick to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Request an immediate tick."""
        self._wake_event.set()

    async def run_once(self) -> Any:
        """Run a single tick if the scheduler is active."""
        if not self.active:
            self.logger.debug("Scheduler suspended, skipping tick")
            return None
        return await self._tick()

    async def _loop(self) -> None:
        self.logger.debug("Scheduler loop started")
        if math.isinf(self.interval):
            await self._wait_for_wakeup(self.interval)
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in scheduler loop: %s", exc)
            await self._wait_for_wakeup(self.interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
