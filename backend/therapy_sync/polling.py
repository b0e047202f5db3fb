from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging

from .models import Tick

logger = logging.getLogger(__name__)


class PollingScheduler:
    """Fixed-interval driver for a refresh callback.

    Ticks never overlap: the next sleep begins only after the previous
    callback returned. The callback lives in an indirection cell so that
    swapping it does not reset the timer.
    """

    def __init__(
        self,
        callback: Tick,
        *,
        interval: float,
        enabled: bool = True,
        immediate: bool = False,
        name: str = "poll",
    ) -> None:
        self._callback = callback
        self.interval = float(interval)
        self.enabled = enabled
        self.immediate = immediate
        self.name = name
        self.tick_count = 0
        self._requested = False
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._sleeping_task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()

    @property
    def callback(self) -> Tick:
        return self._callback

    @callback.setter
    def callback(self, value: Tick) -> None:
        self._callback = value

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._requested = True
        if not self.enabled or self.interval <= 0:
            self._halt()
            return
        if self.running:
            return
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation))

    def stop(self) -> None:
        self._requested = False
        self._halt()

    def configure(self, *, interval: float | None = None, enabled: bool | None = None) -> None:
        changed = False
        if interval is not None and float(interval) != self.interval:
            self.interval = float(interval)
            changed = True
        if enabled is not None:
            self.enabled = enabled
        if not self._requested:
            return
        if not self.enabled or self.interval <= 0:
            self._halt()
        elif changed or not self.running:
            self._halt()
            self.start()

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _halt(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        # An in-flight tick runs to completion; only an idle sleep is cancelled.
        if task is not None and task is self._sleeping_task and not task.done():
            task.cancel()

    async def _run(self, generation: int) -> None:
        if self.immediate:
            await self._tick()
        while generation == self._generation:
            current = asyncio.current_task()
            self._sleeping_task = current
            try:
                await asyncio.sleep(self.interval)
            finally:
                if self._sleeping_task is current:
                    self._sleeping_task = None
            if generation != self._generation:
                break
            await self._tick()

    async def _tick(self) -> None:
        async with self._tick_lock:
            self.tick_count += 1
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Polling error in {self.name}")
