from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Set, Union

from .exceptions import AttendanceError
from .logger import setup_logger
from .scheduler import Sleep, SingleSlotScheduler
from .types import DetectionOutcome

FrameSource = Callable[[], Union[Any, Awaitable[Any]]]
OutcomeHandler = Callable[[DetectionOutcome], None]


class FramePoller:
    """Fixed-interval driver for a single-slot scheduler.

    Every tick grabs a frame and hands it to ``scheduler.attempt``. Ticks that
    land while a detection is still running or cooling down are skipped, never
    queued.
    """

    def __init__(
        self,
        scheduler: SingleSlotScheduler,
        frame_source: FrameSource,
        interval_seconds: Optional[float] = None,
        on_outcome: Optional[OutcomeHandler] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.scheduler = scheduler
        self.frame_source = frame_source
        self.interval_seconds = (
            scheduler.config.poll_interval_seconds if interval_seconds is None else float(interval_seconds)
        )
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        self.on_outcome = on_outcome
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.logger.info("Frame polling started every %.2fs", self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self.logger.info("Frame polling stopped")

    async def tick(self) -> Optional[DetectionOutcome]:
        if not self.scheduler.can_detect():
            return None

        frame = self.frame_source()
        if inspect.isawaitable(frame):
            frame = await frame
        if frame is None:
            return None

        try:
            outcome = await self.scheduler.attempt(frame)
        except AttendanceError as exc:
            self.logger.warning("Detection attempt failed: %s", exc)
            return None

        if outcome is not None and self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome

    async def _run(self) -> None:
        while True:
            task = asyncio.get_running_loop().create_task(self.tick())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            await self._sleep(self.interval_seconds)
