from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional, Union

from .config import RATE_WINDOW_SECONDS, SchedulerConfig
from .exceptions import Cancelled, DetectionFailure, QueueOverflow, RateLimited, SchedulerError
from .logger import setup_logger
from .types import DetectionOutcome, DetectionStatus, SchedulerStatus, StatusSnapshot

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]
DetectFn = Callable[[Any], Awaitable[DetectionOutcome]]
StatusListener = Callable[[StatusSnapshot], None]

# Floor for drain-loop waits so float rounding cannot spin on a zero delay.
_MIN_WAIT_SECONDS = 0.001


def _to_ms(seconds: float) -> int:
    return int(round(max(0.0, seconds) * 1000))


@dataclass
class PendingDetectionRequest:
    payload: Any
    submitted_at: float
    future: asyncio.Future


class StatusPublisher:
    """Holds status listeners for one scheduler instance."""

    def __init__(self) -> None:
        self._listeners: List[StatusListener] = []
        self.logger = setup_logger(self.__class__.__name__)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, snapshot: StatusSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("Status listener %r failed", listener)


class DetectionScheduler(StatusPublisher):
    """Queue-on-contention gate in front of a detection function.

    Requests are served one at a time in submission order. Each attempt is
    spaced by ``min_interval_seconds``, capped per trailing minute, and followed
    by a cooldown chosen from its outcome. A reset cannot abort a detection
    call that is already running; its late result is dropped.
    """

    def __init__(
        self,
        detect: DetectFn,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__()
        self.detect = detect
        self.config = config or SchedulerConfig()
        self._clock = clock
        self._sleep = sleep

        self._queue: Deque[PendingDetectionRequest] = deque()
        self._is_processing = False
        self._last_detection_at: Optional[float] = None
        self._cooldown_until = 0.0
        self._timestamps: Deque[float] = deque()
        self._current: Optional[PendingDetectionRequest] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._epoch = 0

    def submit(self, payload: Any) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        now = self._clock()

        wait = self._blocked_for(now)
        if wait > 0:
            error = RateLimited(retry_after_ms=math.ceil(wait * 1000))
            self.logger.debug("Submission rejected: %s", error)
            self._notify(self._snapshot(SchedulerStatus.RATE_LIMITED, str(error)))
            future.set_exception(error)
            return future

        if len(self._queue) >= self.config.max_queue_size:
            evicted = self._queue.popleft()
            self.logger.warning("Queue full (%d). Evicting oldest pending request.", self.config.max_queue_size)
            if not evicted.future.done():
                evicted.future.set_exception(QueueOverflow("Removed from queue - too many pending requests"))

        self._queue.append(PendingDetectionRequest(payload=payload, submitted_at=now, future=future))
        self._notify(self._snapshot(SchedulerStatus.QUEUED, "Detection queued"))

        if not self._is_processing:
            self._is_processing = True
            self._drain_task = loop.create_task(self._drain(self._epoch))
        return future

    def reset(self) -> None:
        self._epoch += 1
        pending = list(self._queue)
        self._queue.clear()
        if self._current is not None:
            pending.insert(0, self._current)
            self._current = None

        for item in pending:
            if not item.future.done():
                item.future.set_exception(Cancelled("Queue cleared"))

        self._is_processing = False
        self._drain_task = None
        self._last_detection_at = None
        self._cooldown_until = 0.0
        self._timestamps.clear()
        if pending:
            self.logger.info("Scheduler reset. Cancelled %d pending request(s).", len(pending))
        self._notify(self._snapshot(SchedulerStatus.IDLE, "Queue cleared"))

    def close(self) -> None:
        self.reset()
        self._listeners.clear()

    async def wait_until_idle(self) -> None:
        task = self._drain_task
        if task is not None:
            await task

    def get_status(self) -> StatusSnapshot:
        now = self._clock()
        cutoff = now - RATE_WINDOW_SECONDS
        return StatusSnapshot(
            status=SchedulerStatus.PROCESSING if self._is_processing else SchedulerStatus.IDLE,
            queue_size=len(self._queue),
            is_processing=self._is_processing,
            cooldown_remaining_ms=_to_ms(self._cooldown_until - now),
            detections_in_last_minute=sum(1 for stamp in self._timestamps if stamp > cutoff),
        )

    def _blocked_for(self, now: float) -> float:
        """Seconds until an attempt is allowed, 0.0 when one may start now."""
        waits = [self._cooldown_until - now]
        if self._last_detection_at is not None:
            waits.append(self._last_detection_at + self.config.min_interval_seconds - now)

        cutoff = now - RATE_WINDOW_SECONDS
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()
        if len(self._timestamps) >= self.config.max_attempts_per_minute:
            waits.append(self._timestamps[0] + RATE_WINDOW_SECONDS - now)
        return max(0.0, *waits)

    def _arm_cooldown(self, seconds: float) -> None:
        self._cooldown_until = max(self._cooldown_until, self._clock() + seconds)

    async def _drain(self, epoch: int) -> None:
        try:
            while self._queue and epoch == self._epoch:
                wait = self._blocked_for(self._clock())
                if wait > 0:
                    self._notify(
                        self._snapshot(
                            SchedulerStatus.WAITING,
                            f"Waiting {math.ceil(wait)}s before next detection",
                        )
                    )
                    await self._sleep(max(wait, _MIN_WAIT_SECONDS))
                    continue

                item = self._queue.popleft()
                if item.future.done():
                    continue
                await self._process(item, epoch)

                if self._queue and epoch == self._epoch:
                    await self._sleep(self.config.min_interval_seconds)
        finally:
            if epoch == self._epoch:
                self._is_processing = False
                self._drain_task = None
                self._notify(self._snapshot(SchedulerStatus.IDLE, "Ready for detection"))

    async def _process(self, item: PendingDetectionRequest, epoch: int) -> None:
        now = self._clock()
        if self._last_detection_at is None or now > self._last_detection_at:
            self._last_detection_at = now
        self._timestamps.append(now)
        self._current = item
        self._notify(self._snapshot(SchedulerStatus.PROCESSING, "Processing face detection"))

        try:
            outcome = await self.detect(item.payload)
        except Exception as exc:
            if epoch != self._epoch:
                self.logger.debug("Discarding failure of a detection started before reset: %s", exc)
                return
            self._current = None
            self.logger.exception("Error processing detection")
            self._arm_cooldown(self.config.cooldown_after_failure_seconds)
            self._notify(self._snapshot(SchedulerStatus.FAILED, "Detection failed"))
            failure = DetectionFailure(f"Detection function failed: {exc}")
            failure.__cause__ = exc
            if not item.future.done():
                item.future.set_exception(failure)
            return

        if epoch != self._epoch:
            self.logger.debug("Discarding outcome of a detection started before reset: %s", outcome.status)
            return
        self._current = None
        self._apply_outcome(outcome)
        if not item.future.done():
            item.future.set_result(outcome)

    def _apply_outcome(self, outcome: DetectionOutcome) -> None:
        if outcome.is_success:
            self._arm_cooldown(self.config.cooldown_after_success_seconds)
            if outcome.status is DetectionStatus.RECOGNIZED:
                message = f"Detection successful: {outcome.display_name}"
            else:
                message = "Detection successful: Already marked"
            self._notify(self._snapshot(SchedulerStatus.SUCCESS, message))
            return

        self._arm_cooldown(self.config.cooldown_after_failure_seconds)
        if not outcome.is_inconclusive:
            message = "Detection error"
        elif outcome.status is DetectionStatus.NO_FACE:
            message = "No face detected"
        else:
            message = "Face not recognized"
        self._notify(self._snapshot(SchedulerStatus.FAILED, message))

    def _snapshot(self, status: SchedulerStatus, message: str) -> StatusSnapshot:
        return StatusSnapshot(
            status=status,
            message=message,
            queue_size=len(self._queue),
            is_processing=self._is_processing,
            cooldown_remaining_ms=_to_ms(self._cooldown_until - self._clock()),
        )


class SingleSlotScheduler(StatusPublisher):
    """Reject-on-contention variant for low-traffic deployments.

    There is no queue and no per-minute cap: an external fixed-interval poll
    asks ``can_detect()`` and simply skips the tick when the answer is no.
    """

    def __init__(
        self,
        detect: Optional[DetectFn] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        super().__init__()
        self.detect = detect
        self.config = config or SchedulerConfig(mode="single_slot")
        self._clock = clock
        self._is_processing = False
        self._last_detection_at: Optional[float] = None
        self._cooldown = self.config.single_slot_cooldown_seconds
        self._epoch = 0

    def can_detect(self) -> bool:
        if self._is_processing:
            return False
        return self._remaining(self._clock()) <= 0

    def start_processing(self) -> None:
        self._is_processing = True
        self._notify(self._snapshot(SchedulerStatus.PROCESSING, "Scanning..."))

    def end_processing(self, custom_cooldown_seconds: Optional[float] = None) -> None:
        self._is_processing = False
        self._last_detection_at = self._clock()
        if custom_cooldown_seconds is None:
            self._cooldown = self.config.single_slot_cooldown_seconds
        else:
            self._cooldown = max(0.0, float(custom_cooldown_seconds))
        self._notify(self._snapshot(SchedulerStatus.IDLE, "Ready for detection"))

    def get_time_until_next_detection(self) -> int:
        return _to_ms(self._remaining(self._clock()))

    def reset(self) -> None:
        self._epoch += 1
        self._is_processing = False
        self._last_detection_at = None
        self._cooldown = self.config.single_slot_cooldown_seconds
        self._notify(self._snapshot(SchedulerStatus.IDLE, "Detection reset"))

    def close(self) -> None:
        self.reset()
        self._listeners.clear()

    def get_status(self) -> StatusSnapshot:
        return self._snapshot(
            SchedulerStatus.PROCESSING if self._is_processing else SchedulerStatus.IDLE,
            "",
        )

    async def attempt(self, payload: Any) -> Optional[DetectionOutcome]:
        """Run one detection if the slot is free, else return None."""
        if self.detect is None:
            raise SchedulerError("No detection function configured.")
        if not self.can_detect():
            remaining = self.get_time_until_next_detection()
            self._notify(
                self._snapshot(
                    SchedulerStatus.RATE_LIMITED,
                    f"Next detection in {math.ceil(remaining / 1000)}s",
                )
            )
            return None

        epoch = self._epoch
        self.start_processing()
        outcome: Optional[DetectionOutcome] = None
        try:
            outcome = await self.detect(payload)
        except Exception as exc:
            if epoch != self._epoch:
                raise Cancelled("Scheduler was reset during detection") from exc
            self.logger.exception("Error processing detection")
            raise DetectionFailure(f"Detection function failed: {exc}") from exc
        finally:
            if epoch == self._epoch:
                success = outcome is not None and outcome.is_success
                self.end_processing(self.config.cooldown_after_success_seconds if success else None)

        if epoch != self._epoch:
            raise Cancelled("Scheduler was reset during detection")
        return outcome

    def _remaining(self, now: float) -> float:
        if self._last_detection_at is None:
            return 0.0
        gap = max(self._cooldown, self.config.single_slot_min_interval_seconds)
        return max(0.0, self._last_detection_at + gap - now)

    def _snapshot(self, status: SchedulerStatus, message: str) -> StatusSnapshot:
        return StatusSnapshot(
            status=status,
            message=message,
            queue_size=0,
            is_processing=self._is_processing,
            cooldown_remaining_ms=self.get_time_until_next_detection(),
        )


AnyScheduler = Union[DetectionScheduler, SingleSlotScheduler]


def create_scheduler(
    detect: DetectFn,
    config: Optional[SchedulerConfig] = None,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> AnyScheduler:
    config = config or SchedulerConfig()
    if config.mode == "single_slot":
        return SingleSlotScheduler(detect=detect, config=config, clock=clock)
    return DetectionScheduler(detect=detect, config=config, clock=clock, sleep=sleep)
