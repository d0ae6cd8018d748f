from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, List, Optional, Set

import numpy as np

from .config import SchedulerConfig
from .database import AttendanceDatabase, SessionRecord
from .exceptions import DatabaseError, ImageDecodeError, SessionError
from .extraction import SignatureExtractor
from .imaging import decode_image
from .logger import setup_logger
from .matcher import FaceMatcher, confidence_from_distance
from .scheduler import AnyScheduler, Clock, DetectionScheduler, Sleep, StatusListener, create_scheduler
from .types import DetectionOutcome, SchedulerStatus, StatusSnapshot


@dataclass
class SessionState:
    is_processing: bool = False
    is_attendance_mode: bool = False
    selected_session: str = ""
    sessions: List[SessionRecord] = field(default_factory=list)


StateListener = Callable[[SessionState], None]


class AttendanceSessionController:
    """Owns one attendance session: its scheduler, gallery scope and persistence.

    A scheduler is built on ``start_attendance`` and closed on
    ``stop_attendance``, so cooldowns and queued frames never leak between
    sessions. Duplicate attendance is keyed by session.
    """

    def __init__(
        self,
        db: AttendanceDatabase,
        extractor: SignatureExtractor,
        matcher: Optional[FaceMatcher] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.db = db
        self.extractor = extractor
        self.matcher = matcher or FaceMatcher()
        self.config = config or SchedulerConfig()
        self.logger = setup_logger(self.__class__.__name__)
        self._clock = clock
        self._sleep = sleep

        self.scheduler: Optional[AnyScheduler] = None
        self.gallery_student_ids: Optional[Set[str]] = None
        self._state = SessionState()
        self._listeners: List[StateListener] = []
        self._status_listeners: List[StatusListener] = []

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def subscribe_status(self, listener: StatusListener) -> Callable[[], None]:
        """Receive scheduler snapshots from this and every later session."""
        self._status_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _unsubscribe

    def get_state(self) -> SessionState:
        return self._state

    def get_status(self) -> StatusSnapshot:
        if self.scheduler is None:
            return StatusSnapshot(status=SchedulerStatus.IDLE, message="Attendance mode is off")
        return self.scheduler.get_status()

    def load_sessions(self) -> List[SessionRecord]:
        sessions = self.db.list_sessions()
        self._update_state(sessions=sessions)
        return sessions

    def select_session(self, session_id: str) -> None:
        if self._state.is_attendance_mode:
            raise SessionError("Stop attendance before selecting another session.")
        self._update_state(selected_session=session_id.strip())

    def start_attendance(
        self,
        session_id: Optional[str] = None,
        student_ids: Optional[Iterable[str]] = None,
    ) -> SessionRecord:
        """Start (or restart) attendance for a session.

        ``student_ids`` limits the gallery to those students; None uses every
        enrolled signature. Nothing changes unless the session exists.
        """
        target = (session_id if session_id is not None else self._state.selected_session).strip()
        if not target:
            raise SessionError("Please select a session before taking attendance.")

        session = self.db.get_session(target)
        if session is None:
            raise SessionError(f"Unknown session {target}.")

        self._close_scheduler()
        scheduler = create_scheduler(self.handle_detection, self.config, clock=self._clock, sleep=self._sleep)
        scheduler.subscribe(self._forward_status)
        self.scheduler = scheduler
        self.gallery_student_ids = None if student_ids is None else set(student_ids)

        self.load_sessions()
        self._update_state(selected_session=session.id, is_attendance_mode=True)
        self.logger.info("Attendance started for session %s (%s)", session.id, session.course_title)
        return session

    def stop_attendance(self) -> None:
        self._close_scheduler()
        self._update_state(is_attendance_mode=False, is_processing=False)
        self.logger.info("Attendance stopped for session %s", self._state.selected_session or "-")

    async def submit_frame(self, payload: Any) -> Optional[DetectionOutcome]:
        """Route a frame through the active scheduler.

        Returns None when the single-slot scheduler skips the frame; the queued
        scheduler raises ``RateLimited``, ``QueueOverflow`` or ``Cancelled``
        instead.
        """
        scheduler = self.scheduler
        if scheduler is None or not self._state.is_attendance_mode:
            raise SessionError("Attendance mode is not active.")
        if isinstance(scheduler, DetectionScheduler):
            return await scheduler.submit(payload)
        return await scheduler.attempt(payload)

    async def handle_detection(self, payload: Any) -> DetectionOutcome:
        """Decode, extract, match and persist one captured frame."""
        session_id = self._state.selected_session
        if not session_id:
            raise SessionError("No session selected.")

        self._update_state(is_processing=True)
        try:
            return await self._detect(payload, session_id)
        finally:
            self._update_state(is_processing=False)

    async def _detect(self, payload: Any, session_id: str) -> DetectionOutcome:
        if isinstance(payload, np.ndarray):
            image = payload
        else:
            try:
                image = await asyncio.to_thread(decode_image, payload)
            except ImageDecodeError as exc:
                self.logger.warning("Error loading image for face recognition: %s", exc)
                return DetectionOutcome.error()

        try:
            signature = await asyncio.to_thread(self.extractor.extract, image)
        except Exception:
            self.logger.exception("Signature extraction failed")
            return DetectionOutcome.error()
        if signature is None:
            return DetectionOutcome.no_face()

        try:
            gallery = await asyncio.to_thread(self.db.load_gallery, self.gallery_student_ids)
        except DatabaseError as exc:
            self.logger.error("Error fetching face signatures: %s", exc)
            return DetectionOutcome.error()
        if not gallery:
            return DetectionOutcome.not_recognized()

        match = self.matcher.match(signature, gallery)
        if match is None:
            return DetectionOutcome.not_recognized()

        confidence = confidence_from_distance(match.distance)
        try:
            if await asyncio.to_thread(self.db.has_attendance, match.identity_id, session_id):
                return DetectionOutcome.already_marked(match.display_name, match.identity_id)
            inserted = await asyncio.to_thread(
                self.db.mark_attendance,
                match.identity_id,
                session_id,
                confidence,
            )
        except DatabaseError as exc:
            self.logger.error("Error marking attendance: %s", exc)
            return DetectionOutcome.error()

        if not inserted:
            return DetectionOutcome.already_marked(match.display_name, match.identity_id)

        self.logger.info(
            "Attendance marked for %s (%s) in session %s, distance=%.4f",
            match.display_name,
            match.identity_id,
            session_id,
            match.distance,
        )
        return DetectionOutcome.recognized(match.identity_id, match.display_name, confidence)

    def _forward_status(self, snapshot: StatusSnapshot) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("Status listener %r failed", listener)

    def _close_scheduler(self) -> None:
        scheduler, self.scheduler = self.scheduler, None
        if scheduler is not None:
            scheduler.close()

    def _update_state(self, **updates: Any) -> None:
        self._state = replace(self._state, **updates)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                self.logger.exception("State listener %r failed", listener)
