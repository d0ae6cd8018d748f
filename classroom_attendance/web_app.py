from __future__ import annotations

import asyncio
import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .database import AttendanceDatabase
from .exceptions import (
    AttendanceError,
    Cancelled,
    DetectionFailure,
    DimensionMismatch,
    ExtractorError,
    ImageDecodeError,
    QueueOverflow,
    RateLimited,
    SessionError,
)
from .extraction import load_extractor
from .logger import setup_logger
from .matcher import FaceMatcher
from .schemas import (
    AttendancePayload,
    DetectionRequest,
    DetectionResponse,
    SessionCreateRequest,
    SessionPayload,
    StartAttendanceRequest,
    StatusPayload,
)
from .session import AttendanceSessionController
from .types import StatusSnapshot
from .ws_manager import ConnectionManager

logger = setup_logger("classroom_attendance.web_app")


def build_controller(settings: Settings) -> AttendanceSessionController:
    if not settings.extractor:
        raise ExtractorError("No signature extractor configured. Set ATTENDANCE_EXTRACTOR=package.module:attribute.")
    return AttendanceSessionController(
        db=AttendanceDatabase(settings.db_path),
        extractor=load_extractor(settings.extractor),
        matcher=FaceMatcher(threshold=settings.recognition_threshold),
        config=settings.scheduler_config(),
    )


def _error_status(exc: AttendanceError) -> int:
    if isinstance(exc, RateLimited):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(exc, (QueueOverflow, Cancelled)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (SessionError, ImageDecodeError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, DimensionMismatch):
        return 422
    if isinstance(exc, DetectionFailure):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    settings: Optional[Settings] = None,
    controller: Optional[AttendanceSessionController] = None,
) -> FastAPI:
    settings = settings or get_settings()
    controller = controller or build_controller(settings)
    ws_manager = ConnectionManager()
    pending_broadcasts: set[asyncio.Task] = set()

    def _status_payload(snapshot: StatusSnapshot) -> dict[str, Any]:
        state = controller.get_state()
        return StatusPayload.from_snapshot(
            snapshot,
            attendance_mode=state.is_attendance_mode,
            session_id=state.selected_session,
        ).model_dump(mode="json")

    def _schedule_status(payload: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(ws_manager.publish("status", payload))
        pending_broadcasts.add(task)
        task.add_done_callback(pending_broadcasts.discard)

    def _on_status(snapshot: StatusSnapshot) -> None:
        if ws_manager.count():
            _schedule_status(_status_payload(snapshot))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        unsubscribe = controller.subscribe_status(_on_status)
        yield
        unsubscribe()
        controller.stop_attendance()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.controller = controller
    app.state.ws_manager = ws_manager
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AttendanceError)
    async def _attendance_error(_request: Request, exc: AttendanceError) -> JSONResponse:
        code = _error_status(exc)
        body: dict[str, Any] = {"detail": str(exc), "error": exc.__class__.__name__}
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimited):
            body["retry_after_ms"] = exc.retry_after_ms
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_ms / 1000)))
        if code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=code, content=body, headers=headers)

    router = APIRouter()

    @router.get("/health")
    async def health() -> dict:
        return {
            "ok": True,
            "service": "classroom-attendance",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.get("/sessions", response_model=list[SessionPayload])
    async def list_sessions():
        sessions = await asyncio.to_thread(controller.load_sessions)
        return [SessionPayload.from_record(record) for record in sessions]

    @router.post("/sessions", response_model=SessionPayload, status_code=status.HTTP_201_CREATED)
    async def create_session(payload: SessionCreateRequest):
        record = await asyncio.to_thread(
            controller.db.create_session,
            course_title=payload.course_title,
            session_date=payload.session_date.isoformat(),
            course_code=payload.course_code,
            teacher_name=payload.teacher_name,
            start_time=payload.start_time,
            end_time=payload.end_time,
            location=payload.location,
        )
        return SessionPayload.from_record(record)

    @router.get("/sessions/{session_id}/attendance", response_model=list[AttendancePayload])
    async def session_attendance(session_id: str):
        session = await asyncio.to_thread(controller.db.get_session, session_id)
        if session is None:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"detail": f"Unknown session '{session_id}'."},
            )
        rows = await asyncio.to_thread(controller.db.list_attendance, session_id)
        return [AttendancePayload.from_record(row) for row in rows]

    @router.post("/attendance/start", response_model=SessionPayload)
    async def start_attendance(payload: StartAttendanceRequest):
        session = controller.start_attendance(payload.session_id, payload.student_ids)
        await ws_manager.publish(
            "session-started",
            {"message": "Session started successfully", "session_id": session.id},
            stamp=True,
        )
        return SessionPayload.from_record(session)

    @router.post("/attendance/stop")
    async def stop_attendance() -> dict:
        session_id = controller.get_state().selected_session
        controller.stop_attendance()
        await ws_manager.publish(
            "session-ended",
            {"message": "Session ended successfully", "session_id": session_id},
            stamp=True,
        )
        return {"ok": True, "session_id": session_id}

    @router.post("/detections", response_model=DetectionResponse)
    async def submit_detection(payload: DetectionRequest):
        outcome = await controller.submit_frame(payload.image)
        return DetectionResponse.from_outcome(outcome)

    @router.get("/status", response_model=StatusPayload)
    async def scheduler_status():
        return _status_payload(controller.get_status())

    app.include_router(router, prefix=settings.api_prefix)

    @app.websocket("/ws/status")
    async def status_socket(websocket: WebSocket):
        await ws_manager.connect(websocket)
        await websocket.send_json({"type": "status", "payload": _status_payload(controller.get_status())})
        try:
            while True:
                message = await websocket.receive_text()
                if message.lower() == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)

    return app
