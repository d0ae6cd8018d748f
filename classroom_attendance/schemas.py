from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from .database import AttendanceRecord, SessionRecord
from .types import DetectionOutcome, StatusSnapshot


class SessionCreateRequest(BaseModel):
    course_title: str = Field(min_length=1)
    session_date: date
    course_code: Optional[str] = None
    teacher_name: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None


class SessionPayload(BaseModel):
    id: str
    course_title: str
    session_date: str
    course_code: Optional[str] = None
    teacher_name: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionPayload":
        return cls(**record.__dict__)


class StartAttendanceRequest(BaseModel):
    session_id: str = Field(min_length=1)
    student_ids: Optional[list[str]] = None


class DetectionRequest(BaseModel):
    # Browser canvas output, "data:image/jpeg;base64,...", or bare base64.
    image: str = Field(min_length=1)


class DetectionResponse(BaseModel):
    status: str
    skipped: bool = False
    identity_id: Optional[str] = None
    display_name: Optional[str] = None
    confidence: Optional[float] = None

    @classmethod
    def from_outcome(cls, outcome: Optional[DetectionOutcome]) -> "DetectionResponse":
        if outcome is None:
            return cls(status="skipped", skipped=True)
        return cls(**outcome.to_dict())


class StatusPayload(BaseModel):
    status: str
    message: str = ""
    queue_size: int = 0
    is_processing: bool = False
    cooldown_remaining_ms: Optional[int] = None
    detections_in_last_minute: Optional[int] = None
    attendance_mode: bool = False
    selected_session: str = ""

    @classmethod
    def from_snapshot(cls, snapshot: StatusSnapshot, attendance_mode: bool, session_id: str) -> "StatusPayload":
        return cls(**snapshot.to_dict(), attendance_mode=attendance_mode, selected_session=session_id)


class AttendancePayload(BaseModel):
    id: int
    student_id: str
    full_name: str
    session_id: str
    is_present: bool
    method: str
    confidence: Optional[float] = None
    marked_at: str

    @classmethod
    def from_record(cls, record: AttendanceRecord) -> "AttendancePayload":
        return cls(**record.__dict__)
