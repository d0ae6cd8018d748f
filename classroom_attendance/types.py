from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional, Sequence, Union

import numpy as np

# Anything np.asarray turns into a 1-D float vector.
SignatureLike = Union[np.ndarray, Sequence[float]]


def as_signature(values: SignatureLike) -> np.ndarray:
    vector = np.array(values, dtype=np.float64)
    vector.setflags(write=False)
    return vector


@dataclass(frozen=True, eq=False)
class GalleryEntry:
    identity_id: str
    display_name: str
    signature: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "signature", as_signature(self.signature))


@dataclass(frozen=True)
class MatchResult:
    identity_id: str
    display_name: str
    distance: float


class DetectionStatus(str, Enum):
    RECOGNIZED = "recognized"
    ALREADY_MARKED = "already_marked"
    NO_FACE = "no_face"
    NOT_RECOGNIZED = "not_recognized"
    ERROR = "error"


@dataclass(frozen=True)
class DetectionOutcome:
    status: DetectionStatus
    identity_id: Optional[str] = None
    display_name: Optional[str] = None
    confidence: Optional[float] = None

    @classmethod
    def recognized(cls, identity_id: str, display_name: str, confidence: float) -> "DetectionOutcome":
        return cls(DetectionStatus.RECOGNIZED, identity_id, display_name, confidence)

    @classmethod
    def already_marked(cls, display_name: str, identity_id: Optional[str] = None) -> "DetectionOutcome":
        return cls(DetectionStatus.ALREADY_MARKED, identity_id, display_name)

    @classmethod
    def no_face(cls) -> "DetectionOutcome":
        return cls(DetectionStatus.NO_FACE)

    @classmethod
    def not_recognized(cls) -> "DetectionOutcome":
        return cls(DetectionStatus.NOT_RECOGNIZED)

    @classmethod
    def error(cls) -> "DetectionOutcome":
        return cls(DetectionStatus.ERROR)

    @property
    def is_success(self) -> bool:
        return self.status in (DetectionStatus.RECOGNIZED, DetectionStatus.ALREADY_MARKED)

    @property
    def is_inconclusive(self) -> bool:
        return self.status in (DetectionStatus.NO_FACE, DetectionStatus.NOT_RECOGNIZED)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


class SchedulerStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"
    WAITING = "waiting"
    RATE_LIMITED = "rate_limited"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class StatusSnapshot:
    status: SchedulerStatus
    message: str = ""
    queue_size: int = 0
    is_processing: bool = False
    cooldown_remaining_ms: Optional[int] = None
    detections_in_last_minute: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload
