from .config import SchedulerConfig, Settings, get_settings
from .exceptions import (
    AttendanceError,
    Cancelled,
    DetectionFailure,
    DimensionMismatch,
    QueueOverflow,
    RateLimited,
)
from .matcher import FaceMatcher, euclidean_distance
from .poller import FramePoller
from .scheduler import DetectionScheduler, SingleSlotScheduler, create_scheduler
from .types import DetectionOutcome, DetectionStatus, GalleryEntry, MatchResult, SchedulerStatus, StatusSnapshot

__all__ = [
    "AttendanceError",
    "Cancelled",
    "DetectionFailure",
    "DetectionOutcome",
    "DetectionScheduler",
    "DetectionStatus",
    "DimensionMismatch",
    "FaceMatcher",
    "FramePoller",
    "GalleryEntry",
    "MatchResult",
    "QueueOverflow",
    "RateLimited",
    "SchedulerConfig",
    "SchedulerStatus",
    "Settings",
    "SingleSlotScheduler",
    "StatusSnapshot",
    "create_scheduler",
    "euclidean_distance",
    "get_settings",
]
