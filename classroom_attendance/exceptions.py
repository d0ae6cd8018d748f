import math


class AttendanceError(Exception):
    """Base exception for the attendance system."""


class DimensionMismatch(AttendanceError):
    """Raised when a query and a gallery signature differ in length."""

    def __init__(self, expected: int, actual: int, identity_id: str | None = None):
        self.expected = expected
        self.actual = actual
        self.identity_id = identity_id
        where = f" for identity {identity_id}" if identity_id is not None else ""
        super().__init__(f"Signature dimension mismatch{where}: expected {expected}, got {actual}.")


class SchedulerError(AttendanceError):
    """Base class for admission and queueing failures of a detection request."""


class RateLimited(SchedulerError):
    """Raised when a submission arrives inside a cooldown or over the attempt cap."""

    def __init__(self, retry_after_ms: int):
        self.retry_after_ms = max(0, int(retry_after_ms))
        seconds = math.ceil(self.retry_after_ms / 1000)
        super().__init__(f"Rate limited. Try again in {seconds}s")


class QueueOverflow(SchedulerError):
    """Raised on a pending request evicted to make room for a newer one."""


class Cancelled(SchedulerError):
    """Raised on pending requests when the scheduler is reset."""


class DetectionFailure(AttendanceError):
    """Raised when the detection function itself fails."""


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""


class ImageDecodeError(AttendanceError):
    """Raised when a captured frame cannot be decoded into an image."""


class ExtractorError(AttendanceError):
    """Raised when the signature extractor cannot be loaded or fails."""


class SessionError(AttendanceError):
    """Raised when an attendance session is missing or not active."""
