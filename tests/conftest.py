import asyncio
import os
import tempfile
from pathlib import Path

import numpy as np
import pytest

os.environ.setdefault("ATTENDANCE_LOG_DIR", str(Path(tempfile.gettempdir()) / "classroom_attendance_logs"))

from classroom_attendance.database import AttendanceDatabase  # noqa: E402


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class StubExtractor:
    """Reads the first pixel of a frame and looks up a canned signature for it."""

    def __init__(self, signatures: dict[int, list[float]]) -> None:
        self.signatures = signatures
        self.calls = 0

    def extract(self, image: np.ndarray):
        self.calls += 1
        key = int(image[0, 0, 0])
        signature = self.signatures.get(key)
        return None if signature is None else np.asarray(signature, dtype=np.float32)


def frame(value: int) -> np.ndarray:
    return np.full((8, 8, 3), value, dtype=np.uint8)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_frame():
    return frame


@pytest.fixture
def stub_extractor() -> StubExtractor:
    return StubExtractor({10: [0.0, 0.0], 20: [10.0, 10.0], 30: [0.1, 0.1], 40: [5.0, 5.0], 50: [1.0, 2.0, 3.0]})


@pytest.fixture
def db(tmp_path) -> AttendanceDatabase:
    return AttendanceDatabase(tmp_path / "attendance.db")


@pytest.fixture
def enrolled_db(db: AttendanceDatabase) -> AttendanceDatabase:
    db.upsert_student("S1", "Ada Lovelace")
    db.upsert_student("S2", "Alan Turing")
    db.add_signature("S1", [0.0, 0.0])
    db.add_signature("S2", [10.0, 10.0])
    db.create_session("Algorithms", "2026-10-19", session_id="sess-1")
    return db
