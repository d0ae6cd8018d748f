import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

import numpy as np

from .exceptions import DatabaseError
from .types import GalleryEntry, SignatureLike


@dataclass
class StudentRecord:
    id: str
    full_name: str
    email: Optional[str] = None


@dataclass
class SessionRecord:
    id: str
    course_title: str
    session_date: str
    course_code: Optional[str] = None
    teacher_name: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None


@dataclass
class AttendanceRecord:
    id: int
    student_id: str
    full_name: str
    session_id: str
    is_present: bool
    method: str
    confidence: Optional[float]
    marked_at: str


class AttendanceDatabase:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS students (
                        id TEXT PRIMARY KEY,
                        full_name TEXT NOT NULL,
                        email TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS face_signatures (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        student_id TEXT NOT NULL,
                        signature BLOB NOT NULL,
                        signature_dim INTEGER NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS course_sessions (
                        id TEXT PRIMARY KEY,
                        course_title TEXT NOT NULL,
                        course_code TEXT,
                        teacher_name TEXT,
                        session_date TEXT NOT NULL,
                        start_time TEXT,
                        end_time TEXT,
                        location TEXT
                    );

                    CREATE TABLE IF NOT EXISTS attendance (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        student_id TEXT NOT NULL,
                        session_id TEXT NOT NULL,
                        is_present INTEGER NOT NULL DEFAULT 1,
                        method TEXT NOT NULL,
                        confidence REAL,
                        marked_at TEXT NOT NULL,
                        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
                        FOREIGN KEY (session_id) REFERENCES course_sessions(id) ON DELETE CASCADE,
                        -- One attendance row per student per session.
                        UNIQUE(student_id, session_id)
                    );
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    def upsert_student(self, student_id: str, full_name: str, email: Optional[str] = None) -> None:
        student_id = student_id.strip()
        full_name = full_name.strip()
        if not student_id or not full_name:
            raise DatabaseError("Student id and name are required.")

        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO students (id, full_name, email, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        full_name = excluded.full_name,
                        email = excluded.email,
                        updated_at = excluded.updated_at
                    """,
                    (student_id, full_name, email, now, now),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save student {student_id}: {exc}") from exc

    def get_student(self, student_id: str) -> Optional[StudentRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, full_name, email FROM students WHERE id = ?",
                    (student_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load student {student_id}: {exc}") from exc

        if row is None:
            return None
        return StudentRecord(id=row["id"], full_name=row["full_name"], email=row["email"])

    def list_students(self) -> List[StudentRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT id, full_name, email FROM students ORDER BY full_name ASC").fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load students: {exc}") from exc
        return [StudentRecord(id=row["id"], full_name=row["full_name"], email=row["email"]) for row in rows]

    def add_signature(self, student_id: str, signature: SignatureLike) -> int:
        vector = np.asarray(signature, dtype=np.float32)
        if vector.ndim != 1 or vector.size == 0:
            raise DatabaseError("Signature must be a non-empty 1D vector.")

        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO face_signatures (student_id, signature, signature_dim, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (student_id, vector.tobytes(), vector.size, now),
                )
                return int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise DatabaseError(f"Unknown student {student_id}: {exc}") from exc
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save signature for {student_id}: {exc}") from exc

    def load_gallery(self, student_ids: Optional[Iterable[str]] = None) -> List[GalleryEntry]:
        """One entry per stored signature, so a student may appear several times."""
        sql = """
            SELECT s.id, s.full_name, f.signature, f.signature_dim
            FROM face_signatures f
            JOIN students s ON s.id = f.student_id
        """
        params: List[str] = []
        if student_ids is not None:
            ids = [student_id for student_id in student_ids]
            if not ids:
                return []
            sql += f" WHERE s.id IN ({','.join('?' for _ in ids)})"
            params.extend(ids)
        sql += " ORDER BY f.id ASC"

        try:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load face signatures: {exc}") from exc

        return [
            GalleryEntry(
                identity_id=row["id"],
                display_name=row["full_name"],
                signature=np.frombuffer(row["signature"], dtype=np.float32, count=row["signature_dim"]),
            )
            for row in rows
        ]

    def create_session(
        self,
        course_title: str,
        session_date: str,
        session_id: Optional[str] = None,
        course_code: Optional[str] = None,
        teacher_name: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        location: Optional[str] = None,
    ) -> SessionRecord:
        record = SessionRecord(
            id=session_id or str(uuid.uuid4()),
            course_title=course_title.strip(),
            session_date=session_date,
            course_code=course_code,
            teacher_name=teacher_name,
            start_time=start_time,
            end_time=end_time,
            location=location,
        )
        if not record.course_title:
            raise DatabaseError("Course title cannot be empty.")

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO course_sessions (
                        id, course_title, course_code, teacher_name, session_date, start_time, end_time, location
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.course_title,
                        record.course_code,
                        record.teacher_name,
                        record.session_date,
                        record.start_time,
                        record.end_time,
                        record.location,
                    ),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to create session {record.id}: {exc}") from exc
        return record

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM course_sessions WHERE id = ?", (session_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load session {session_id}: {exc}") from exc
        return self._session_from_row(row) if row is not None else None

    def list_sessions(self) -> List[SessionRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM course_sessions ORDER BY session_date DESC, start_time DESC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load sessions: {exc}") from exc
        return [self._session_from_row(row) for row in rows]

    def has_attendance(self, student_id: str, session_id: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id FROM attendance WHERE student_id = ? AND session_id = ?",
                    (student_id, session_id),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to query attendance for {student_id}: {exc}") from exc
        return row is not None

    def mark_attendance(
        self,
        student_id: str,
        session_id: str,
        confidence: Optional[float] = None,
        method: str = "face_recognition",
        marked_at: Optional[datetime] = None,
    ) -> bool:
        timestamp = (marked_at or datetime.now()).isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO attendance (
                        student_id, session_id, is_present, method, confidence, marked_at
                    ) VALUES (?, ?, 1, ?, ?, ?)
                    """,
                    (student_id, session_id, method, confidence, timestamp),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to mark attendance for {student_id}: {exc}") from exc

    def list_attendance(self, session_id: str) -> List[AttendanceRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT a.id, a.student_id, s.full_name, a.session_id, a.is_present,
                           a.method, a.confidence, a.marked_at
                    FROM attendance a
                    JOIN students s ON s.id = a.student_id
                    WHERE a.session_id = ?
                    ORDER BY a.marked_at ASC, a.id ASC
                    """,
                    (session_id,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance for session {session_id}: {exc}") from exc

        return [
            AttendanceRecord(
                id=row["id"],
                student_id=row["student_id"],
                full_name=row["full_name"],
                session_id=row["session_id"],
                is_present=bool(row["is_present"]),
                method=row["method"],
                confidence=row["confidence"],
                marked_at=row["marked_at"],
            )
            for row in rows
        ]

    def attendance_stats(self) -> dict[str, int]:
        try:
            with self._connect() as conn:
                students = conn.execute("SELECT COUNT(*) AS c FROM students").fetchone()["c"]
                signatures = conn.execute("SELECT COUNT(*) AS c FROM face_signatures").fetchone()["c"]
                sessions = conn.execute("SELECT COUNT(*) AS c FROM course_sessions").fetchone()["c"]
                total = conn.execute("SELECT COUNT(*) AS c FROM attendance").fetchone()["c"]
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance stats: {exc}") from exc

        return {
            "students": int(students),
            "signatures": int(signatures),
            "sessions": int(sessions),
            "attendance_total": int(total),
        }

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            course_title=row["course_title"],
            course_code=row["course_code"],
            teacher_name=row["teacher_name"],
            session_date=row["session_date"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            location=row["location"],
        )
