import argparse
import json
import sys
from datetime import date
from pathlib import Path

import numpy as np
import uvicorn

from classroom_attendance.config import get_settings
from classroom_attendance.database import AttendanceDatabase
from classroom_attendance.exceptions import AttendanceError, ExtractorError
from classroom_attendance.extraction import load_extractor
from classroom_attendance.imaging import decode_image
from classroom_attendance.logger import setup_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Classroom face attendance service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the attendance HTTP/WebSocket service")
    serve.add_argument("--host", default="0.0.0.0", help="Host interface")
    serve.add_argument("--port", type=int, default=8000, help="Port")
    serve.add_argument("--extractor", default=None, help="Signature extractor, 'package.module:attribute'")

    add_student = subparsers.add_parser("add-student", help="Register or update a student")
    add_student.add_argument("--id", required=True, dest="student_id", help="Student ID")
    add_student.add_argument("--name", required=True, help="Full name")
    add_student.add_argument("--email", default=None, help="Email address")

    enroll = subparsers.add_parser("enroll", help="Store a face signature for a student")
    enroll.add_argument("--id", required=True, dest="student_id", help="Student ID")
    source = enroll.add_mutually_exclusive_group(required=True)
    source.add_argument("--signature", type=Path, help="Signature file (.npy or JSON list of floats)")
    source.add_argument("--image", type=Path, help="Face photo, run through the configured extractor")
    enroll.add_argument("--extractor", default=None, help="Signature extractor, 'package.module:attribute'")

    session = subparsers.add_parser("create-session", help="Create a course session")
    session.add_argument("--title", required=True, help="Course title")
    session.add_argument("--date", default=date.today().isoformat(), help="Session date (YYYY-MM-DD)")
    session.add_argument("--code", default=None, help="Course code")
    session.add_argument("--teacher", default=None, help="Teacher name")
    session.add_argument("--start", default=None, help="Start time (HH:MM)")
    session.add_argument("--end", default=None, help="End time (HH:MM)")
    session.add_argument("--location", default=None, help="Room or location")

    list_sessions = subparsers.add_parser("list-sessions", help="List course sessions")
    list_sessions.add_argument("--limit", type=int, default=50, help="Max rows to print")

    list_attendance = subparsers.add_parser("list-attendance", help="List attendance for a session")
    list_attendance.add_argument("--session", required=True, help="Session ID")

    return parser


def _read_signature(path: Path) -> np.ndarray:
    if path.suffix.lower() == ".npy":
        return np.load(path)
    try:
        values = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise AttendanceError(f"Cannot read signature file {path}: {exc}") from exc
    return np.asarray(values, dtype=np.float32)


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    settings = get_settings()
    logger = setup_logger("main")

    try:
        if args.command == "serve":
            from classroom_attendance.web_app import create_app

            if args.extractor:
                settings = settings.model_copy(update={"extractor": args.extractor})
            app = create_app(settings=settings)
            uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
            return 0

        db = AttendanceDatabase(settings.db_path)

        if args.command == "add-student":
            db.upsert_student(args.student_id, args.name, args.email)
            print(f"Saved student {args.student_id} ({args.name}).")
            return 0

        if args.command == "enroll":
            if db.get_student(args.student_id) is None:
                raise AttendanceError(f"Student {args.student_id} not found. Run add-student first.")
            if args.signature is not None:
                signature = _read_signature(args.signature)
            else:
                extractor = load_extractor(args.extractor or settings.extractor)
                signature = extractor.extract(decode_image(args.image.read_bytes()))
                if signature is None:
                    raise ExtractorError(f"No face found in {args.image}.")
            row_id = db.add_signature(args.student_id, signature)
            print(f"Stored signature #{row_id} ({np.asarray(signature).size} values) for {args.student_id}.")
            return 0

        if args.command == "create-session":
            record = db.create_session(
                course_title=args.title,
                session_date=args.date,
                course_code=args.code,
                teacher_name=args.teacher,
                start_time=args.start,
                end_time=args.end,
                location=args.location,
            )
            print(f"Created session {record.id} ({record.course_title}, {record.session_date}).")
            return 0

        if args.command == "list-sessions":
            sessions = db.list_sessions()
            if not sessions:
                print("No sessions found.")
                return 0

            print(f"{'Session ID':<38} {'Date':<12} {'Course'}")
            print("-" * 72)
            for record in sessions[: args.limit]:
                print(f"{record.id:<38} {record.session_date:<12} {record.course_title}")
            return 0

        if args.command == "list-attendance":
            rows = db.list_attendance(args.session)
            if not rows:
                print("No attendance recorded for this session.")
                return 0

            print(f"{'Student ID':<16} {'Name':<28} {'Confidence':<11} {'Marked At'}")
            print("-" * 80)
            for row in rows:
                confidence = f"{row.confidence:.3f}" if row.confidence is not None else "-"
                print(f"{row.student_id:<16} {row.full_name:<28} {confidence:<11} {row.marked_at}")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
