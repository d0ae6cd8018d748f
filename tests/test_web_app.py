import base64

import cv2
import pytest
from fastapi.testclient import TestClient

from classroom_attendance.config import Settings
from classroom_attendance.exceptions import Cancelled, DetectionFailure, DimensionMismatch, QueueOverflow
from classroom_attendance.session import AttendanceSessionController
from classroom_attendance.web_app import _error_status, create_app

API = "/api/v1"


def _data_url(image) -> str:
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return "data:image/png;base64," + base64.b64encode(encoded.tobytes()).decode("ascii")


@pytest.fixture
def client(tmp_path, enrolled_db, stub_extractor, fake_clock):
    settings = Settings(db_path=tmp_path / "unused.db", log_dir=tmp_path / "logs")
    controller = AttendanceSessionController(
        enrolled_db,
        stub_extractor,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
    with TestClient(create_app(settings=settings, controller=controller)) as test_client:
        yield test_client


def test_health(client):
    response = client.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_create_and_list_sessions(client):
    response = client.post(
        f"{API}/sessions",
        json={"course_title": "Operating Systems", "session_date": "2026-10-20", "location": "Lab 1"},
    )
    assert response.status_code == 201
    created = response.json()
    assert created["session_date"] == "2026-10-20"

    listed = client.get(f"{API}/sessions").json()
    assert [session["id"] for session in listed] == [created["id"], "sess-1"]


def test_detection_requires_active_session(client, make_frame):
    response = client.post(f"{API}/detections", json={"image": _data_url(make_frame(10))})
    assert response.status_code == 400
    assert response.json()["error"] == "SessionError"

    response = client.post(f"{API}/attendance/start", json={"session_id": "missing"})
    assert response.status_code == 400


def test_detection_flow_and_rate_limit(client, fake_clock, make_frame):
    started = client.post(f"{API}/attendance/start", json={"session_id": "sess-1"})
    assert started.status_code == 200
    assert started.json()["course_title"] == "Algorithms"
    assert client.post(f"{API}/attendance/start", json={"session_id": "bogus"}).status_code == 400

    response = client.post(f"{API}/detections", json={"image": _data_url(make_frame(10))})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "recognized"
    assert body["identity_id"] == "S1"
    assert body["confidence"] == pytest.approx(1.0)

    limited = client.post(f"{API}/detections", json={"image": _data_url(make_frame(20))})
    assert limited.status_code == 429
    assert limited.json()["retry_after_ms"] == 5000
    assert limited.headers["retry-after"] == "5"

    fake_clock.advance(10.0)
    broken = client.post(f"{API}/detections", json={"image": "%%%"})
    assert broken.status_code == 200
    assert broken.json()["status"] == "error"

    status = client.get(f"{API}/status").json()
    assert status["attendance_mode"] is True
    assert status["selected_session"] == "sess-1"
    assert status["cooldown_remaining_ms"] == 3000

    rows = client.get(f"{API}/sessions/sess-1/attendance").json()
    assert [row["student_id"] for row in rows] == ["S1"]
    assert client.get(f"{API}/sessions/nope/attendance").status_code == 404

    stopped = client.post(f"{API}/attendance/stop")
    assert stopped.json() == {"ok": True, "session_id": "sess-1"}
    assert client.get(f"{API}/status").json()["message"] == "Attendance mode is off"


def test_start_with_student_subset(client, make_frame):
    client.post(f"{API}/attendance/start", json={"session_id": "sess-1", "student_ids": ["S2"]})
    response = client.post(f"{API}/detections", json={"image": _data_url(make_frame(10))})
    assert response.json()["status"] == "not_recognized"


def test_status_websocket_ping(client):
    with client.websocket_connect("/ws/status") as websocket:
        greeting = websocket.receive_json()
        assert greeting["type"] == "status"
        assert greeting["payload"]["status"] == "idle"

        websocket.send_text("ping")
        assert websocket.receive_json() == {"type": "pong"}

        client.post(f"{API}/attendance/start", json={"session_id": "sess-1"})
        event = websocket.receive_json()
        assert event["type"] == "session-started"
        assert event["payload"]["session_id"] == "sess-1"
        assert "timestamp" in event["payload"]


def test_error_status_mapping():
    assert _error_status(QueueOverflow("evicted")) == 409
    assert _error_status(Cancelled("reset")) == 409
    assert _error_status(DimensionMismatch(2, 3)) == 422
    assert _error_status(DetectionFailure("boom")) == 502
