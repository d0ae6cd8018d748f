import asyncio

import pytest

from classroom_attendance.config import SchedulerConfig
from classroom_attendance.exceptions import DetectionFailure, DimensionMismatch, RateLimited, SessionError
from classroom_attendance.scheduler import DetectionScheduler, SingleSlotScheduler
from classroom_attendance.session import AttendanceSessionController
from classroom_attendance.types import DetectionStatus, SchedulerStatus


@pytest.fixture
def controller(enrolled_db, stub_extractor, fake_clock):
    return AttendanceSessionController(
        enrolled_db,
        stub_extractor,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


def test_start_requires_a_known_session(controller):
    with pytest.raises(SessionError):
        controller.start_attendance()

    controller.select_session("missing")
    with pytest.raises(SessionError):
        controller.start_attendance()
    assert controller.scheduler is None


def test_state_listeners_see_start_and_stop(controller):
    states = []
    controller.subscribe(states.append)
    assert states[0].is_attendance_mode is False

    controller.select_session(" sess-1 ")
    session = controller.start_attendance()
    assert controller.get_state().selected_session == "sess-1"
    assert session.course_title == "Algorithms"
    assert isinstance(controller.scheduler, DetectionScheduler)
    assert states[-1].is_attendance_mode is True
    assert [record.id for record in states[-1].sessions] == ["sess-1"]

    controller.stop_attendance()
    assert controller.scheduler is None
    assert states[-1].is_attendance_mode is False
    assert controller.get_status().message == "Attendance mode is off"


def test_submit_frame_requires_active_attendance(controller, make_frame):
    async def scenario():
        with pytest.raises(SessionError):
            await controller.submit_frame(make_frame(10))

    asyncio.run(scenario())


def test_detection_outcomes_follow_pipeline(controller, enrolled_db, stub_extractor, make_frame):
    async def scenario():
        controller.select_session("sess-1")

        recognized = await controller.handle_detection(make_frame(30))
        assert recognized.status is DetectionStatus.RECOGNIZED
        assert recognized.identity_id == "S1"
        assert recognized.confidence == pytest.approx(1 - 0.14142, abs=1e-4)

        again = await controller.handle_detection(make_frame(10))
        assert again.status is DetectionStatus.ALREADY_MARKED
        assert again.display_name == "Ada Lovelace"

        assert (await controller.handle_detection(make_frame(40))).status is DetectionStatus.NOT_RECOGNIZED
        assert (await controller.handle_detection(make_frame(99))).status is DetectionStatus.NO_FACE
        assert (await controller.handle_detection("%%%")).status is DetectionStatus.ERROR

        with pytest.raises(DimensionMismatch):
            await controller.handle_detection(make_frame(50))

        rows = enrolled_db.list_attendance("sess-1")
        assert [row.student_id for row in rows] == ["S1"]
        assert controller.get_state().is_processing is False

    asyncio.run(scenario())


def test_gallery_subset_limits_candidates(controller, fake_clock, make_frame):
    async def scenario():
        controller.start_attendance("sess-1", student_ids=["S2"])
        assert (await controller.submit_frame(make_frame(10))).status is DetectionStatus.NOT_RECOGNIZED

        controller.stop_attendance()
        controller.start_attendance("sess-1")
        assert controller.gallery_student_ids is None
        assert (await controller.submit_frame(make_frame(10))).status is DetectionStatus.RECOGNIZED

    asyncio.run(scenario())


def test_failed_restart_keeps_running_session(controller, enrolled_db, make_frame):
    async def scenario():
        controller.start_attendance("sess-1")

        with pytest.raises(SessionError):
            controller.start_attendance("bogus", student_ids=["S2"])
        with pytest.raises(SessionError):
            controller.select_session("bogus")

        state = controller.get_state()
        assert state.is_attendance_mode is True
        assert state.selected_session == "sess-1"
        assert controller.gallery_student_ids is None

        outcome = await controller.submit_frame(make_frame(10))
        assert outcome.status is DetectionStatus.RECOGNIZED
        assert [row.student_id for row in enrolled_db.list_attendance("sess-1")] == ["S1"]

    asyncio.run(scenario())


def test_unsubscribed_status_listener_hears_nothing_more(controller, make_frame):
    async def scenario():
        seen = []
        unsubscribe = controller.subscribe_status(seen.append)
        controller.start_attendance("sess-1")
        unsubscribe()

        await controller.submit_frame(make_frame(10))
        controller.stop_attendance()
        assert seen == []

    asyncio.run(scenario())


def test_empty_gallery_is_not_recognized(db, stub_extractor, fake_clock, make_frame):
    async def scenario():
        db.create_session("Empty", "2026-10-19", session_id="empty")
        controller = AttendanceSessionController(db, stub_extractor, clock=fake_clock, sleep=fake_clock.sleep)
        controller.select_session("empty")
        assert (await controller.handle_detection(make_frame(10))).status is DetectionStatus.NOT_RECOGNIZED

    asyncio.run(scenario())


def test_frames_flow_through_queued_scheduler(controller, fake_clock, make_frame):
    async def scenario():
        statuses = []
        controller.subscribe_status(lambda snapshot: statuses.append(snapshot.status))
        controller.select_session("sess-1")
        controller.start_attendance()

        outcome = await controller.submit_frame(make_frame(10))
        assert outcome.status is DetectionStatus.RECOGNIZED
        assert SchedulerStatus.SUCCESS in statuses

        fake_clock.advance(1.0)
        with pytest.raises(RateLimited):
            await controller.submit_frame(make_frame(10))

        fake_clock.advance(5.0)
        with pytest.raises(DetectionFailure) as exc_info:
            await controller.submit_frame(make_frame(50))
        assert isinstance(exc_info.value.__cause__, DimensionMismatch)

    asyncio.run(scenario())


def test_restart_builds_fresh_scheduler_and_keeps_status_listeners(controller, make_frame):
    async def scenario():
        statuses = []
        controller.select_session("sess-1")
        controller.start_attendance()
        controller.subscribe_status(lambda snapshot: statuses.append(snapshot.status))

        await controller.submit_frame(make_frame(10))
        assert controller.get_status().cooldown_remaining_ms == 5000

        controller.stop_attendance()
        controller.start_attendance()
        assert controller.get_status().cooldown_remaining_ms == 0

        statuses.clear()
        outcome = await controller.submit_frame(make_frame(20))
        assert outcome.status is DetectionStatus.RECOGNIZED
        assert statuses[0] is SchedulerStatus.QUEUED

    asyncio.run(scenario())


def test_single_slot_mode_skips_busy_frames(enrolled_db, stub_extractor, fake_clock, make_frame):
    async def scenario():
        controller = AttendanceSessionController(
            enrolled_db,
            stub_extractor,
            config=SchedulerConfig(mode="single_slot"),
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )
        controller.select_session("sess-1")
        controller.start_attendance()
        assert isinstance(controller.scheduler, SingleSlotScheduler)

        first = await controller.submit_frame(make_frame(10))
        assert first.status is DetectionStatus.RECOGNIZED
        assert await controller.submit_frame(make_frame(20)) is None
        assert stub_extractor.calls == 1

    asyncio.run(scenario())
