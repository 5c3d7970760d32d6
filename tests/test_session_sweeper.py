import time
import threading
from datetime import datetime

from training_attendance.modules.session_sweeper import SessionSweeper


def at(hour, minute=0, day=2):
    return datetime(2026, 3, day, hour, minute)


def test_sweep_completes_overdue_sessions_once(sweeper, make_session, session_manager,
                                                participant_manager, attendance_manager, make_user):
    overdue = make_session()
    running = make_session(start_time="09:30", end_time="11:00")
    trainee = make_user()
    participant_manager.enroll(overdue["id"], trainee["id"])
    session_manager.start_session(overdue["id"], now=at(9))
    session_manager.start_session(running["id"], now=at(9, 30))

    first = sweeper.sweep(now=at(10, 5))
    second = sweeper.sweep(now=at(10, 6))

    assert first["success"] is True
    assert first["completed"] == 1
    assert first["sessionIds"] == [overdue["id"]]
    assert first["message"] == "Auto-completed 1 sessions"
    assert second["completed"] == 0
    assert second["message"] == "No sessions to complete"

    completed = session_manager.get_session(overdue["id"])
    assert completed["status"] == "completed"
    assert completed["actual_end_time"] == "2026-03-02T10:05:00"
    assert session_manager.get_session(running["id"])["status"] == "active"
    assert attendance_manager.get_record(overdue["id"], trainee["id"])["status"] == "absent"


def test_sweep_completes_sessions_from_previous_days(sweeper, make_session, session_manager):
    yesterday = make_session(start_time="18:00", end_time="19:00")
    session_manager.start_session(yesterday["id"], now=at(18))

    result = sweeper.sweep(now=at(8, day=3))

    assert result["sessionIds"] == [yesterday["id"]]


def test_sweep_ignores_scheduled_sessions(sweeper, make_session, session_manager):
    scheduled = make_session()

    assert sweeper.sweep(now=at(12))["completed"] == 0
    assert session_manager.get_session(scheduled["id"])["status"] == "scheduled"


def test_sweep_at_end_time_completes(sweeper, make_session, session_manager):
    training_session = make_session()
    session_manager.start_session(training_session["id"], now=at(9))

    assert sweeper.sweep(now=at(9, 59))["completed"] == 0
    assert sweeper.sweep(now=at(10))["completed"] == 1


def test_concurrent_sweeps_complete_each_session_once(db, attendance_manager, make_session,
                                                      session_manager, participant_manager, make_user):
    trainee = make_user()
    session_ids = []
    for hour in range(8, 13):
        overdue = make_session(start_time=f"{hour:02d}:00", end_time=f"{hour:02d}:30")
        participant_manager.enroll(overdue["id"], trainee["id"])
        session_manager.start_session(overdue["id"], now=at(hour))
        session_ids.append(overdue["id"])

    sweepers = [SessionSweeper(db, attendance_manager) for _ in range(8)]
    barrier = threading.Barrier(len(sweepers))
    results = []

    def run(session_sweeper):
        barrier.wait()
        results.append(session_sweeper.sweep(now=at(14)))

    threads = [threading.Thread(target=run, args=(s,)) for s in sweepers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == 8
    assert all(result["success"] for result in results)
    assert sum(result["completed"] for result in results) == 5
    assert sorted(sid for result in results for sid in result["sessionIds"]) == sorted(session_ids)
    for session_id in session_ids:
        assert session_manager.get_session(session_id)["status"] == "completed"
        assert attendance_manager.get_record(session_id, trainee["id"])["status"] == "absent"


def test_background_timer_sweeps(db, attendance_manager, make_session, session_manager):
    past = make_session(scheduled_date="2020-01-06")
    session_manager.start_session(past["id"], now=datetime(2020, 1, 6, 9))

    timer = SessionSweeper(db, attendance_manager, interval_seconds=0.05)
    timer.start()
    try:
        assert timer.is_running
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if session_manager.get_session(past["id"])["status"] == "completed":
                break
            time.sleep(0.02)
        assert session_manager.get_session(past["id"])["status"] == "completed"
    finally:
        timer.stop()

    assert not timer.is_running
    timer.stop()
