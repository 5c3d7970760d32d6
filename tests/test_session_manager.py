from datetime import datetime

import pytest

from training_attendance.modules.exceptions import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from training_attendance.modules.session_manager import normalize_date, normalize_time


def test_normalize_date_and_time():
    assert normalize_date("2026-03-02") == "2026-03-02"
    assert normalize_date(datetime(2026, 3, 2, 9, 30)) == "2026-03-02"
    assert normalize_time("09:00") == "09:00:00"

    with pytest.raises(ValidationError):
        normalize_date("02/03/2026")
    with pytest.raises(ValidationError):
        normalize_time("9am")


def test_create_session_stores_schedule(make_session, trainer):
    training_session = make_session(location="Room 4")

    assert training_session["status"] == "scheduled"
    assert training_session["start_time"] == "09:00:00"
    assert training_session["end_time"] == "10:00:00"
    assert training_session["trainer_name"] == trainer["full_name"]
    assert training_session["qr_token"] is None


def test_create_session_validation(make_session):
    with pytest.raises(ValidationError):
        make_session(start_time="10:00", end_time="09:00")
    with pytest.raises(ValidationError):
        make_session(title="  ")
    with pytest.raises(ValidationError):
        make_session(late_threshold_minutes=20, partial_threshold_minutes=10)
    with pytest.raises(NotFoundError):
        make_session(training_id="missing")


@pytest.mark.parametrize("late, partial", [("abc", None), (None, "ten"), (-1, None), ([5], None)])
def test_bad_thresholds_are_rejected(make_session, late, partial):
    with pytest.raises(ValidationError):
        make_session(late_threshold_minutes=late, partial_threshold_minutes=partial)


def test_thresholds_are_stored_as_integers(session_manager, make_session):
    training_session = make_session(late_threshold_minutes="5", partial_threshold_minutes="")

    assert training_session["late_threshold_minutes"] == 5
    assert training_session["partial_threshold_minutes"] is None

    updated = session_manager.update_session(training_session["id"], {"partial_threshold_minutes": "12"})
    assert updated["partial_threshold_minutes"] == 12
    with pytest.raises(ValidationError):
        session_manager.update_session(training_session["id"], {"late_threshold_minutes": "soon"})


def test_sessions_can_belong_to_a_training(session_manager, make_session):
    training = session_manager.create_training("Onboarding", start_date="2026-03-01")
    training_session = make_session(training_id=training["id"])

    assert training_session["training_title"] == "Onboarding"
    assert session_manager.list_sessions(training_id=training["id"])[0]["id"] == training_session["id"]
    assert session_manager.list_trainings()[0]["title"] == "Onboarding"


def test_list_sessions_filters(session_manager, make_session, make_user):
    other_trainer = make_user("trainer")
    first = make_session(scheduled_date="2026-03-02")
    make_session(scheduled_date="2026-03-09", trainer_id=other_trainer["id"])

    assert [s["id"] for s in session_manager.list_sessions(date_to="2026-03-05")] == [first["id"]]
    assert len(session_manager.list_sessions(trainer_id=other_trainer["id"])) == 1
    assert session_manager.list_sessions(status="active") == []


def test_lifecycle_transitions(session_manager, make_session):
    training_session = make_session()
    session_id = training_session["id"]

    started = session_manager.start_session(session_id, now=datetime(2026, 3, 2, 8, 58))
    assert started["session"]["status"] == "active"
    assert started["session"]["actual_start_time"] == "2026-03-02T08:58:00"

    with pytest.raises(InvalidStateError):
        session_manager.start_session(session_id)

    ended = session_manager.end_session(session_id, now=datetime(2026, 3, 2, 10, 2))
    assert ended["session"]["status"] == "completed"
    assert ended["session"]["actual_end_time"] == "2026-03-02T10:02:00"

    with pytest.raises(InvalidStateError):
        session_manager.cancel_session(session_id)
    with pytest.raises(InvalidStateError):
        session_manager.refresh_qr(session_id)


def test_end_requires_active_session(session_manager, make_session):
    training_session = make_session()
    with pytest.raises(InvalidStateError):
        session_manager.end_session(training_session["id"])


def test_update_only_while_scheduled(session_manager, make_session, participant_manager,
                                     make_user, notifications):
    training_session = make_session()
    trainee = make_user()
    participant_manager.enroll(training_session["id"], trainee["id"])

    updated = session_manager.update_session(
        training_session["id"], {"location": "Hall B", "end_time": "11:00", "status": "completed"}
    )
    assert updated["location"] == "Hall B"
    assert updated["end_time"] == "11:00:00"
    assert updated["status"] == "scheduled"
    assert notifications.get_notifications(trainee["id"])[0]["type"] == "session_updated"

    with pytest.raises(ValidationError):
        session_manager.update_session(training_session["id"], {"end_time": "08:00"})
    with pytest.raises(ValidationError):
        session_manager.update_session(training_session["id"], {"status": "active"})

    session_manager.start_session(training_session["id"], now=datetime(2026, 3, 2, 9))
    with pytest.raises(InvalidStateError):
        session_manager.update_session(training_session["id"], {"location": "Hall C"})


def test_cancel_notifies_participants(session_manager, make_session, participant_manager,
                                      make_user, notifications):
    training_session = make_session()
    trainee = make_user()
    participant_manager.enroll(training_session["id"], trainee["id"])

    cancelled = session_manager.cancel_session(training_session["id"])

    assert cancelled["status"] == "cancelled"
    inbox = notifications.get_notifications(trainee["id"])
    assert inbox[0]["title"] == "Session cancelled: Safety Induction"


def test_delete_only_scheduled_sessions(session_manager, make_session):
    training_session = make_session()
    other = make_session()
    session_manager.start_session(other["id"], now=datetime(2026, 3, 2, 9))

    assert session_manager.delete_session(training_session["id"]) is True
    with pytest.raises(NotFoundError):
        session_manager.get_session(training_session["id"])
    with pytest.raises(InvalidStateError):
        session_manager.delete_session(other["id"])


def test_is_session_trainer(session_manager, make_session, trainer, make_user):
    training_session = make_session()

    assert session_manager.is_session_trainer(training_session["id"], trainer["id"])
    assert not session_manager.is_session_trainer(training_session["id"], make_user()["id"])
