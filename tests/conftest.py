import itertools

import pytest

from training_attendance.modules.attendance_manager import AttendanceManager
from training_attendance.modules.auth_manager import AuthManager
from training_attendance.modules.database_manager import DatabaseManager
from training_attendance.modules.notification_system import NotificationSystem
from training_attendance.modules.participant_manager import ParticipantManager
from training_attendance.modules.qr_generator import QRGenerator
from training_attendance.modules.session_manager import SessionManager
from training_attendance.modules.session_sweeper import SessionSweeper

BASE_URL = "https://attendance.example.com"
PASSWORD = "Password123"


@pytest.fixture
def db(tmp_path):
    database = DatabaseManager(tmp_path / "attendance.db")
    yield database
    database.close_all_connections()


@pytest.fixture
def notifications(db):
    system = NotificationSystem(db)
    yield system
    system.shutdown()


@pytest.fixture
def qr_generator(db):
    return QRGenerator(db, settings={"base_url": BASE_URL})


@pytest.fixture
def attendance_manager(db, notifications):
    return AttendanceManager(db, notifications)


@pytest.fixture
def session_manager(db, qr_generator, attendance_manager, notifications):
    return SessionManager(db, qr_generator, attendance_manager, notifications)


@pytest.fixture
def participant_manager(db, notifications):
    return ParticipantManager(db, notifications)


@pytest.fixture
def sweeper(db, attendance_manager):
    session_sweeper = SessionSweeper(db, attendance_manager, interval_seconds=0.05)
    yield session_sweeper
    session_sweeper.stop()


@pytest.fixture
def auth_manager(db):
    return AuthManager(db)


@pytest.fixture
def make_user(auth_manager):
    counter = itertools.count(1)

    def _make_user(role="trainee", full_name=None, status="active"):
        number = next(counter)
        return auth_manager.create_user(
            f"user{number}@example.com",
            PASSWORD,
            full_name or f"User {number}",
            role=role,
            status=status,
        )

    return _make_user


@pytest.fixture
def trainer(make_user):
    return make_user("trainer", "Tina Trainer")


@pytest.fixture
def make_session(session_manager, trainer):
    def _make_session(scheduled_date="2026-03-02", start_time="09:00", end_time="10:00", **kwargs):
        kwargs.setdefault("trainer_id", trainer["id"])
        return session_manager.create_session(
            kwargs.pop("title", "Safety Induction"),
            scheduled_date,
            start_time,
            end_time,
            **kwargs,
        )

    return _make_session
