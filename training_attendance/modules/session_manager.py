"""
Session Manager Module - Training Attendance Tracker

This module manages trainings and their scheduled sessions, including the
session lifecycle. Status only ever moves forward:

    scheduled -> active -> completed
    scheduled -> cancelled
    active    -> cancelled

Starting a session stamps ``actual_start_time`` and issues the first QR
token; ending it stamps ``actual_end_time`` and marks every enrolled
participant without a record as absent.
"""

from datetime import datetime, date, time
from typing import Dict, List, Any, Optional
import logging
import uuid

from training_attendance.modules.exceptions import (
    ValidationError, NotFoundError, InvalidStateError
)

STATUS_SCHEDULED = 'scheduled'
STATUS_ACTIVE = 'active'
STATUS_COMPLETED = 'completed'
STATUS_CANCELLED = 'cancelled'

ALLOWED_TRANSITIONS = {
    STATUS_ACTIVE: (STATUS_SCHEDULED,),
    STATUS_COMPLETED: (STATUS_ACTIVE,),
    STATUS_CANCELLED: (STATUS_SCHEDULED, STATUS_ACTIVE),
}

UPDATABLE_FIELDS = (
    'title', 'description', 'scheduled_date', 'start_time', 'end_time',
    'location', 'trainer_id', 'training_id',
    'late_threshold_minutes', 'partial_threshold_minutes'
)


def normalize_date(value) -> str:
    """Return a date as ``YYYY-MM-DD``; raises ValidationError if unparseable."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}")


def normalize_time(value) -> str:
    """Return a time of day as ``HH:MM:SS``; accepts ``HH:MM`` too."""
    if isinstance(value, time):
        return value.replace(microsecond=0).isoformat()
    try:
        return time.fromisoformat(str(value).strip()).replace(microsecond=0).isoformat()
    except ValueError:
        raise ValidationError(f"Invalid time: {value!r}")


def session_start_datetime(session: Dict[str, Any]) -> datetime:
    """Scheduled start of a session as a naive local datetime."""
    return datetime.combine(
        date.fromisoformat(session['scheduled_date']),
        time.fromisoformat(session['start_time'])
    )


class SessionManager:
    """
    Training and session administration, including lifecycle transitions.
    """

    def __init__(self, database_manager, qr_generator, attendance_manager=None,
                 notification_system=None):
        """
        Initialize the session manager.

        Args:
            database_manager: Database manager instance
            qr_generator: QRGenerator used to issue tokens when sessions start
            attendance_manager: AttendanceManager used to mark absentees on completion
            notification_system: NotificationSystem for participant inbox messages
        """
        self.db = database_manager
        self.qr_generator = qr_generator
        self.attendance_manager = attendance_manager
        self.notification_system = notification_system
        self.logger = logging.getLogger(__name__)

    # Trainings

    def create_training(self, title: str, description: str = None, start_date=None,
                        end_date=None, created_by: str = None) -> Dict[str, Any]:
        """
        Create a training programme that sessions can be grouped under.

        Returns:
            Dict[str, Any]: The stored training
        """
        if not title or not str(title).strip():
            raise ValidationError('Training title is required')

        start = normalize_date(start_date) if start_date else None
        end = normalize_date(end_date) if end_date else None
        if start and end and end < start:
            raise ValidationError('Training end date must not be before its start date')

        training_id = str(uuid.uuid4())
        self.db.execute_update(
            """INSERT INTO trainings (id, title, description, start_date, end_date, created_by)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (training_id, title.strip(), description, start, end, created_by)
        )
        self.logger.info(f"Training created: {title} ({training_id})")
        return self.get_training(training_id)

    def get_training(self, training_id: str) -> Dict[str, Any]:
        training = self.db.execute_query(
            "SELECT * FROM trainings WHERE id = ?", (training_id,), fetch_all=False
        )
        if not training:
            raise NotFoundError('Training not found.')
        return training

    def list_trainings(self) -> List[Dict[str, Any]]:
        return self.db.execute_query(
            """SELECT t.*, COUNT(s.id) AS session_count
               FROM trainings t
               LEFT JOIN sessions s ON s.training_id = t.id
               GROUP BY t.id
               ORDER BY t.start_date IS NULL, t.start_date, t.title"""
        )

    # Sessions

    def create_session(self, title: str, scheduled_date, start_time, end_time,
                       trainer_id: str = None, training_id: str = None,
                       location: str = None, description: str = None,
                       created_by: str = None, late_threshold_minutes: int = None,
                       partial_threshold_minutes: int = None) -> Dict[str, Any]:
        """
        Schedule a new session.

        Args:
            title (str): Session title
            scheduled_date: Date of the session (``YYYY-MM-DD`` or date)
            start_time: Start time of day (``HH:MM[:SS]`` or time)
            end_time: End time of day, must be after the start
            trainer_id (str): Trainer running the session
            training_id (str): Optional parent training
            location (str): Venue
            description (str): Free text
            created_by (str): Acting user
            late_threshold_minutes (int): Per-session grace window override
            partial_threshold_minutes (int): Per-session partial window override

        Returns:
            Dict[str, Any]: The stored session
        """
        if not title or not str(title).strip():
            raise ValidationError('Session title is required')

        session_date = normalize_date(scheduled_date)
        start = normalize_time(start_time)
        end = normalize_time(end_time)
        if end <= start:
            raise ValidationError('Session end time must be after its start time')

        late_threshold_minutes, partial_threshold_minutes = self._coerce_thresholds(
            late_threshold_minutes, partial_threshold_minutes
        )

        if training_id:
            self.get_training(training_id)

        session_id = str(uuid.uuid4())
        self.db.execute_update(
            """INSERT INTO sessions (id, training_id, title, description, scheduled_date,
                                     start_time, end_time, location, trainer_id, created_by,
                                     status, late_threshold_minutes, partial_threshold_minutes)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (session_id, training_id, title.strip(), description, session_date, start, end,
             location, trainer_id, created_by, STATUS_SCHEDULED,
             late_threshold_minutes, partial_threshold_minutes)
        )

        self.logger.info(f"Session scheduled: {title} on {session_date} {start}-{end} ({session_id})")
        return self.get_session(session_id)

    def _coerce_thresholds(self, late, partial):
        """Return the grace windows as ints (or None), rejecting bad values."""
        values = []
        for value in (late, partial):
            if value is None or value == '':
                values.append(None)
                continue
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValidationError('Attendance thresholds must be whole numbers of minutes')
            if value < 0:
                raise ValidationError('Attendance thresholds must not be negative')
            values.append(value)
        late, partial = values
        if late is not None and partial is not None and partial < late:
            raise ValidationError('Partial threshold must not be shorter than the late threshold')
        return late, partial

    def get_session(self, session_id: str) -> Dict[str, Any]:
        """
        Fetch one session with its training title and trainer name.

        Raises:
            NotFoundError: Unknown session
        """
        session = self.db.execute_query(
            """SELECT s.*, t.title AS training_title, u.full_name AS trainer_name
               FROM sessions s
               LEFT JOIN trainings t ON t.id = s.training_id
               LEFT JOIN users u ON u.id = s.trainer_id
               WHERE s.id = ?""",
            (session_id,),
            fetch_all=False
        )
        if not session:
            raise NotFoundError('Session not found.')
        return session

    def list_sessions(self, trainer_id: str = None, status: str = None,
                      date_from=None, date_to=None, training_id: str = None) -> List[Dict[str, Any]]:
        """List sessions, optionally filtered, ordered by date and start time."""
        query = """SELECT s.*, t.title AS training_title, u.full_name AS trainer_name,
                          (SELECT COUNT(*) FROM session_participants p
                           WHERE p.session_id = s.id) AS participant_count
                   FROM sessions s
                   LEFT JOIN trainings t ON t.id = s.training_id
                   LEFT JOIN users u ON u.id = s.trainer_id
                   WHERE 1 = 1"""
        params = []

        if trainer_id:
            query += " AND s.trainer_id = ?"
            params.append(trainer_id)
        if status:
            query += " AND s.status = ?"
            params.append(status)
        if training_id:
            query += " AND s.training_id = ?"
            params.append(training_id)
        if date_from:
            query += " AND s.scheduled_date >= ?"
            params.append(normalize_date(date_from))
        if date_to:
            query += " AND s.scheduled_date <= ?"
            params.append(normalize_date(date_to))

        query += " ORDER BY s.scheduled_date, s.start_time"
        return self.db.execute_query(query, tuple(params))

    def update_session(self, session_id: str, session_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update the details of a scheduled session and notify its participants.

        Raises:
            InvalidStateError: The session already started, finished or was cancelled
        """
        session = self.get_session(session_id)
        if session['status'] != STATUS_SCHEDULED:
            raise InvalidStateError('Only scheduled sessions can be edited.')

        changes = {k: v for k, v in session_data.items() if k in UPDATABLE_FIELDS}
        if not changes:
            raise ValidationError('No valid fields to update')

        if 'scheduled_date' in changes:
            changes['scheduled_date'] = normalize_date(changes['scheduled_date'])
        for key in ('start_time', 'end_time'):
            if key in changes:
                changes[key] = normalize_time(changes[key])

        start = changes.get('start_time', session['start_time'])
        end = changes.get('end_time', session['end_time'])
        if end <= start:
            raise ValidationError('Session end time must be after its start time')

        late, partial = self._coerce_thresholds(
            changes.get('late_threshold_minutes', session['late_threshold_minutes']),
            changes.get('partial_threshold_minutes', session['partial_threshold_minutes'])
        )
        if 'late_threshold_minutes' in changes:
            changes['late_threshold_minutes'] = late
        if 'partial_threshold_minutes' in changes:
            changes['partial_threshold_minutes'] = partial

        assignments = ', '.join(f"{key} = ?" for key in changes)
        updated = self.db.execute_update(
            f"""UPDATE sessions SET {assignments}, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = ?""",
            tuple(changes.values()) + (session_id, STATUS_SCHEDULED)
        )
        if not updated:
            raise InvalidStateError('Only scheduled sessions can be edited.')

        session = self.get_session(session_id)
        self._notify_participants(session, 'session_updated')
        self.logger.info(f"Session updated: {session_id} ({', '.join(changes)})")
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session that has not started yet."""
        session = self.get_session(session_id)
        if session['status'] != STATUS_SCHEDULED:
            raise InvalidStateError('Only scheduled sessions can be deleted.')

        deleted = self.db.execute_update(
            "DELETE FROM sessions WHERE id = ? AND status = ?",
            (session_id, STATUS_SCHEDULED)
        )
        if not deleted:
            raise InvalidStateError('Only scheduled sessions can be deleted.')

        self.logger.info(f"Session deleted: {session_id}")
        return True

    # Lifecycle

    def _transition(self, session_id: str, new_status: str,
                    extra_assignments: str = '', extra_params: tuple = ()) -> Dict[str, Any]:
        """
        Move a session to ``new_status`` if its current status allows it.

        The status check and the write happen in a single UPDATE, so two
        concurrent callers cannot both perform the same transition.
        """
        allowed = ALLOWED_TRANSITIONS[new_status]
        placeholders = ', '.join('?' for _ in allowed)

        updated = self.db.execute_update(
            f"""UPDATE sessions
                SET status = ?{extra_assignments}, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status IN ({placeholders})""",
            (new_status,) + extra_params + (session_id,) + allowed
        )
        if not updated:
            session = self.get_session(session_id)
            raise InvalidStateError(
                f"Cannot move a {session['status']} session to {new_status}."
            )
        return self.get_session(session_id)

    def start_session(self, session_id: str, now: datetime = None) -> Dict[str, Any]:
        """
        Activate a scheduled session and issue its first QR token.

        Returns:
            Dict[str, Any]: ``session`` and the issued ``qr`` token details
        """
        now = now or datetime.now()
        self._transition(
            session_id, STATUS_ACTIVE,
            ', actual_start_time = ?', (now.isoformat(timespec='seconds'),)
        )
        qr = self.qr_generator.issue_token(session_id, now=now)
        self.logger.info(f"Session started: {session_id}")
        return {'session': self.get_session(session_id), 'qr': qr}

    def refresh_qr(self, session_id: str, now: datetime = None) -> Dict[str, Any]:
        """Issue a new token, superseding the one on display."""
        return self.qr_generator.issue_token(session_id, now=now)

    def end_session(self, session_id: str, now: datetime = None) -> Dict[str, Any]:
        """
        Complete an active session and mark absentees.

        Returns:
            Dict[str, Any]: ``session`` and the number of participants ``marked_absent``
        """
        now = now or datetime.now()
        self._transition(
            session_id, STATUS_COMPLETED,
            ', actual_end_time = ?', (now.isoformat(timespec='seconds'),)
        )

        marked_absent = 0
        if self.attendance_manager:
            marked_absent = self.attendance_manager.mark_absent_for_session(session_id, now=now)

        self.logger.info(f"Session completed: {session_id} ({marked_absent} marked absent)")
        return {'session': self.get_session(session_id), 'marked_absent': marked_absent}

    def cancel_session(self, session_id: str) -> Dict[str, Any]:
        """Cancel a scheduled or running session and tell its participants."""
        session = self._transition(session_id, STATUS_CANCELLED)
        self._notify_participants(session, 'session_cancelled')
        self.logger.info(f"Session cancelled: {session_id}")
        return session

    def is_session_trainer(self, session_id: str, user_id: str) -> bool:
        session = self.get_session(session_id)
        return session['trainer_id'] is not None and session['trainer_id'] == user_id

    def _notify_participants(self, session: Dict[str, Any], notification_type: str) -> None:
        if not self.notification_system:
            return

        participants = self.db.execute_query(
            "SELECT user_id FROM session_participants WHERE session_id = ?",
            (session['id'],)
        )
        self.notification_system.send_session_notification(
            notification_type, session, [row['user_id'] for row in participants]
        )
