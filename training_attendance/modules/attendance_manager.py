"""
Attendance Manager Module - Training Attendance Tracker

This module validates QR attendance scans and writes attendance records.
A scan is checked in a fixed order:

1. the session exists;
2. the session is active;
3. the presented token is the session's current token and has not expired;
4. the participant is enrolled.

The arrival is then classified against the session's start using the
central ``AttendancePolicy``.

Records are keyed by (session, participant) and written with a single
``INSERT ... ON CONFLICT DO UPDATE``, so re-scans update instead of
duplicating. Every write is published to the notification system for live
views.

Features:
- QR scan validation and recording
- Configurable grace period (on_time / late / partial)
- Manual attendance override by trainers and admins
- Join requests with trainer approval
- Absentee marking when a session completes
- Session rosters and summary counts
"""

from datetime import datetime, timedelta
import logging
import secrets
import sqlite3
import uuid
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field

from training_attendance.modules.exceptions import (
    AttendanceError, ValidationError, NotFoundError, InvalidStateError,
    TokenExpiredError, NotEnrolledError, ForbiddenError, ConflictError
)
from training_attendance.modules.notification_system import EVENT_INSERT, EVENT_UPDATE
from training_attendance.modules.session_manager import session_start_datetime

STATUS_PRESENT = 'present'
STATUS_LATE = 'late'
STATUS_ABSENT = 'absent'
STATUS_PENDING = 'pending'

TYPE_ON_TIME = 'on_time'
TYPE_LATE = 'late'
TYPE_PARTIAL = 'partial'

# Classification -> stored status
TYPE_TO_STATUS = {
    TYPE_ON_TIME: STATUS_PRESENT,
    TYPE_LATE: STATUS_LATE,
    TYPE_PARTIAL: STATUS_LATE,
}

# Manual override choice -> (status, attendance_type)
MANUAL_STATUS_MAP = {
    'present': (STATUS_PRESENT, TYPE_ON_TIME),
    'late': (STATUS_LATE, TYPE_LATE),
    'partial': (STATUS_LATE, TYPE_PARTIAL),
    'absent': (STATUS_ABSENT, None),
}

RECORDED_STATUSES = (STATUS_PRESENT, STATUS_LATE)


@dataclass
class AttendancePolicy:
    """Grace windows, in minutes after the scheduled start."""
    late_threshold_minutes: int = 15
    partial_threshold_minutes: int = 30

    @classmethod
    def for_session(cls, session: Dict[str, Any], default: 'AttendancePolicy') -> 'AttendancePolicy':
        late = session.get('late_threshold_minutes')
        partial = session.get('partial_threshold_minutes')
        late = default.late_threshold_minutes if late is None else int(late)
        partial = default.partial_threshold_minutes if partial is None else int(partial)
        return cls(late, max(partial, late))

    def classify(self, joined_at: datetime, start: datetime) -> str:
        """Return on_time, late or partial for an arrival at ``joined_at``."""
        delay = joined_at - start
        if delay <= timedelta(minutes=self.late_threshold_minutes):
            return TYPE_ON_TIME
        if delay <= timedelta(minutes=self.partial_threshold_minutes):
            return TYPE_LATE
        return TYPE_PARTIAL


@dataclass
class AttendanceOutcome:
    """Verdict of an attendance scan."""
    success: bool
    message: str
    status: Optional[str] = None
    attendance_type: Optional[str] = None
    already_recorded: bool = False
    record: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'message': self.message,
            'status': self.status,
            'attendance_type': self.attendance_type,
            'already_recorded': self.already_recorded
        }


class AttendanceManager:
    """
    Attendance recording, overrides, join requests and roster queries.
    """

    def __init__(self, database_manager, notification_system=None,
                 default_policy: AttendancePolicy = None, require_enrollment: bool = True):
        """
        Initialize the attendance manager.

        Args:
            database_manager: Database manager instance
            notification_system: NotificationSystem receiving attendance changes
            default_policy (AttendancePolicy): Fallback grace windows from configuration
            require_enrollment (bool): Reject scans from participants who are not enrolled
        """
        self.db = database_manager
        self.notification_system = notification_system
        self.require_enrollment = require_enrollment
        self.logger = logging.getLogger(__name__)

        self.default_policy = default_policy or AttendancePolicy()
        self.logger.info(
            f"Configured attendance policy: late after {self.default_policy.late_threshold_minutes} min, "
            f"partial after {self.default_policy.partial_threshold_minutes} min"
        )

    def system_policy(self) -> AttendancePolicy:
        """
        Grace windows from system_settings, falling back to configuration.

        Read on every call so admin changes apply without a restart.
        """
        late = self.db.get_system_setting('late_threshold_minutes')
        partial = self.db.get_system_setting('partial_threshold_minutes')
        try:
            late = self.default_policy.late_threshold_minutes if late is None else int(late)
            partial = self.default_policy.partial_threshold_minutes if partial is None else int(partial)
        except ValueError as e:
            self.logger.error(f"Invalid attendance threshold setting, using configuration: {str(e)}")
            return self.default_policy
        return AttendancePolicy(late, max(partial, late))

    def get_policy(self, session: Dict[str, Any]) -> AttendancePolicy:
        return AttendancePolicy.for_session(session, self.system_policy())

    # Scanning

    def record_scan(self, token: str, session_id: str, participant_id: str,
                    now: datetime = None, ip_address: str = None,
                    user_agent: str = None) -> AttendanceOutcome:
        """
        Validate a scanned (token, session) pair and record attendance.

        Args:
            token (str): Token decoded from the QR code
            session_id (str): Session decoded from the QR code
            participant_id (str): The scanning participant
            now (datetime): Scan time, defaults to the current time
            ip_address (str): Client address, stored with the record
            user_agent (str): Client user agent, stored with the record

        Returns:
            AttendanceOutcome: Success verdict with a human-readable message

        Raises:
            ValidationError: Token, session or participant missing
            NotFoundError: Unknown session
            InvalidStateError: Session not active
            TokenExpiredError: Token expired, superseded or issued for another session
            NotEnrolledError: Participant not enrolled in the session
        """
        if not token or not session_id:
            raise ValidationError('Missing token or session ID')
        if not participant_id:
            raise ValidationError('Missing participant')

        now = now or datetime.now()
        error = None
        outcome = None
        event = None

        with self.db.transaction(immediate=True) as conn:
            session = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            session = dict(session) if session else None
            error = self._check_scan(conn, session, token, participant_id, now)

            if error is None:
                existing = conn.execute(
                    "SELECT * FROM attendance WHERE session_id = ? AND user_id = ?",
                    (session_id, participant_id)
                ).fetchone()

                if existing and existing['status'] in RECORDED_STATUSES:
                    outcome = AttendanceOutcome(
                        success=True,
                        message=f"Attendance already marked as {existing['status']}.",
                        status=existing['status'],
                        attendance_type=existing['attendance_type'],
                        already_recorded=True,
                        record=dict(existing)
                    )
                else:
                    attendance_type = self.get_policy(session).classify(
                        now, session_start_datetime(session)
                    )
                    status = TYPE_TO_STATUS[attendance_type]
                    record = self._upsert_record(
                        conn, session_id, participant_id, status, attendance_type,
                        join_time=now, now=now, token=token,
                        ip_address=ip_address, user_agent=user_agent
                    )
                    event = EVENT_UPDATE if existing else EVENT_INSERT
                    outcome = AttendanceOutcome(
                        success=True,
                        message=('Attendance marked as LATE.' if status == STATUS_LATE
                                 else 'Attendance marked successfully.'),
                        status=status,
                        attendance_type=attendance_type,
                        record=record
                    )

        if error is not None:
            self.logger.warning(
                f"Rejected scan by {participant_id} for session {session_id}: {error.reason}"
            )
            raise error

        if event:
            self.logger.info(
                f"Attendance recorded: {participant_id} in session {session_id} "
                f"as {outcome.status} ({outcome.attendance_type})"
            )
            self._publish(event, outcome.record)
            self._send_confirmation(session, participant_id, outcome.status)

        return outcome

    def _check_scan(self, conn, session: Optional[Dict[str, Any]], token: str,
                    participant_id: str, now: datetime) -> Optional[AttendanceError]:
        """Return the first failed check for a scan, or None."""
        if session is None:
            return NotFoundError('Session not found.')

        if session['status'] != 'active':
            return InvalidStateError('This session is not active.')

        expires_at = session['qr_expires_at']
        if not session['qr_token'] or not expires_at or now >= datetime.fromisoformat(expires_at):
            return TokenExpiredError('QR code has expired. Please refresh.', reason='qr_expired')

        if not secrets.compare_digest(session['qr_token'].encode(), token.encode()):
            return TokenExpiredError('QR code is outdated. Please refresh.', reason='qr_token_mismatch')

        if self.require_enrollment:
            enrolled = conn.execute(
                "SELECT 1 FROM session_participants WHERE session_id = ? AND user_id = ?",
                (session['id'], participant_id)
            ).fetchone()
            if not enrolled:
                return NotEnrolledError(f'You are not enrolled in "{session["title"]}".')

        return None

    def _upsert_record(self, conn, session_id: str, user_id: str, status: str,
                       attendance_type: Optional[str], join_time: Optional[datetime],
                       now: datetime, token: str = None, ip_address: str = None,
                       user_agent: str = None) -> Dict[str, Any]:
        """Insert or update the (session, user) record and return the stored row."""
        stamp = now.isoformat(timespec='seconds')
        conn.execute(
            """INSERT INTO attendance (id, session_id, user_id, join_time, status, attendance_type,
                                       qr_token_used, ip_address, user_agent, version,
                                       created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
               ON CONFLICT(session_id, user_id) DO UPDATE SET
                   join_time = excluded.join_time,
                   status = excluded.status,
                   attendance_type = excluded.attendance_type,
                   qr_token_used = COALESCE(excluded.qr_token_used, attendance.qr_token_used),
                   ip_address = COALESCE(excluded.ip_address, attendance.ip_address),
                   user_agent = COALESCE(excluded.user_agent, attendance.user_agent),
                   version = attendance.version + 1,
                   updated_at = excluded.updated_at""",
            (str(uuid.uuid4()), session_id, user_id,
             join_time.isoformat(timespec='seconds') if join_time else None,
             status, attendance_type, token, ip_address, user_agent, stamp, stamp)
        )
        return dict(conn.execute(
            "SELECT * FROM attendance WHERE session_id = ? AND user_id = ?",
            (session_id, user_id)
        ).fetchone())

    def _publish(self, event: str, record: Dict[str, Any]) -> None:
        if self.notification_system:
            self.notification_system.publish_attendance(event, record)

    def _send_confirmation(self, session: Dict[str, Any], user_id: str, status: str) -> None:
        if self.notification_system:
            self.notification_system.send_session_notification(
                'attendance_confirmation', session, [user_id], status=status
            )

    def _get_session(self, session_id: str) -> Dict[str, Any]:
        session = self.db.execute_query(
            "SELECT * FROM sessions WHERE id = ?", (session_id,), fetch_all=False
        )
        if not session:
            raise NotFoundError('Session not found.')
        return session

    def _check_session_staff(self, session: Dict[str, Any], actor_id: str, actor_role: str) -> None:
        if actor_role == 'admin':
            return
        if actor_role == 'trainer' and session['trainer_id'] == actor_id:
            return
        raise ForbiddenError('Only the session trainer or an admin can do this.')

    # Manual override

    def set_attendance(self, session_id: str, user_id: str, status: str,
                       actor_id: str, actor_role: str, now: datetime = None) -> Dict[str, Any]:
        """
        Override a participant's attendance on an active session.

        Args:
            session_id (str): Session identifier
            user_id (str): Participant
            status (str): present, late, partial or absent
            actor_id (str): Acting user
            actor_role (str): Role of the acting user

        Returns:
            Dict[str, Any]: The stored record
        """
        if status not in MANUAL_STATUS_MAP:
            raise ValidationError(f"Invalid status: {status}")

        now = now or datetime.now()
        session = self._get_session(session_id)
        self._check_session_staff(session, actor_id, actor_role)

        if session['status'] != 'active':
            raise InvalidStateError('Attendance can only be changed while the session is active.')

        stored_status, attendance_type = MANUAL_STATUS_MAP[status]

        with self.db.transaction(immediate=True) as conn:
            existing = conn.execute(
                "SELECT * FROM attendance WHERE session_id = ? AND user_id = ?",
                (session_id, user_id)
            ).fetchone()

            join_time = None
            if stored_status != STATUS_ABSENT:
                join_time = (datetime.fromisoformat(existing['join_time'])
                             if existing and existing['join_time'] else now)

            record = self._upsert_record(
                conn, session_id, user_id, stored_status, attendance_type,
                join_time=join_time, now=now
            )

        self._publish(EVENT_UPDATE if existing else EVENT_INSERT, record)
        self.logger.info(f"Attendance for {user_id} in session {session_id} set to {status} by {actor_id}")
        return record

    # Join requests

    def request_join(self, session_id: str, user_id: str, now: datetime = None) -> Dict[str, Any]:
        """
        Ask to be admitted to an active session without scanning.

        Raises:
            InvalidStateError: Session not active
            ConflictError: A request already exists
        """
        now = now or datetime.now()
        session = self._get_session(session_id)
        if session['status'] != 'active':
            raise InvalidStateError('This session is not active.')

        request_id = str(uuid.uuid4())
        try:
            self.db.execute_update(
                """INSERT INTO join_requests (id, session_id, user_id, status, requested_at)
                   VALUES (?, ?, ?, 'pending', ?)""",
                (request_id, session_id, user_id, now.isoformat(timespec='seconds'))
            )
        except sqlite3.IntegrityError:
            raise ConflictError('You have already requested to join this session')

        self.logger.info(f"Join request {request_id}: {user_id} for session {session_id}")
        return self.get_join_request(request_id)

    def get_join_request(self, request_id: str) -> Dict[str, Any]:
        request = self.db.execute_query(
            "SELECT * FROM join_requests WHERE id = ?", (request_id,), fetch_all=False
        )
        if not request:
            raise NotFoundError('Join request not found.')
        return request

    def list_join_requests(self, session_id: str, status: str = None) -> List[Dict[str, Any]]:
        query = """SELECT r.*, u.full_name, u.email
                   FROM join_requests r
                   JOIN users u ON u.id = r.user_id
                   WHERE r.session_id = ?"""
        params = [session_id]
        if status:
            query += " AND r.status = ?"
            params.append(status)
        query += " ORDER BY r.requested_at"
        return self.db.execute_query(query, tuple(params))

    def process_join_request(self, request_id: str, action: str, actor_id: str,
                             actor_role: str, now: datetime = None) -> Dict[str, Any]:
        """
        Approve or reject a pending join request.

        Approval classifies the arrival by when the request was made and
        enrolls the participant if needed. A participant who is already
        recorded present or late keeps that record.

        Returns:
            Dict[str, Any]: ``success``, ``message``, the updated ``request`` and ``record``
        """
        if action not in ('approve', 'reject'):
            raise ValidationError("Action must be 'approve' or 'reject'")

        now = now or datetime.now()
        request = self.get_join_request(request_id)
        session = self._get_session(request['session_id'])
        self._check_session_staff(session, actor_id, actor_role)

        if request['status'] != 'pending':
            raise InvalidStateError(f"Join request already {request['status']}.")

        record = None
        event = None
        stamp = now.isoformat(timespec='seconds')
        new_status = 'approved' if action == 'approve' else 'rejected'

        with self.db.transaction(immediate=True) as conn:
            updated = conn.execute(
                """UPDATE join_requests SET status = ?, processed_at = ?, processed_by = ?
                   WHERE id = ? AND status = 'pending'""",
                (new_status, stamp, actor_id, request_id)
            ).rowcount
            if updated and action == 'approve':
                conn.execute(
                    """INSERT INTO session_participants (id, session_id, user_id, assigned_by)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(session_id, user_id) DO NOTHING""",
                    (str(uuid.uuid4()), session['id'], request['user_id'], actor_id)
                )
                existing = conn.execute(
                    "SELECT * FROM attendance WHERE session_id = ? AND user_id = ?",
                    (session['id'], request['user_id'])
                ).fetchone()

                if existing and existing['status'] in RECORDED_STATUSES and existing['join_time']:
                    record = dict(existing)
                else:
                    requested_at = datetime.fromisoformat(request['requested_at'])
                    attendance_type = self.get_policy(session).classify(
                        requested_at, session_start_datetime(session)
                    )
                    record = self._upsert_record(
                        conn, session['id'], request['user_id'],
                        TYPE_TO_STATUS[attendance_type], attendance_type,
                        join_time=requested_at, now=now
                    )
                    event = EVENT_UPDATE if existing else EVENT_INSERT

        if not updated:
            raise InvalidStateError('Join request already processed.')

        if event:
            self._publish(event, record)
        if self.notification_system:
            self.notification_system.send_session_notification(
                'join_request_processed', session, [request['user_id']], status=new_status
            )

        self.logger.info(f"Join request {request_id} {new_status} by {actor_id}")
        return {
            'success': True,
            'message': f"Request {new_status}",
            'request': self.get_join_request(request_id),
            'record': record
        }

    # Completion

    def mark_absent_for_session(self, session_id: str, now: datetime = None) -> int:
        """
        Create ``absent`` records for enrolled participants with no record.

        Returns:
            int: Number of participants marked absent
        """
        now = now or datetime.now()
        stamp = now.isoformat(timespec='seconds')
        records = []

        with self.db.transaction(immediate=True) as conn:
            missing = conn.execute(
                """SELECT p.user_id FROM session_participants p
                   LEFT JOIN attendance a ON a.session_id = p.session_id AND a.user_id = p.user_id
                   WHERE p.session_id = ? AND a.id IS NULL""",
                (session_id,)
            ).fetchall()

            for row in missing:
                conn.execute(
                    """INSERT INTO attendance (id, session_id, user_id, status, created_at, updated_at)
                       VALUES (?, ?, ?, 'absent', ?, ?)
                       ON CONFLICT(session_id, user_id) DO NOTHING""",
                    (str(uuid.uuid4()), session_id, row['user_id'], stamp, stamp)
                )
                records.append(dict(conn.execute(
                    "SELECT * FROM attendance WHERE session_id = ? AND user_id = ?",
                    (session_id, row['user_id'])
                ).fetchone()))

        for record in records:
            self._publish(EVENT_INSERT, record)

        if records:
            self.logger.info(f"Marked {len(records)} participant(s) absent for session {session_id}")
        return len(records)

    # Queries

    def get_record(self, session_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self.db.execute_query(
            "SELECT * FROM attendance WHERE session_id = ? AND user_id = ?",
            (session_id, user_id),
            fetch_all=False
        )

    def get_session_attendance(self, session_id: str) -> List[Dict[str, Any]]:
        """Attendance records of a session with participant names and e-mails."""
        return self.db.execute_query(
            """SELECT a.*, u.full_name, u.email
               FROM attendance a
               JOIN users u ON u.id = a.user_id
               WHERE a.session_id = ?
               ORDER BY a.join_time IS NULL, a.join_time, u.full_name""",
            (session_id,)
        )

    def get_session_roster(self, session_id: str) -> List[Dict[str, Any]]:
        """
        Every enrolled participant plus anyone with a record, with their status.
        Participants without a record are reported as pending.
        """
        rows = self.db.execute_query(
            """SELECT u.id AS user_id, u.full_name, u.email,
                      a.status, a.attendance_type, a.join_time
               FROM users u
               LEFT JOIN attendance a ON a.user_id = u.id AND a.session_id = ?
               WHERE u.id IN (SELECT user_id FROM session_participants WHERE session_id = ?)
                  OR a.id IS NOT NULL
               ORDER BY u.full_name""",
            (session_id, session_id)
        )
        for row in rows:
            row['status'] = row['status'] or STATUS_PENDING
        return rows

    def get_attendance_summary(self, session_id: str) -> Dict[str, Any]:
        """Counts by status over the session roster."""
        roster = self.get_session_roster(session_id)
        summary = {
            'total': len(roster),
            STATUS_PRESENT: 0,
            STATUS_LATE: 0,
            STATUS_ABSENT: 0,
            STATUS_PENDING: 0
        }
        for row in roster:
            summary[row['status']] += 1

        attended = summary[STATUS_PRESENT] + summary[STATUS_LATE]
        summary['attendance_rate'] = round(attended / summary['total'] * 100, 1) if summary['total'] else 0.0
        return summary

    def get_user_attendance_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return self.db.execute_query(
            """SELECT a.*, s.title AS session_title, s.scheduled_date, s.start_time, s.end_time
               FROM attendance a
               JOIN sessions s ON s.id = a.session_id
               WHERE a.user_id = ?
               ORDER BY s.scheduled_date DESC, s.start_time DESC
               LIMIT ?""",
            (user_id, limit)
        )
