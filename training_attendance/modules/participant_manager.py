"""
Participant Manager Module - Training Attendance Tracker

This module handles who takes part in which session: trainee self-enrollment,
assignment by trainers and admins (one by one, in bulk, from a CSV of e-mail
addresses or from a trainee category), unenrollment and roster queries.
It also maintains the trainee categories used for bulk enrollment.

Each (session, participant) pair can be enrolled once; a second enrollment
raises ConflictError instead of creating a duplicate.
"""

from typing import Dict, List, Any, Optional
import logging
import sqlite3
import csv
import io
import uuid

from training_attendance.modules.exceptions import (
    ValidationError, NotFoundError, InvalidStateError, ConflictError
)

ENROLLABLE_STATUSES = ('scheduled', 'active')


class ParticipantManager:
    """
    Enrollment and trainee category management.
    """

    def __init__(self, database_manager, notification_system=None):
        """
        Initialize the participant manager.

        Args:
            database_manager: Database manager instance
            notification_system: NotificationSystem used to tell assigned trainees
        """
        self.db = database_manager
        self.notification_system = notification_system
        self.logger = logging.getLogger(__name__)

    def _get_session(self, session_id: str) -> Dict[str, Any]:
        session = self.db.execute_query(
            "SELECT * FROM sessions WHERE id = ?", (session_id,), fetch_all=False
        )
        if not session:
            raise NotFoundError('Session not found.')
        return session

    def _get_user(self, user_id: str) -> Dict[str, Any]:
        user = self.db.execute_query(
            "SELECT id, email, full_name, role, status FROM users WHERE id = ?",
            (user_id,),
            fetch_all=False
        )
        if not user:
            raise NotFoundError('User not found.')
        return user

    def enroll(self, session_id: str, user_id: str, assigned_by: str = None) -> Dict[str, Any]:
        """
        Enroll a participant in a session.

        Args:
            session_id (str): Session identifier
            user_id (str): Participant to enroll
            assigned_by (str): Assigning trainer/admin, None for self-enrollment

        Returns:
            Dict[str, Any]: The enrollment row

        Raises:
            NotFoundError: Unknown session or user
            InvalidStateError: The session is completed or cancelled
            ConflictError: The participant is already enrolled
        """
        session = self._get_session(session_id)
        self._get_user(user_id)

        if session['status'] not in ENROLLABLE_STATUSES:
            raise InvalidStateError(f"Cannot enroll in a {session['status']} session.")

        enrollment_id = str(uuid.uuid4())
        try:
            self.db.execute_update(
                """INSERT INTO session_participants (id, session_id, user_id, assigned_by)
                   VALUES (?, ?, ?, ?)""",
                (enrollment_id, session_id, user_id, assigned_by)
            )
        except sqlite3.IntegrityError:
            raise ConflictError('You are already enrolled in this session')

        if assigned_by and self.notification_system:
            self.notification_system.send_session_notification(
                'session_assigned', session, [user_id]
            )

        self.logger.info(
            f"User {user_id} enrolled in session {session_id}"
            f" ({'assigned by ' + assigned_by if assigned_by else 'self'})"
        )
        return self.db.execute_query(
            "SELECT * FROM session_participants WHERE id = ?",
            (enrollment_id,),
            fetch_all=False
        )

    def assign_participants(self, session_id: str, user_ids: List[str],
                            assigned_by: str = None) -> Dict[str, Any]:
        """
        Enroll several participants, skipping those already enrolled.

        Returns:
            Dict[str, Any]: Counts plus the ids that were skipped or failed
        """
        if not user_ids:
            raise ValidationError('No participants given')

        results = {
            'success': True,
            'total': len(user_ids),
            'assigned': 0,
            'skipped': [],
            'errors': []
        }

        for user_id in user_ids:
            try:
                self.enroll(session_id, user_id, assigned_by=assigned_by)
                results['assigned'] += 1
            except ConflictError:
                results['skipped'].append(user_id)
            except NotFoundError as e:
                results['errors'].append({'user_id': user_id, 'error': e.message})

        if results['errors']:
            results['success'] = False

        self.logger.info(
            f"Bulk assignment to session {session_id}: "
            f"{results['assigned']}/{results['total']} assigned"
        )
        return results

    def import_participants_from_csv(self, session_id: str, csv_content: str,
                                     assigned_by: str = None) -> Dict[str, Any]:
        """
        Assign participants listed in a CSV with an ``email`` column.

        Args:
            session_id (str): Session identifier
            csv_content (str): CSV content as string
            assigned_by (str): Acting trainer/admin

        Returns:
            Dict[str, Any]: Assignment result plus any unknown e-mail addresses
        """
        csv_reader = csv.DictReader(io.StringIO(csv_content))
        if not csv_reader.fieldnames or 'email' not in [f.strip().lower() for f in csv_reader.fieldnames]:
            raise ValidationError("CSV must have an 'email' column")

        user_ids = []
        unknown = []
        for row_num, row in enumerate(csv_reader, start=2):
            normalized = {(k or '').strip().lower(): (v or '').strip() for k, v in row.items()}
            email = normalized.get('email', '').lower()
            if not email:
                continue

            user = self.db.execute_query(
                "SELECT id FROM users WHERE LOWER(email) = ?", (email,), fetch_all=False
            )
            if user:
                user_ids.append(user['id'])
            else:
                unknown.append({'row': row_num, 'email': email})

        if not user_ids:
            raise ValidationError('No known participants found in CSV')

        result = self.assign_participants(session_id, user_ids, assigned_by)
        result['unknown_emails'] = unknown
        result['import_method'] = 'csv'
        return result

    def unenroll(self, session_id: str, user_id: str) -> bool:
        """Remove a participant from a session that has not finished."""
        session = self._get_session(session_id)
        if session['status'] not in ENROLLABLE_STATUSES:
            raise InvalidStateError(f"Cannot change participants of a {session['status']} session.")

        removed = self.db.execute_update(
            "DELETE FROM session_participants WHERE session_id = ? AND user_id = ?",
            (session_id, user_id)
        )
        if not removed:
            raise NotFoundError('Participant is not enrolled in this session.')

        self.logger.info(f"User {user_id} removed from session {session_id}")
        return True

    def is_enrolled(self, session_id: str, user_id: str) -> bool:
        row = self.db.execute_query(
            "SELECT 1 FROM session_participants WHERE session_id = ? AND user_id = ?",
            (session_id, user_id),
            fetch_all=False
        )
        return row is not None

    def list_participants(self, session_id: str) -> List[Dict[str, Any]]:
        """Enrolled participants with their attendance, ordered by name."""
        self._get_session(session_id)
        return self.db.execute_query(
            """SELECT p.user_id, p.assigned_by, p.assigned_at,
                      u.full_name, u.email, u.department,
                      a.status AS attendance_status, a.attendance_type, a.join_time
               FROM session_participants p
               JOIN users u ON u.id = p.user_id
               LEFT JOIN attendance a ON a.session_id = p.session_id AND a.user_id = p.user_id
               WHERE p.session_id = ?
               ORDER BY u.full_name""",
            (session_id,)
        )

    def list_sessions_for_user(self, user_id: str, status: str = None) -> List[Dict[str, Any]]:
        """Sessions a participant is enrolled in, with their own attendance status."""
        query = """SELECT s.*, a.status AS attendance_status, a.join_time
                   FROM session_participants p
                   JOIN sessions s ON s.id = p.session_id
                   LEFT JOIN attendance a ON a.session_id = s.id AND a.user_id = p.user_id
                   WHERE p.user_id = ?"""
        params = [user_id]
        if status:
            query += " AND s.status = ?"
            params.append(status)
        query += " ORDER BY s.scheduled_date, s.start_time"
        return self.db.execute_query(query, tuple(params))

    # Categories

    def create_category(self, name: str, description: str = None, color: str = None,
                        created_by: str = None) -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValidationError('Category name is required')

        category_id = str(uuid.uuid4())
        try:
            self.db.execute_update(
                """INSERT INTO trainee_categories (id, name, description, color, created_by)
                   VALUES (?, ?, ?, COALESCE(?, '#3B82F6'), ?)""",
                (category_id, name.strip(), description, color, created_by)
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"Category '{name.strip()}' already exists")

        self.logger.info(f"Category created: {name} ({category_id})")
        return self.db.execute_query(
            "SELECT * FROM trainee_categories WHERE id = ?", (category_id,), fetch_all=False
        )

    def list_categories(self) -> List[Dict[str, Any]]:
        return self.db.execute_query(
            """SELECT c.*, COUNT(uc.user_id) AS member_count
               FROM trainee_categories c
               LEFT JOIN user_categories uc ON uc.category_id = c.id
               GROUP BY c.id
               ORDER BY c.name"""
        )

    def delete_category(self, category_id: str) -> bool:
        removed = self.db.execute_update(
            "DELETE FROM trainee_categories WHERE id = ?", (category_id,)
        )
        if not removed:
            raise NotFoundError('Category not found.')
        return True

    def assign_category(self, user_id: str, category_id: str,
                        assigned_by: str = None) -> bool:
        """
        Put a user into a category.

        Returns:
            bool: False if the user was already a member
        """
        self._get_user(user_id)
        if not self.db.execute_query(
            "SELECT id FROM trainee_categories WHERE id = ?", (category_id,), fetch_all=False
        ):
            raise NotFoundError('Category not found.')

        try:
            self.db.execute_update(
                """INSERT INTO user_categories (id, user_id, category_id, assigned_by)
                   VALUES (?, ?, ?, ?)""",
                (str(uuid.uuid4()), user_id, category_id, assigned_by)
            )
        except sqlite3.IntegrityError:
            return False
        return True

    def remove_category(self, user_id: str, category_id: str) -> bool:
        return self.db.execute_update(
            "DELETE FROM user_categories WHERE user_id = ? AND category_id = ?",
            (user_id, category_id)
        ) > 0

    def get_user_categories(self, user_id: str) -> List[Dict[str, Any]]:
        return self.db.execute_query(
            """SELECT c.* FROM user_categories uc
               JOIN trainee_categories c ON c.id = uc.category_id
               WHERE uc.user_id = ?
               ORDER BY c.name""",
            (user_id,)
        )

    def enroll_category(self, session_id: str, category_id: str,
                        assigned_by: str = None) -> Dict[str, Any]:
        """Assign every active member of a category to a session."""
        members = self.db.execute_query(
            """SELECT u.id FROM user_categories uc
               JOIN users u ON u.id = uc.user_id
               WHERE uc.category_id = ? AND u.status = 'active'""",
            (category_id,)
        )
        if not members:
            raise ValidationError('Category has no active members')
        return self.assign_participants(session_id, [m['id'] for m in members], assigned_by)
