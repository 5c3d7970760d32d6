"""
Authentication Manager Module - Training Attendance Tracker

This module handles user accounts, authentication and role-based permissions.

Accounts register as pending trainees and become usable once an admin
approves them. The first admin is created through ``bootstrap_admin`` with a
server-side secret.

Features:
- Password hashing (Werkzeug) and password policy
- Email/password authentication with lockout after repeated failures
- Approval workflow (pending -> active / rejected)
- Roles: admin, trainer, trainee
- Role-based permission checks
"""

from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional
import logging
import secrets
import sqlite3
import uuid
import re

from training_attendance.modules.exceptions import (
    ValidationError, NotFoundError, InvalidStateError, ConflictError,
    AuthenticationError, ForbiddenError, ConfigurationError
)

ROLE_ADMIN = 'admin'
ROLE_TRAINER = 'trainer'
ROLE_TRAINEE = 'trainee'
ROLES = (ROLE_ADMIN, ROLE_TRAINER, ROLE_TRAINEE)

USER_STATUS_PENDING = 'pending'
USER_STATUS_ACTIVE = 'active'
USER_STATUS_INACTIVE = 'inactive'
USER_STATUS_REJECTED = 'rejected'

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'

# Permission levels
PERMISSIONS = {
    ROLE_ADMIN: [
        'manage_users', 'manage_trainings', 'manage_sessions', 'manage_participants',
        'manage_categories', 'set_attendance', 'view_all_attendance', 'export_data',
        'process_join_requests', 'scan_qr_codes'
    ],
    ROLE_TRAINER: [
        'manage_trainings', 'manage_sessions', 'manage_participants', 'set_attendance',
        'view_session_attendance', 'export_data', 'process_join_requests'
    ],
    ROLE_TRAINEE: [
        'view_own_attendance', 'scan_qr_codes', 'self_enroll', 'request_join'
    ]
}


def has_permission(role: str, permission: str) -> bool:
    return permission in PERMISSIONS.get(role, [])


def public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """User row without the password hash."""
    if not user:
        return None
    return {key: value for key, value in user.items() if key != 'password_hash'}


class AuthManager:
    """
    User accounts, authentication and authorization.
    """

    def __init__(self, database_manager, password_min_length: int = 8):
        """
        Initialize the authentication manager.

        Args:
            database_manager: Database manager instance
            password_min_length (int): Minimum password length
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

        # Security settings
        self.security_config = {
            'password_min_length': password_min_length,
            'password_require_uppercase': True,
            'password_require_lowercase': True,
            'password_require_numbers': True,
            'password_require_special': False,
            'max_login_attempts': 5,
            'lockout_duration_minutes': 30
        }

        # Failed login attempts tracking, keyed by email
        self.failed_attempts: Dict[str, Dict[str, Any]] = {}

    # Accounts

    def create_user(self, email: str, password: str, full_name: str,
                    role: str = ROLE_TRAINEE, status: str = USER_STATUS_PENDING,
                    phone: str = None, department: str = None,
                    approved_by: str = None) -> Dict[str, Any]:
        """
        Create a user account.

        Args:
            email (str): Login email, unique
            password (str): Plain password, checked against the password policy
            full_name (str): Display name
            role (str): admin, trainer or trainee
            status (str): Initial account status

        Returns:
            Dict[str, Any]: The created user, without the password hash

        Raises:
            ValidationError: Invalid email, password, name or role
            ConflictError: Email already registered
        """
        email = (email or '').strip().lower()
        full_name = (full_name or '').strip()
        self._validate_user_data(email, password, full_name, role)

        user_id = str(uuid.uuid4())
        approved_at = datetime.now().isoformat(timespec='seconds') if status == USER_STATUS_ACTIVE else None

        try:
            self.db.execute_update(
                """INSERT INTO users (id, email, password_hash, full_name, phone, department,
                                      role, status, approved_at, approved_by)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (user_id, email, generate_password_hash(password), full_name, phone, department,
                 role, status, approved_at, approved_by)
            )
        except sqlite3.IntegrityError:
            raise ConflictError('An account with this email already exists.')

        self.logger.info(f"User created: {email} ({role}, {status})")
        return self.get_user(user_id)

    def register(self, email: str, password: str, full_name: str,
                 phone: str = None, department: str = None) -> Dict[str, Any]:
        """Self-registration: a pending trainee awaiting admin approval."""
        return self.create_user(email, password, full_name, ROLE_TRAINEE, USER_STATUS_PENDING,
                                phone=phone, department=department)

    def bootstrap_admin(self, email: str, password: str, full_name: str,
                        admin_secret: str, expected_secret: Optional[str]) -> Dict[str, Any]:
        """
        Create an active admin account, guarded by a server-side secret.

        Raises:
            ConfigurationError: No secret configured on the server
            AuthenticationError: Wrong secret
            ValidationError: Email or password missing
        """
        if not expected_secret:
            self.logger.error("Admin bootstrap attempted but ADMIN_CREATION_SECRET is not set")
            raise ConfigurationError('Server misconfiguration')

        if not admin_secret or not secrets.compare_digest(str(admin_secret), str(expected_secret)):
            self.logger.warning(f"Admin bootstrap rejected for {email}: invalid secret")
            raise AuthenticationError('Unauthorized')

        if not email or not password:
            raise ValidationError('Email and password required')

        user = self.create_user(email, password, full_name or 'System Admin',
                                role=ROLE_ADMIN, status=USER_STATUS_ACTIVE)
        self.logger.info(f"Admin account bootstrapped: {user['email']}")
        return user

    def get_user(self, user_id: str) -> Dict[str, Any]:
        user = self.db.execute_query(
            "SELECT * FROM users WHERE id = ?", (user_id,), fetch_all=False
        )
        if not user:
            raise NotFoundError('User not found.')
        return public_user(user)

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        user = self.db.execute_query(
            "SELECT * FROM users WHERE email = ?", ((email or '').strip().lower(),), fetch_all=False
        )
        return public_user(user)

    def list_users(self, status: str = None, role: str = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM users WHERE 1=1"
        params = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if role:
            query += " AND role = ?"
            params.append(role)
        query += " ORDER BY created_at DESC, full_name"
        return [public_user(user) for user in self.db.execute_query(query, params)]

    # Approval workflow

    def approve_user(self, user_id: str, approved_by: str) -> Dict[str, Any]:
        return self._set_status(user_id, USER_STATUS_ACTIVE, approved_by)

    def reject_user(self, user_id: str, rejected_by: str) -> Dict[str, Any]:
        return self._set_status(user_id, USER_STATUS_REJECTED, rejected_by)

    def _set_status(self, user_id: str, status: str, actor_id: str) -> Dict[str, Any]:
        user = self.get_user(user_id)
        if user['status'] != USER_STATUS_PENDING:
            raise InvalidStateError(f"User is already {user['status']}.")

        updated = self.db.execute_update(
            """UPDATE users
               SET status = ?, approved_at = ?, approved_by = ?, updated_at = CURRENT_TIMESTAMP
               WHERE id = ? AND status = ?""",
            (status, datetime.now().isoformat(timespec='seconds'), actor_id, user_id, USER_STATUS_PENDING)
        )
        if not updated:
            raise InvalidStateError('User was processed concurrently.')

        self.logger.info(f"User {user['email']} {status} by {actor_id}")
        return self.get_user(user_id)

    def set_role(self, user_id: str, role: str) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}")
        self.get_user(user_id)
        self.db.execute_update(
            "UPDATE users SET role = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (role, user_id)
        )
        self.logger.info(f"User {user_id} role set to {role}")
        return self.get_user(user_id)

    # Authentication

    def authenticate(self, email: str, password: str, ip_address: str = None) -> Dict[str, Any]:
        """
        Authenticate a user with email and password.

        Pending accounts authenticate so they can see their approval state;
        the API only serves them ``/api/auth/me``.

        Returns:
            Dict[str, Any]: User information with permissions

        Raises:
            AuthenticationError: Unknown email, wrong password or locked account
            ForbiddenError: Rejected or deactivated account
        """
        email = (email or '').strip().lower()
        if not email or not password:
            raise ValidationError('Email and password required')

        if self._is_account_locked(email):
            self.logger.warning(f"Authentication attempt for locked account: {email}")
            raise AuthenticationError('Too many failed attempts. Try again later.', reason='account_locked')

        user = self.db.execute_query(
            "SELECT * FROM users WHERE email = ?", (email,), fetch_all=False
        )
        if not user or not check_password_hash(user['password_hash'], password):
            self._record_failed_attempt(email, ip_address)
            self.logger.warning(f"Authentication failed for {email} from {ip_address or 'unknown'}")
            raise AuthenticationError('Invalid email or password.')

        if user['status'] in (USER_STATUS_REJECTED, USER_STATUS_INACTIVE):
            self.logger.warning(f"Login refused for {user['status']} account: {email}")
            raise ForbiddenError(f"Your account is {user['status']}.", reason=f"account_{user['status']}")

        self.failed_attempts.pop(email, None)
        self.logger.info(f"User authenticated successfully: {email}")

        result = public_user(user)
        result['permissions'] = self.get_user_permissions(user['role'])
        return result

    def get_user_permissions(self, role: str) -> List[str]:
        return list(PERMISSIONS.get(role, []))

    def _is_account_locked(self, email: str) -> bool:
        attempt_data = self.failed_attempts.get(email)
        if not attempt_data or attempt_data['count'] < self.security_config['max_login_attempts']:
            return False

        lockout_until = attempt_data['last_attempt'] + timedelta(
            minutes=self.security_config['lockout_duration_minutes']
        )
        if datetime.now() >= lockout_until:
            del self.failed_attempts[email]
            return False
        return True

    def _record_failed_attempt(self, email: str, ip_address: str = None) -> None:
        attempt_data = self.failed_attempts.setdefault(email, {'count': 0, 'ip_addresses': set()})
        attempt_data['count'] += 1
        attempt_data['last_attempt'] = datetime.now()
        if ip_address:
            attempt_data['ip_addresses'].add(ip_address)

        if attempt_data['count'] >= self.security_config['max_login_attempts']:
            self.logger.warning(f"Account locked after {attempt_data['count']} failed attempts: {email}")

    # Validation

    def _validate_user_data(self, email: str, password: str, full_name: str, role: str) -> None:
        if not email or not re.match(EMAIL_PATTERN, email):
            raise ValidationError('Invalid email address format')

        if not full_name:
            raise ValidationError('Full name is required')

        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}")

        self._validate_password(password)

    def _validate_password(self, password: str) -> None:
        """
        Validate a password against the security requirements.

        Raises:
            ValidationError: With the first unmet requirement
        """
        if not password:
            raise ValidationError('Password is required')

        min_length = self.security_config['password_min_length']
        if len(password) < min_length:
            raise ValidationError(f'Password must be at least {min_length} characters long')

        if self.security_config['password_require_uppercase'] and not re.search(r'[A-Z]', password):
            raise ValidationError('Password must contain at least one uppercase letter')

        if self.security_config['password_require_lowercase'] and not re.search(r'[a-z]', password):
            raise ValidationError('Password must contain at least one lowercase letter')

        if self.security_config['password_require_numbers'] and not re.search(r'\d', password):
            raise ValidationError('Password must contain at least one number')

        if self.security_config['password_require_special'] and not re.search(r'[!@#$%^&*(),.?":{}|<>]', password):
            raise ValidationError('Password must contain at least one special character')
