"""
Domain errors for the training attendance service.

Every error carries an ``error_type`` string (surfaced to clients as
``reason``) and the HTTP status code the API answers with.
"""


class AttendanceError(Exception):
    """Base class for all attendance domain errors."""

    error_type = 'attendance_error'
    status_code = 400

    def __init__(self, message: str, reason: str = None):
        super().__init__(message)
        self.message = message
        # Finer-grained cause, e.g. 'qr_expired' vs 'qr_token_mismatch'
        self.reason = reason or self.error_type

    def to_dict(self):
        return {
            'success': False,
            'message': self.message,
            'reason': self.reason,
        }


class ValidationError(AttendanceError):
    """Raised when a request payload is missing or malformed."""

    error_type = 'invalid_payload'
    status_code = 400


class NotFoundError(AttendanceError):
    """Raised when a session, user or other target does not exist."""

    error_type = 'not_found'
    status_code = 404


class InvalidStateError(AttendanceError):
    """Raised when an operation is attempted in the wrong session state."""

    error_type = 'invalid_state'
    status_code = 409


class TokenExpiredError(AttendanceError):
    """Raised for a stale, superseded or foreign attendance token."""

    error_type = 'token_expired'
    status_code = 410


class PermissionDeniedError(AttendanceError):
    """Raised when camera or hardware access is refused."""

    error_type = 'permission_denied'
    status_code = 403


class ForbiddenError(AttendanceError):
    """Raised when the acting user lacks the role for an operation."""

    error_type = 'forbidden'
    status_code = 403


class NotEnrolledError(AttendanceError):
    """Raised when a participant scans for a session they are not enrolled in."""

    error_type = 'not_enrolled'
    status_code = 403


class ConflictError(AttendanceError):
    """Raised on duplicate enrollment and other unique-key collisions."""

    error_type = 'conflict'
    status_code = 409


class AuthenticationError(AttendanceError):
    """Raised for missing or wrong credentials."""

    error_type = 'unauthorized'
    status_code = 401


class ConfigurationError(AttendanceError):
    """Raised when a required server setting is missing."""

    error_type = 'server_misconfiguration'
    status_code = 500
