# Training Attendance Tracker - App Package
"""
Main application package for the Training Attendance Tracker.
This package contains the attendance service modules and the scanner client.
"""

__version__ = "1.0.0"
__author__ = "Training Attendance Team"
__description__ = "QR code attendance tracking for training sessions"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.qr_generator import QRGenerator
from .modules.qr_scanner import QRScanner, ScannerState
from .modules.attendance_manager import AttendanceManager, AttendancePolicy
from .modules.session_manager import SessionManager
from .modules.session_sweeper import SessionSweeper
from .modules.participant_manager import ParticipantManager
from .modules.live_attendance import LiveAttendanceView
from .modules.report_generator import ReportGenerator
from .modules.notification_system import NotificationSystem
from .modules.auth_manager import AuthManager

__all__ = [
    'DatabaseManager',
    'QRGenerator',
    'QRScanner',
    'ScannerState',
    'AttendanceManager',
    'AttendancePolicy',
    'SessionManager',
    'SessionSweeper',
    'ParticipantManager',
    'LiveAttendanceView',
    'ReportGenerator',
    'NotificationSystem',
    'AuthManager'
]
