# Training Attendance Tracker Configuration

import os
import tempfile
from datetime import timedelta
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_flag(name, default='False'):
    return os.environ.get(name, default).lower() in ['true', 'on', '1']


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'training-attendance-secret-key'

    # Database Configuration
    DATABASE_PATH = Path(os.environ.get('DATABASE_PATH') or BASE_DIR / 'database' / 'attendance.db')

    # Public URL encoded into attendance QR codes
    BASE_URL = os.environ.get('BASE_URL') or 'http://localhost:5000'

    MAX_CONTENT_LENGTH = 4 * 1024 * 1024  # 4MB max upload (participant CSV)

    # QR Code Configuration
    QR_CODE_SIZE = 10
    QR_CODE_BORDER = 4
    QR_CODE_ERROR_CORRECT = 'H'  # High error correction, survives glare on projected codes
    QR_CODE_SECURITY_TOKEN_LENGTH = 32
    QR_CODE_EXPIRY_MINUTES = int(os.environ.get('QR_CODE_EXPIRY_MINUTES') or 240)

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Security Configuration
    PASSWORD_MIN_LENGTH = 8
    ADMIN_CREATION_SECRET = os.environ.get('ADMIN_CREATION_SECRET')

    # Attendance Configuration
    ATTENDANCE_LATE_THRESHOLD_MINUTES = 15
    ATTENDANCE_PARTIAL_THRESHOLD_MINUTES = 30
    ATTENDANCE_REQUIRE_ENROLLMENT = True

    # Session auto-completion
    SESSION_SWEEP_ENABLED = _env_flag('SESSION_SWEEP_ENABLED', 'True')
    SESSION_SWEEP_INTERVAL_SECONDS = 60

    # Scanner Configuration
    SCANNER_FPS = 10
    SCANNER_DETECTION_BOX = 250
    SCANNER_CAMERA_INDEX = int(os.environ.get('SCANNER_CAMERA_INDEX') or 0)

    # Notification Configuration
    NOTIFICATIONS_ENABLED = True
    SSE_KEEPALIVE_SECONDS = 15

    # API Configuration
    API_TIMEOUT = 30  # seconds

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'attendance.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = _env_flag('DEBUG')
    TESTING = False

    @staticmethod
    def init_app(app):
        """Initialize application configuration"""
        if app.config['DATABASE_PATH'] != ':memory:':
            Path(app.config['DATABASE_PATH']).parent.mkdir(parents=True, exist_ok=True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = Path(os.environ.get('DATABASE_PATH') or BASE_DIR / 'database' / 'attendance_dev.db')

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # Connections are per thread, so tests need a file the sweeper and request threads share
    DATABASE_PATH = Path(tempfile.gettempdir()) / 'training_attendance_test.db'

    SESSION_SWEEP_ENABLED = False
    ADMIN_CREATION_SECRET = 'test-admin-secret'
    SSE_KEEPALIVE_SECONDS = 1


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Enhanced security for production
    SESSION_COOKIE_SECURE = True  # Requires HTTPS

    DATABASE_PATH = Path(os.environ.get('DATABASE_PATH') or BASE_DIR / 'database' / 'attendance_prod.db')

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        Config.init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        # Setup file logging
        if not app.debug:
            cls.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('Training Attendance Tracker startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


# Environment-specific configurations
def get_config():
    """Get configuration based on environment variable"""
    return config.get(os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)


# Validation functions
def validate_config(settings):
    """Validate configuration settings"""
    errors = []

    late = settings.get('ATTENDANCE_LATE_THRESHOLD_MINUTES')
    partial = settings.get('ATTENDANCE_PARTIAL_THRESHOLD_MINUTES')
    if late is None or late < 0:
        errors.append("ATTENDANCE_LATE_THRESHOLD_MINUTES must be zero or more")
    elif partial is None or partial < late:
        errors.append("ATTENDANCE_PARTIAL_THRESHOLD_MINUTES must not be below the late threshold")

    if settings.get('QR_CODE_ERROR_CORRECT') not in ('L', 'M', 'Q', 'H'):
        errors.append("QR_CODE_ERROR_CORRECT must be one of L, M, Q, H")

    if settings.get('QR_CODE_EXPIRY_MINUTES', 0) <= 0:
        errors.append("QR_CODE_EXPIRY_MINUTES must be positive")

    if settings.get('SESSION_SWEEP_INTERVAL_SECONDS', 0) <= 0:
        errors.append("SESSION_SWEEP_INTERVAL_SECONDS must be positive")

    if not str(settings.get('BASE_URL') or '').startswith(('http://', 'https://')):
        errors.append("BASE_URL must be an http(s) URL")

    return errors


# Initialize configuration
def init_config(app, config_name=None, overrides=None):
    """Initialize application with configuration"""
    if config_name is None:
        config_class = get_config()
    else:
        config_class = config.get(config_name, DevelopmentConfig)
    app.config.from_object(config_class)
    if overrides:
        app.config.update(overrides)

    config_class.init_app(app)

    # Validate configuration
    errors = validate_config(app.config)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    return config_class
