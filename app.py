"""
Training Attendance Tracker - Main Application

This module serves as the main entry point for the training attendance
service. It builds the Flask application, wires the managers together and
exposes the JSON API.

Features:
- Session scheduling and lifecycle (start, end, cancel, auto-complete)
- Rotating attendance QR codes and scan recording
- Live attendance stream (server-sent events)
- Enrollment, categories and join requests
- Account approval and roles
- Attendance export to CSV/PDF/Excel
- Per-user notification inbox
"""

from flask import (
    Flask, Blueprint, Response, current_app, g, jsonify, request, send_file,
    session, stream_with_context
)
from werkzeug.exceptions import HTTPException
from functools import wraps
import io
import json
import logging
import os
import queue
import re

from config import init_config
from training_attendance.modules.database_manager import DatabaseManager
from training_attendance.modules.qr_generator import QRGenerator
from training_attendance.modules.attendance_manager import AttendanceManager, AttendancePolicy
from training_attendance.modules.session_manager import SessionManager
from training_attendance.modules.participant_manager import ParticipantManager
from training_attendance.modules.report_generator import ReportGenerator
from training_attendance.modules.notification_system import NotificationSystem
from training_attendance.modules.auth_manager import AuthManager, ROLE_ADMIN, ROLE_TRAINER
from training_attendance.modules.session_sweeper import SessionSweeper
from training_attendance.modules.live_attendance import LiveAttendanceView
from training_attendance.modules.exceptions import (
    AttendanceError, ValidationError, NotFoundError, ForbiddenError
)

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'training_attendance'

api = Blueprint('api', __name__)


def _service(name):
    return current_app.extensions[EXTENSION_KEY][name]


def _snake_case(key):
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


def _payload():
    """Request JSON with camelCase keys turned into snake_case."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return {_snake_case(key): value for key, value in data.items()}


def _require(data, *fields):
    missing = [name for name in fields if data.get(name) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


# Authentication

def _current_user():
    user_id = session.get('user_id')
    if not user_id:
        return None
    try:
        return _service('auth_manager').get_user(user_id)
    except NotFoundError:
        session.clear()
        return None


def login_required(f=None, allow_pending=False):
    """Decorator to require an authenticated, approved account"""
    def decorator(view):
        @wraps(view)
        def decorated_function(*args, **kwargs):
            user = _current_user()
            if user is None:
                return jsonify({
                    'success': False,
                    'message': 'Authentication required',
                    'reason': 'unauthorized'
                }), 401
            if user['status'] != 'active' and not allow_pending:
                return jsonify({
                    'success': False,
                    'message': 'Your account is awaiting approval.',
                    'reason': 'pending_approval'
                }), 403
            g.user = user
            return view(*args, **kwargs)
        return decorated_function

    if f is not None:
        return decorator(f)
    return decorator


def role_required(*roles):
    """Decorator to require one of the given roles"""
    def decorator(view):
        @wraps(view)
        @login_required
        def decorated_function(*args, **kwargs):
            if g.user['role'] not in roles:
                raise ForbiddenError('You do not have permission to do this.')
            return view(*args, **kwargs)
        return decorated_function
    return decorator


def _session_staff(session_id):
    """Return the session if the current user is an admin or its trainer."""
    training_session = _service('session_manager').get_session(session_id)
    user = g.user
    if user['role'] == ROLE_ADMIN:
        return training_session
    if user['role'] == ROLE_TRAINER and training_session['trainer_id'] == user['id']:
        return training_session
    raise ForbiddenError('Only the session trainer or an admin can do this.')


# Error handling

@api.errorhandler(AttendanceError)
def handle_attendance_error(error):
    return jsonify(error.to_dict()), error.status_code


@api.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return jsonify({'success': False, 'message': error.description}), error.code
    logger.error(f"Unhandled error on {request.method} {request.path}: {str(error)}", exc_info=True)
    return jsonify({
        'success': False,
        'message': 'An unexpected error occurred'
    }), 500


# Auth routes

@api.route('/api/auth/register', methods=['POST'])
def register():
    data = _payload()
    user = _service('auth_manager').register(
        data.get('email'), data.get('password'), data.get('full_name'),
        phone=data.get('phone'), department=data.get('department')
    )
    return jsonify({
        'success': True,
        'message': 'Registration successful. Your account is awaiting approval.',
        'user': user
    }), 201


@api.route('/api/auth/login', methods=['POST'])
def login():
    data = _payload()
    user = _service('auth_manager').authenticate(
        data.get('email'), data.get('password'), ip_address=request.remote_addr
    )

    session.clear()
    session['user_id'] = user['id']
    session['role'] = user['role']
    session.permanent = True

    logger.info(f"User {user['email']} logged in")
    return jsonify({'success': True, 'user': user})


@api.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True, 'message': 'Logged out'})


@api.route('/api/auth/me')
@login_required(allow_pending=True)
def me():
    user = dict(g.user)
    user['permissions'] = _service('auth_manager').get_user_permissions(user['role'])
    return jsonify({'success': True, 'user': user})


# Admin routes

@api.route('/api/admin/bootstrap', methods=['POST'])
def bootstrap_admin():
    data = _payload()
    user = _service('auth_manager').bootstrap_admin(
        data.get('email'), data.get('password'), data.get('full_name'),
        admin_secret=data.get('admin_secret'),
        expected_secret=current_app.config.get('ADMIN_CREATION_SECRET')
    )
    return jsonify({
        'success': True,
        'message': 'Admin user created successfully',
        'userId': user['id']
    })


@api.route('/api/admin/users')
@role_required(ROLE_ADMIN)
def list_users():
    users = _service('auth_manager').list_users(
        status=request.args.get('status'), role=request.args.get('role')
    )
    return jsonify({'success': True, 'users': users})


@api.route('/api/admin/users/<user_id>/<action>', methods=['POST'])
@role_required(ROLE_ADMIN)
def process_user(user_id, action):
    auth_manager = _service('auth_manager')
    if action == 'approve':
        user = auth_manager.approve_user(user_id, g.user['id'])
    elif action == 'reject':
        user = auth_manager.reject_user(user_id, g.user['id'])
    else:
        raise NotFoundError(f"Unknown action: {action}")
    return jsonify({'success': True, 'user': user})


@api.route('/api/admin/users/<user_id>/role', methods=['PUT'])
@role_required(ROLE_ADMIN)
def set_user_role(user_id):
    data = _payload()
    _require(data, 'role')
    user = _service('auth_manager').set_role(user_id, data['role'])
    return jsonify({'success': True, 'user': user})


# Trainings

@api.route('/api/trainings')
@login_required
def list_trainings():
    return jsonify({'success': True, 'trainings': _service('session_manager').list_trainings()})


@api.route('/api/trainings', methods=['POST'])
@role_required(ROLE_ADMIN, ROLE_TRAINER)
def create_training():
    data = _payload()
    training = _service('session_manager').create_training(
        data.get('title'), description=data.get('description'),
        start_date=data.get('start_date'), end_date=data.get('end_date'),
        created_by=g.user['id']
    )
    return jsonify({'success': True, 'training': training}), 201


# Sessions

@api.route('/api/sessions')
@login_required
def list_sessions():
    args = request.args
    if g.user['role'] in (ROLE_ADMIN, ROLE_TRAINER):
        sessions = _service('session_manager').list_sessions(
            trainer_id=args.get('trainerId'),
            status=args.get('status'),
            date_from=args.get('from'),
            date_to=args.get('to'),
            training_id=args.get('trainingId')
        )
    else:
        sessions = _service('participant_manager').list_sessions_for_user(
            g.user['id'], status=args.get('status')
        )
    return jsonify({'success': True, 'sessions': sessions})


@api.route('/api/sessions', methods=['POST'])
@role_required(ROLE_ADMIN, ROLE_TRAINER)
def create_session():
    data = _payload()
    _require(data, 'title', 'scheduled_date', 'start_time', 'end_time')

    trainer_id = data.get('trainer_id')
    if g.user['role'] == ROLE_TRAINER:
        trainer_id = g.user['id']

    training_session = _service('session_manager').create_session(
        data['title'], data['scheduled_date'], data['start_time'], data['end_time'],
        trainer_id=trainer_id,
        training_id=data.get('training_id'),
        location=data.get('location'),
        description=data.get('description'),
        created_by=g.user['id'],
        late_threshold_minutes=data.get('late_threshold_minutes'),
        partial_threshold_minutes=data.get('partial_threshold_minutes')
    )
    return jsonify({'success': True, 'session': training_session}), 201


@api.route('/api/sessions/auto-complete', methods=['POST'])
def auto_complete_sessions():
    result = _service('session_sweeper').sweep()
    return jsonify(result), (200 if result['success'] else 500)


@api.route('/api/sessions/<session_id>')
@login_required
def get_session(session_id):
    training_session = _service('session_manager').get_session(session_id)
    return jsonify({'success': True, 'session': training_session})


@api.route('/api/sessions/<session_id>', methods=['PUT'])
@login_required
def update_session(session_id):
    _session_staff(session_id)
    training_session = _service('session_manager').update_session(session_id, _payload())
    return jsonify({'success': True, 'session': training_session})


@api.route('/api/sessions/<session_id>', methods=['DELETE'])
@login_required
def delete_session(session_id):
    _session_staff(session_id)
    _service('session_manager').delete_session(session_id)
    return jsonify({'success': True, 'message': 'Session deleted'})


@api.route('/api/sessions/<session_id>/start', methods=['POST'])
@login_required
def start_session(session_id):
    _session_staff(session_id)
    result = _service('session_manager').start_session(session_id)
    return jsonify({'success': True, **result})


@api.route('/api/sessions/<session_id>/end', methods=['POST'])
@login_required
def end_session(session_id):
    _session_staff(session_id)
    result = _service('session_manager').end_session(session_id)
    return jsonify({'success': True, **result})


@api.route('/api/sessions/<session_id>/cancel', methods=['POST'])
@login_required
def cancel_session(session_id):
    _session_staff(session_id)
    training_session = _service('session_manager').cancel_session(session_id)
    return jsonify({'success': True, 'session': training_session})


@api.route('/api/sessions/<session_id>/qr')
@login_required
def session_qr(session_id):
    training_session = _session_staff(session_id)
    qr_generator = _service('qr_generator')

    current = qr_generator.get_current_token(session_id)
    image = qr_generator.generate_qr_image(current['url'], caption=training_session['title'])

    if request.args.get('format') == 'png':
        return send_file(io.BytesIO(image['png']), mimetype='image/png',
                         download_name=f"session-{session_id}.png")

    return jsonify({
        'success': True,
        'qr': {
            'url': current['url'],
            'expires_at': current['expires_at'],
            'image': image['data_uri']
        }
    })


@api.route('/api/sessions/<session_id>/qr/refresh', methods=['POST'])
@login_required
def refresh_session_qr(session_id):
    _session_staff(session_id)
    issued = _service('session_manager').refresh_qr(session_id)
    image = _service('qr_generator').generate_qr_image(issued['url'])
    return jsonify({
        'success': True,
        'qr': {
            'url': issued['url'],
            'expires_at': issued['expires_at'],
            'image': image['data_uri']
        }
    })


# Enrollment

@api.route('/api/sessions/<session_id>/enroll', methods=['POST'])
@login_required
def self_enroll(session_id):
    enrollment = _service('participant_manager').enroll(session_id, g.user['id'])
    return jsonify({
        'success': True,
        'message': 'Successfully enrolled in session',
        'enrollment': enrollment
    }), 201


@api.route('/api/sessions/<session_id>/enroll', methods=['DELETE'])
@login_required
def self_unenroll(session_id):
    _service('participant_manager').unenroll(session_id, g.user['id'])
    return jsonify({'success': True, 'message': 'Unenrolled'})


@api.route('/api/sessions/<session_id>/participants')
@login_required
def list_participants(session_id):
    _session_staff(session_id)
    participants = _service('participant_manager').list_participants(session_id)
    return jsonify({'success': True, 'participants': participants})


@api.route('/api/sessions/<session_id>/participants', methods=['POST'])
@login_required
def assign_participants(session_id):
    _session_staff(session_id)
    participant_manager = _service('participant_manager')

    upload = request.files.get('file')
    if upload is not None:
        result = participant_manager.import_participants_from_csv(
            session_id, upload.read().decode('utf-8-sig'), assigned_by=g.user['id']
        )
        return jsonify(result)

    data = _payload()
    if data.get('category_id'):
        result = participant_manager.enroll_category(session_id, data['category_id'], g.user['id'])
    else:
        user_ids = data.get('user_ids') or ([data['user_id']] if data.get('user_id') else [])
        result = participant_manager.assign_participants(session_id, user_ids, g.user['id'])
    return jsonify(result)


@api.route('/api/sessions/<session_id>/participants/<user_id>', methods=['DELETE'])
@login_required
def remove_participant(session_id, user_id):
    _session_staff(session_id)
    _service('participant_manager').unenroll(session_id, user_id)
    return jsonify({'success': True, 'message': 'Participant removed'})


# Attendance

def _record_scan(token, session_id):
    outcome = _service('attendance_manager').record_scan(
        token, session_id, g.user['id'],
        ip_address=request.remote_addr,
        user_agent=request.user_agent.string
    )
    return jsonify(outcome.to_dict())


@api.route('/scan')
@login_required
def scan_link():
    """Target of the QR payload when opened by a signed-in participant"""
    return _record_scan(request.args.get('token'), request.args.get('session'))


@api.route('/api/attendance/mark', methods=['POST'])
@login_required
def mark_attendance():
    data = _payload()
    return _record_scan(data.get('token'), data.get('session') or data.get('session_id'))


@api.route('/api/attendance/me')
@login_required
def my_attendance():
    history = _service('attendance_manager').get_user_attendance_history(g.user['id'])
    return jsonify({'success': True, 'attendance': history})


@api.route('/api/sessions/<session_id>/attendance')
@login_required
def session_attendance(session_id):
    _session_staff(session_id)
    attendance_manager = _service('attendance_manager')
    return jsonify({
        'success': True,
        'records': attendance_manager.get_session_roster(session_id),
        'summary': attendance_manager.get_attendance_summary(session_id)
    })


@api.route('/api/sessions/<session_id>/attendance/<user_id>', methods=['PUT'])
@login_required
def set_attendance(session_id, user_id):
    data = _payload()
    _require(data, 'status')
    record = _service('attendance_manager').set_attendance(
        session_id, user_id, data['status'], g.user['id'], g.user['role']
    )
    return jsonify({'success': True, 'message': 'Attendance updated', 'record': record})


@api.route('/api/sessions/<session_id>/attendance/stream')
@login_required
def attendance_stream(session_id):
    """Server-sent events with every attendance change of the session"""
    _session_staff(session_id)
    keepalive = current_app.config['SSE_KEEPALIVE_SECONDS']
    changes = queue.Queue()

    view = LiveAttendanceView(
        session_id,
        attendance_manager=_service('attendance_manager'),
        notification_system=_service('notification_system'),
        on_change=lambda live_view, record: changes.put((record, live_view.summary()))
    )
    view.open()

    def generate():
        try:
            while True:
                try:
                    record, summary = changes.get(timeout=keepalive)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                payload = json.dumps({'record': record, 'summary': summary}, default=str)
                yield f"event: attendance\ndata: {payload}\n\n"
        finally:
            view.close()

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'}
    )


@api.route('/api/sessions/<session_id>/export')
@login_required
def export_session(session_id):
    _session_staff(session_id)
    result = _service('report_generator').export_session(
        session_id, request.args.get('format', 'csv')
    )
    return send_file(
        io.BytesIO(result['content']),
        mimetype=result['mimetype'],
        as_attachment=True,
        download_name=result['filename']
    )


# Join requests

@api.route('/api/sessions/<session_id>/join-requests', methods=['POST'])
@login_required
def request_join(session_id):
    join_request = _service('attendance_manager').request_join(session_id, g.user['id'])
    return jsonify({
        'success': True,
        'message': 'Join request sent to the trainer',
        'request': join_request
    }), 201


@api.route('/api/sessions/<session_id>/join-requests')
@login_required
def list_join_requests(session_id):
    _session_staff(session_id)
    join_requests = _service('attendance_manager').list_join_requests(
        session_id, status=request.args.get('status')
    )
    return jsonify({'success': True, 'requests': join_requests})


@api.route('/api/join-requests/<request_id>/<action>', methods=['POST'])
@login_required
def process_join_request(request_id, action):
    result = _service('attendance_manager').process_join_request(
        request_id, action, g.user['id'], g.user['role']
    )
    return jsonify(result)


# Categories

@api.route('/api/categories')
@role_required(ROLE_ADMIN, ROLE_TRAINER)
def list_categories():
    return jsonify({'success': True, 'categories': _service('participant_manager').list_categories()})


@api.route('/api/categories', methods=['POST'])
@role_required(ROLE_ADMIN)
def create_category():
    data = _payload()
    category = _service('participant_manager').create_category(
        data.get('name'), description=data.get('description'),
        color=data.get('color'), created_by=g.user['id']
    )
    return jsonify({'success': True, 'category': category}), 201


@api.route('/api/categories/<category_id>', methods=['DELETE'])
@role_required(ROLE_ADMIN)
def delete_category(category_id):
    _service('participant_manager').delete_category(category_id)
    return jsonify({'success': True, 'message': 'Category deleted'})


@api.route('/api/categories/<category_id>/members', methods=['POST'])
@role_required(ROLE_ADMIN)
def add_category_member(category_id):
    data = _payload()
    _require(data, 'user_id')
    added = _service('participant_manager').assign_category(data['user_id'], category_id, g.user['id'])
    return jsonify({'success': True, 'added': added})


@api.route('/api/categories/<category_id>/members/<user_id>', methods=['DELETE'])
@role_required(ROLE_ADMIN)
def remove_category_member(category_id, user_id):
    removed = _service('participant_manager').remove_category(user_id, category_id)
    return jsonify({'success': removed})


# Inbox

@api.route('/api/notifications')
@login_required
def list_notifications():
    unread_only = request.args.get('unread', '').lower() in ['true', '1']
    notifications = _service('notification_system').get_notifications(g.user['id'], unread_only=unread_only)
    return jsonify({'success': True, 'notifications': notifications})


@api.route('/api/notifications/<notification_id>/read', methods=['POST'])
@login_required
def read_notification(notification_id):
    if not _service('notification_system').mark_notification_read(notification_id, g.user['id']):
        raise NotFoundError('Notification not found.')
    return jsonify({'success': True})


@api.route('/api/notifications/read-all', methods=['POST'])
@login_required
def read_all_notifications():
    updated = _service('notification_system').mark_all_read(g.user['id'])
    return jsonify({'success': True, 'updated': updated})


# Application factory

def create_app(config_name=None, overrides=None):
    """
    Build the Flask application and its services.

    Args:
        config_name (str): Key of the ``config`` map, defaults to FLASK_ENV
        overrides (dict): Settings applied on top of the configuration class

    Returns:
        Flask: The configured application
    """
    app = Flask(__name__)
    init_config(app, config_name, overrides)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )

    # Initialize system components
    db_manager = DatabaseManager(app.config['DATABASE_PATH'])
    notification_system = NotificationSystem(db_manager, enabled=app.config['NOTIFICATIONS_ENABLED'])
    qr_generator = QRGenerator(db_manager, settings={
        'error_correction': app.config['QR_CODE_ERROR_CORRECT'],
        'box_size': app.config['QR_CODE_SIZE'],
        'border': app.config['QR_CODE_BORDER'],
        'token_length': app.config['QR_CODE_SECURITY_TOKEN_LENGTH'],
        'expiry_minutes': app.config['QR_CODE_EXPIRY_MINUTES'],
        'base_url': app.config['BASE_URL']
    })
    attendance_manager = AttendanceManager(
        db_manager,
        notification_system,
        default_policy=AttendancePolicy(
            app.config['ATTENDANCE_LATE_THRESHOLD_MINUTES'],
            app.config['ATTENDANCE_PARTIAL_THRESHOLD_MINUTES']
        ),
        require_enrollment=app.config['ATTENDANCE_REQUIRE_ENROLLMENT']
    )
    session_manager = SessionManager(db_manager, qr_generator, attendance_manager, notification_system)
    session_sweeper = SessionSweeper(
        db_manager, attendance_manager, interval_seconds=app.config['SESSION_SWEEP_INTERVAL_SECONDS']
    )

    app.extensions[EXTENSION_KEY] = {
        'db_manager': db_manager,
        'notification_system': notification_system,
        'qr_generator': qr_generator,
        'attendance_manager': attendance_manager,
        'session_manager': session_manager,
        'participant_manager': ParticipantManager(db_manager, notification_system),
        'auth_manager': AuthManager(db_manager, password_min_length=app.config['PASSWORD_MIN_LENGTH']),
        'report_generator': ReportGenerator(db_manager, attendance_manager),
        'session_sweeper': session_sweeper
    }

    app.register_blueprint(api)

    if app.config['SESSION_SWEEP_ENABLED']:
        session_sweeper.start()

    logger.info(f"Training Attendance Tracker initialized ({config_name or 'default'} configuration)")
    return app


def shutdown_app(app):
    """Stop background threads and close database connections."""
    services = app.extensions.get(EXTENSION_KEY)
    if not services:
        return
    services['session_sweeper'].stop()
    services['notification_system'].shutdown()
    services['db_manager'].close_all_connections()


if __name__ == '__main__':
    application = create_app()
    try:
        # The reloader would start a second sweeper in the child process
        application.run(
            host=os.environ.get('HOST', '0.0.0.0'),
            port=int(os.environ.get('PORT', 5000)),
            debug=application.debug,
            threaded=True,
            use_reloader=False
        )
    finally:
        shutdown_app(application)
