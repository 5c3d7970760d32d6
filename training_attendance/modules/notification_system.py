"""
Notification System Module - Training Attendance Tracker

This module carries two kinds of notifications:

1. Real-time attendance changes. Every insert or update of an attendance
   record is published as an ``AttendanceChange``; a background dispatcher
   thread hands it to every subscriber whose predicate matches. Delivery is
   at-least-once and not ordered across publishers, so consumers merge by
   key (see ``live_attendance.LiveAttendanceView``).

2. Per-user inbox messages (session assigned, cancelled, updated, attendance
   confirmed, join request processed), rendered from jinja2 templates and
   stored in the ``notifications`` table.

Features:
- Predicate-based subscriptions with idempotent unsubscribe
- Background queue dispatch; a failing subscriber never affects the others
- flush() to wait for pending deliveries
- Templated inbox notifications with read tracking
"""

from datetime import datetime
from typing import Dict, List, Any, Optional, Callable
import logging
import threading
import time
import uuid
from queue import Queue
from dataclasses import dataclass, field, asdict
from jinja2 import Template

EVENT_INSERT = 'INSERT'
EVENT_UPDATE = 'UPDATE'


@dataclass
class AttendanceChange:
    """A single insert/update of an attendance record."""
    event: str
    session_id: str
    user_id: str
    record: Dict[str, Any]
    published_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec='seconds'))
    table: str = 'attendance'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Subscription:
    """Handle returned by ``NotificationSystem.subscribe``."""
    id: str
    callback: Callable[[AttendanceChange], Any]
    predicate: Optional[Callable[[AttendanceChange], bool]] = None
    active: bool = True

    def matches(self, change: AttendanceChange) -> bool:
        return self.active and (self.predicate is None or self.predicate(change))


@dataclass
class NotificationData:
    """Data structure for an inbox notification."""
    id: str
    user_id: str
    type: str
    title: str
    message: str
    link: Optional[str]
    created_at: str
    is_read: bool = False


class NotificationSystem:
    """
    Attendance change fan-out plus the per-user notification inbox.
    """

    def __init__(self, database_manager=None, enabled: bool = True,
                 system_name: str = 'Training Attendance Tracker'):
        """
        Initialize the notification system and start the dispatcher thread.

        Args:
            database_manager: Database manager for inbox storage (optional)
            enabled (bool): Whether inbox notifications are stored
            system_name (str): Name used in rendered messages
        """
        self.db = database_manager
        self.enabled = enabled
        self.system_name = system_name
        self.logger = logging.getLogger(__name__)

        self.NOTIFICATION_TYPES = {
            'ATTENDANCE_CONFIRMATION': 'attendance_confirmation',
            'SESSION_ASSIGNED': 'session_assigned',
            'SESSION_CANCELLED': 'session_cancelled',
            'SESSION_UPDATED': 'session_updated',
            'JOIN_REQUEST_PROCESSED': 'join_request_processed'
        }

        self.templates = {
            'attendance_confirmation': (
                Template("Attendance recorded"),
                Template('Your attendance for "{{ session.title }}" on {{ session.scheduled_date }} '
                         'was recorded as {{ status }}.')
            ),
            'session_assigned': (
                Template("New session: {{ session.title }}"),
                Template('You have been assigned to "{{ session.title }}" on {{ session.scheduled_date }} '
                         'at {{ session.start_time[:5] }}'
                         '{% if session.location %} ({{ session.location }}){% endif %}.')
            ),
            'session_cancelled': (
                Template("Session cancelled: {{ session.title }}"),
                Template('"{{ session.title }}" scheduled for {{ session.scheduled_date }} '
                         'at {{ session.start_time[:5] }} has been cancelled.'
                         '{% if message %} {{ message }}{% endif %}')
            ),
            'session_updated': (
                Template("Session updated: {{ session.title }}"),
                Template('"{{ session.title }}" is now on {{ session.scheduled_date }} '
                         'from {{ session.start_time[:5] }} to {{ session.end_time[:5] }}'
                         '{% if session.location %} at {{ session.location }}{% endif %}.')
            ),
            'join_request_processed': (
                Template("Join request {{ status }}"),
                Template('Your request to join "{{ session.title }}" was {{ status }}.')
            )
        }

        self._subscribers: Dict[str, Subscription] = {}
        self._subscribers_lock = threading.Lock()
        self._closed = False

        # Attendance changes waiting for delivery
        self.notification_queue = Queue()

        self.notification_processor = threading.Thread(
            target=self._process_notifications,
            name='attendance-fanout',
            daemon=True
        )
        self.notification_processor.start()

        self.logger.info("Notification system initialized")

    # Real-time fan-out

    def subscribe(self, callback: Callable[[AttendanceChange], Any],
                  predicate: Callable[[AttendanceChange], bool] = None) -> Subscription:
        """
        Register interest in attendance changes.

        Args:
            callback: Called on the dispatcher thread with each matching change
            predicate: Filter; None receives every change

        Returns:
            Subscription: Pass to ``unsubscribe`` to stop deliveries
        """
        subscription = Subscription(id=str(uuid.uuid4()), callback=callback, predicate=predicate)
        with self._subscribers_lock:
            self._subscribers[subscription.id] = subscription
        self.logger.debug(f"Subscriber {subscription.id} registered")
        return subscription

    def subscribe_session(self, session_id: str,
                          callback: Callable[[AttendanceChange], Any]) -> Subscription:
        """Subscribe to the attendance changes of one session."""
        return self.subscribe(callback, lambda change: change.session_id == session_id)

    def unsubscribe(self, subscription: Optional[Subscription]) -> bool:
        """
        Stop deliveries to a subscription. Safe to call more than once.

        Returns:
            bool: True if the subscription was still registered
        """
        if subscription is None:
            return False
        subscription.active = False
        with self._subscribers_lock:
            removed = self._subscribers.pop(subscription.id, None)
        return removed is not None

    @property
    def subscriber_count(self) -> int:
        with self._subscribers_lock:
            return len(self._subscribers)

    def publish(self, change: AttendanceChange) -> bool:
        """
        Queue a change for delivery to matching subscribers.

        Returns:
            bool: False if the system has been shut down
        """
        if self._closed:
            self.logger.warning(f"Dropping {change.event} for session {change.session_id}: notification system is shut down")
            return False
        self.notification_queue.put(change)
        return True

    def publish_attendance(self, event: str, record: Dict[str, Any]) -> bool:
        return self.publish(AttendanceChange(
            event=event,
            session_id=record['session_id'],
            user_id=record['user_id'],
            record=dict(record)
        ))

    def flush(self, timeout: float = None) -> bool:
        """
        Wait until every queued change has been delivered.

        Returns:
            bool: False if the timeout elapsed first
        """
        if timeout is None:
            self.notification_queue.join()
            return True

        deadline = time.monotonic() + timeout
        with self.notification_queue.all_tasks_done:
            while self.notification_queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self.notification_queue.all_tasks_done.wait(remaining)
        return True

    def _process_notifications(self) -> None:
        """Background thread delivering queued changes."""
        while True:
            change = self.notification_queue.get()
            try:
                if change is None:  # Shutdown signal
                    break
                self._deliver(change)
            except Exception as e:
                self.logger.error(f"Error dispatching attendance change: {str(e)}")
            finally:
                self.notification_queue.task_done()

    def _deliver(self, change: AttendanceChange) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers.values())

        for subscription in subscribers:
            try:
                if subscription.matches(change):
                    subscription.callback(change)
            except Exception as e:
                self.logger.error(f"Subscriber {subscription.id} failed on {change.event} "
                                  f"for session {change.session_id}: {str(e)}")

    # Inbox notifications

    def render(self, notification_type: str, **context) -> Dict[str, str]:
        """Render the title and message of a templated notification."""
        if notification_type not in self.templates:
            raise ValueError(f"Unknown notification type: {notification_type}")
        title_template, message_template = self.templates[notification_type]
        context.setdefault('system_name', self.system_name)
        return {
            'title': title_template.render(**context),
            'message': message_template.render(**context)
        }

    def send_user_notification(self, user_id: str, notification_type: str, title: str,
                               message: str, link: str = None) -> Optional[NotificationData]:
        """Store one inbox notification for a user."""
        if not self.enabled or self.db is None:
            return None

        notification = NotificationData(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            link=link,
            created_at=datetime.now().isoformat(timespec='seconds')
        )
        self.db.execute_update(
            """INSERT INTO notifications (id, user_id, type, title, message, link, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (notification.id, notification.user_id, notification.type, notification.title,
             notification.message, notification.link, notification.created_at)
        )
        return notification

    def send_session_notification(self, notification_type: str, session: Dict[str, Any],
                                  user_ids: List[str], **context) -> int:
        """
        Render a session notification and store it for each user.

        Returns:
            int: Number of notifications stored
        """
        if not self.enabled or self.db is None or not user_ids:
            return 0

        rendered = self.render(notification_type, session=session, **context)
        created_at = datetime.now().isoformat(timespec='seconds')
        rows = [
            (str(uuid.uuid4()), user_id, notification_type, rendered['title'],
             rendered['message'], f"/sessions/{session['id']}", created_at)
            for user_id in user_ids
        ]
        self.db.execute_many(
            """INSERT INTO notifications (id, user_id, type, title, message, link, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            rows
        )
        self.logger.info(f"Sent {notification_type} notification to {len(rows)} user(s) for session {session['id']}")
        return len(rows)

    def get_notifications(self, user_id: str, unread_only: bool = False,
                          limit: int = 50) -> List[Dict[str, Any]]:
        if self.db is None:
            return []

        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        return self.db.execute_query(query, (user_id, limit))

    def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        return self.db.execute_update(
            "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
            (notification_id, user_id)
        ) > 0

    def mark_all_read(self, user_id: str) -> int:
        return self.db.execute_update(
            "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
            (user_id,)
        )

    def shutdown(self) -> None:
        """Stop the dispatcher after delivering what is already queued."""
        if self._closed:
            return
        self._closed = True

        self.notification_queue.put(None)
        if self.notification_processor.is_alive():
            self.notification_processor.join(timeout=5)

        with self._subscribers_lock:
            for subscription in self._subscribers.values():
                subscription.active = False
            self._subscribers.clear()

        self.logger.info("Notification system shut down")
