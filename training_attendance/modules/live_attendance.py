"""
Live attendance view for a single session.

Loads the current records once, then keeps them up to date from the
notification system. Changes are merged by participant and the higher
record ``version`` wins, so duplicate or out-of-order deliveries leave the
view unchanged. Counts are folded from the in-memory records, never
re-queried.
"""

import logging
import threading
from typing import Dict, List, Any, Optional, Callable

from training_attendance.modules.notification_system import AttendanceChange


class LiveAttendanceView:
    """In-memory, merge-by-key roster of one session's attendance records."""

    def __init__(self, session_id: str, attendance_manager=None, notification_system=None,
                 on_change: Callable[['LiveAttendanceView', Dict[str, Any]], Any] = None):
        self.session_id = session_id
        self.attendance_manager = attendance_manager
        self.notification_system = notification_system
        self.on_change = on_change
        self.logger = logging.getLogger(__name__)

        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._subscription = None

    def open(self) -> 'LiveAttendanceView':
        """Subscribe for changes, then load the current records."""
        if self.notification_system and self._subscription is None:
            self._subscription = self.notification_system.subscribe_session(
                self.session_id, self.apply_change
            )
        if self.attendance_manager:
            for record in self.attendance_manager.get_session_attendance(self.session_id):
                self.merge(record)
        return self

    def close(self) -> None:
        if self.notification_system and self._subscription is not None:
            self.notification_system.unsubscribe(self._subscription)
        self._subscription = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def apply_change(self, change: AttendanceChange) -> bool:
        if change.session_id != self.session_id:
            return False
        return self.merge(change.record)

    def merge(self, record: Dict[str, Any]) -> bool:
        """
        Merge one record into the view.

        Returns:
            bool: True if the view changed
        """
        key = record['user_id']
        with self._lock:
            current = self._records.get(key)
            if current is not None and current.get('version', 0) >= record.get('version', 0):
                return False
            # Keep names joined in by the initial load
            merged = dict(current or {})
            merged.update(record)
            self._records[key] = merged

        if self.on_change:
            try:
                self.on_change(self, merged)
            except Exception as e:
                self.logger.error(f"Live view callback failed for session {self.session_id}: {str(e)}")
        return True

    @property
    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            records = [dict(r) for r in self._records.values()]
        return sorted(records, key=lambda r: (r.get('join_time') is None, r.get('join_time') or '', r['user_id']))

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(user_id)
            return dict(record) if record else None

    def count(self, status: str) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.get('status') == status)

    @property
    def present_count(self) -> int:
        return self.count('present')

    @property
    def late_count(self) -> int:
        return self.count('late')

    @property
    def absent_count(self) -> int:
        return self.count('absent')

    def summary(self) -> Dict[str, int]:
        return {
            'total': len(self._records),
            'present': self.present_count,
            'late': self.late_count,
            'absent': self.absent_count
        }
