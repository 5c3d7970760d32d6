"""
Session Sweeper Module - Training Attendance Tracker

Completes sessions that are still active after their scheduled end. A sweep
selects active sessions whose (scheduled_date, end_time) is at or before
``now``, moves them to completed with ``actual_end_time = now`` and marks
their absentees. The status predicate sits in the UPDATE itself, so
concurrent or repeated sweeps never complete a session twice.

The sweeper runs on a background timer and is also exposed over HTTP.
"""

from datetime import datetime
from typing import Dict, List, Any
import logging
import threading


class SessionSweeper:
    """
    Periodic auto-completion of overdue sessions.
    """

    def __init__(self, database_manager, attendance_manager=None, interval_seconds: float = 60):
        """
        Initialize the sweeper.

        Args:
            database_manager: Database manager instance
            attendance_manager: AttendanceManager used to mark absentees
            interval_seconds (float): Delay between timer-driven sweeps
        """
        self.db = database_manager
        self.attendance_manager = attendance_manager
        self.interval_seconds = interval_seconds
        self.logger = logging.getLogger(__name__)

        self._stop_event = threading.Event()
        self._thread = None
        self._lock = threading.Lock()

    def sweep(self, now: datetime = None) -> Dict[str, Any]:
        """
        Complete every overdue active session.

        Args:
            now (datetime): Reference time, defaults to the current time

        Returns:
            Dict[str, Any]: ``success``, ``message``, ``completed`` and ``sessionIds``
        """
        now = now or datetime.now()
        today = now.date().isoformat()
        current_time = now.time().replace(microsecond=0).isoformat()
        overdue = """status = 'active'
                     AND (scheduled_date < ? OR (scheduled_date = ? AND end_time <= ?))"""

        try:
            with self.db.transaction(immediate=True) as conn:
                rows = conn.execute(
                    f"SELECT id FROM sessions WHERE {overdue} ORDER BY scheduled_date, end_time",
                    (today, today, current_time)
                ).fetchall()
                session_ids: List[str] = [row['id'] for row in rows]

                if session_ids:
                    placeholders = ', '.join('?' for _ in session_ids)
                    conn.execute(
                        f"""UPDATE sessions
                            SET status = 'completed', actual_end_time = ?, updated_at = CURRENT_TIMESTAMP
                            WHERE id IN ({placeholders}) AND {overdue}""",
                        (now.isoformat(timespec='seconds'), *session_ids, today, today, current_time)
                    )

        except Exception as e:
            self.logger.error(f"Session sweep failed: {str(e)}")
            return {
                'success': False,
                'message': f"Session sweep failed: {str(e)}",
                'completed': 0,
                'sessionIds': []
            }

        # Sessions are already completed at this point; absentee marking is best effort
        if self.attendance_manager:
            for session_id in session_ids:
                try:
                    self.attendance_manager.mark_absent_for_session(session_id, now=now)
                except Exception as e:
                    self.logger.error(f"Failed to mark absentees for session {session_id}: {str(e)}")

        if session_ids:
            message = f"Auto-completed {len(session_ids)} sessions"
            self.logger.info(f"{message}: {', '.join(session_ids)}")
        else:
            message = "No sessions to complete"
            self.logger.debug(message)

        return {
            'success': True,
            'message': message,
            'completed': len(session_ids),
            'sessionIds': session_ids
        }

    # Background timer

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Sweep once now, then every ``interval_seconds`` until stopped."""
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name='session-sweeper',
                daemon=True
            )
            self._thread.start()
        self.logger.info(f"Session sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            self.logger.info("Session sweeper stopped")

    def _run_loop(self) -> None:
        while True:
            try:
                self.sweep()
            except Exception as e:
                # A failed cycle must not end the timer
                self.logger.error(f"Unexpected error in session sweeper: {str(e)}")
            if self._stop_event.wait(self.interval_seconds):
                break
