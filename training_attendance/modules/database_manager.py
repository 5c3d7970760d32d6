"""
Database Manager Module - Training Attendance Tracker

This module handles all database operations for the attendance service.
It owns the SQLite connection handling, the schema for users, trainings,
sessions, enrollments, attendance records, join requests, categories,
notifications and system settings, plus the small query helpers every
manager builds on.

Features:
- Thread-local SQLite connections
- Idempotent schema creation
- Query and update helpers
- Transactions, including immediate (write-locking) transactions
- System settings storage
"""

import sqlite3
import logging
from contextlib import contextmanager
import threading
import os


class DatabaseManager:
    """
    SQLite access layer shared by all managers.
    Connections are kept per thread and reused for the lifetime of the thread.
    """

    def __init__(self, db_path):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
        """
        self.db_path = str(db_path)
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

        # Ensure database directory exists
        directory = os.path.dirname(self.db_path)
        if directory and self.db_path != ':memory:':
            os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections for thread safety.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0
            )
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ':memory:':
                connection.execute("PRAGMA journal_mode = WAL")
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)

        try:
            yield self._local.connection
        except sqlite3.IntegrityError:
            self._local.connection.rollback()
            raise
        except Exception as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise

    def initialize_database(self):
        """
        Create all tables and default data. Safe to call repeatedly.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        email VARCHAR(255) UNIQUE NOT NULL,
                        password_hash VARCHAR(255) NOT NULL,
                        full_name VARCHAR(150) NOT NULL,
                        phone VARCHAR(30),
                        department VARCHAR(100),
                        role VARCHAR(20) NOT NULL DEFAULT 'trainee',
                        status VARCHAR(20) NOT NULL DEFAULT 'pending',
                        approved_at TIMESTAMP,
                        approved_by TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        CHECK (role IN ('admin', 'trainer', 'trainee')),
                        CHECK (status IN ('pending', 'active', 'inactive', 'rejected'))
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS trainings (
                        id TEXT PRIMARY KEY,
                        title VARCHAR(200) NOT NULL,
                        description TEXT,
                        start_date DATE,
                        end_date DATE,
                        created_by TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (created_by) REFERENCES users(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS sessions (
                        id TEXT PRIMARY KEY,
                        training_id TEXT,
                        title VARCHAR(200) NOT NULL,
                        description TEXT,
                        scheduled_date DATE NOT NULL,
                        start_time TIME NOT NULL,
                        end_time TIME NOT NULL,
                        location VARCHAR(200),
                        trainer_id TEXT,
                        created_by TEXT,
                        status VARCHAR(20) NOT NULL DEFAULT 'scheduled',
                        qr_token TEXT UNIQUE,
                        qr_expires_at TIMESTAMP,
                        actual_start_time TIMESTAMP,
                        actual_end_time TIMESTAMP,
                        late_threshold_minutes INTEGER,
                        partial_threshold_minutes INTEGER,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (training_id) REFERENCES trainings(id) ON DELETE SET NULL,
                        FOREIGN KEY (trainer_id) REFERENCES users(id),
                        FOREIGN KEY (created_by) REFERENCES users(id),
                        CHECK (status IN ('scheduled', 'active', 'completed', 'cancelled'))
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS session_participants (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        assigned_by TEXT,
                        assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                        UNIQUE(session_id, user_id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        join_time TIMESTAMP,
                        status VARCHAR(20) NOT NULL DEFAULT 'pending',
                        attendance_type VARCHAR(20),
                        qr_token_used TEXT,
                        ip_address VARCHAR(64),
                        user_agent TEXT,
                        version INTEGER NOT NULL DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                        UNIQUE(session_id, user_id),
                        CHECK (status IN ('present', 'late', 'absent', 'pending')),
                        CHECK (attendance_type IS NULL OR attendance_type IN ('on_time', 'late', 'partial'))
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS join_requests (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        status VARCHAR(20) NOT NULL DEFAULT 'pending',
                        requested_at TIMESTAMP NOT NULL,
                        processed_at TIMESTAMP,
                        processed_by TEXT,
                        FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                        UNIQUE(session_id, user_id),
                        CHECK (status IN ('pending', 'approved', 'rejected'))
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS trainee_categories (
                        id TEXT PRIMARY KEY,
                        name VARCHAR(100) UNIQUE NOT NULL,
                        description TEXT,
                        color VARCHAR(20) DEFAULT '#3B82F6',
                        created_by TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS user_categories (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        category_id TEXT NOT NULL,
                        assigned_by TEXT,
                        assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                        FOREIGN KEY (category_id) REFERENCES trainee_categories(id) ON DELETE CASCADE,
                        UNIQUE(user_id, category_id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        type VARCHAR(50) DEFAULT 'info',
                        title VARCHAR(200) NOT NULL,
                        message TEXT NOT NULL,
                        link TEXT,
                        is_read BOOLEAN DEFAULT 0,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS system_settings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        setting_key VARCHAR(100) UNIQUE NOT NULL,
                        setting_value TEXT,
                        description TEXT,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_date ON sessions(scheduled_date)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_trainer ON sessions(trainer_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_session ON attendance(session_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_participants_user ON session_participants(user_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read)")

                conn.commit()

                self._insert_default_data(cursor)
                conn.commit()

                self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def _insert_default_data(self, cursor):
        """
        Insert default settings and trainee categories on a fresh database.

        Args:
            cursor: Database cursor object
        """
        cursor.execute("SELECT COUNT(*) FROM system_settings")
        if cursor.fetchone()[0] == 0:
            default_settings = [
                ('system_name', 'Training Attendance Tracker', 'Name of the attendance system'),
                ('notification_enabled', '1', 'Enable in-app notifications'),
                ('export_formats', 'csv,pdf,xlsx', 'Supported export formats')
            ]
            cursor.executemany("""
                INSERT INTO system_settings (setting_key, setting_value, description)
                VALUES (?, ?, ?)
            """, default_settings)

        cursor.execute("SELECT COUNT(*) FROM trainee_categories")
        if cursor.fetchone()[0] == 0:
            default_categories = [
                ('cat-all', 'All Trainees', 'Every trainee in the programme', '#3B82F6'),
                ('cat-beginner', 'Beginners', 'New trainees', '#10B981'),
                ('cat-intermediate', 'Intermediate', 'Trainees with some experience', '#F59E0B'),
                ('cat-advanced', 'Advanced', 'Experienced trainees', '#EF4444')
            ]
            cursor.executemany("""
                INSERT INTO trainee_categories (id, name, description, color)
                VALUES (?, ?, ?, ?)
            """, default_categories)

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]
                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters

        Returns:
            int: Number of affected rows
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params or ())
                conn.commit()
                return cursor.rowcount

        except sqlite3.IntegrityError:
            # Callers translate unique-key violations into domain errors
            raise
        except Exception as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise

    def execute_many(self, query, params_list):
        """
        Execute a query multiple times with different parameters.

        Args:
            query (str): SQL query string
            params_list (list): List of parameter tuples

        Returns:
            int: Number of affected rows
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.executemany(query, params_list)
                conn.commit()
                return cursor.rowcount

        except Exception as e:
            self.logger.error(f"Batch execution failed: {str(e)}")
            raise

    @contextmanager
    def transaction(self, immediate=False):
        """
        Context manager for database transactions with automatic rollback on error.

        Args:
            immediate (bool): Take the write lock up front (BEGIN IMMEDIATE) so
                read-check-write sequences cannot interleave with other writers

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            if immediate and not conn.in_transaction:
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    def get_system_setting(self, key, default_value=None):
        """
        Get a system setting value by key.

        Args:
            key (str): Setting key
            default_value: Default value if setting not found

        Returns:
            str: Setting value
        """
        try:
            result = self.execute_query(
                "SELECT setting_value FROM system_settings WHERE setting_key = ?",
                (key,),
                fetch_all=False
            )
            return result['setting_value'] if result else default_value

        except Exception as e:
            self.logger.error(f"Failed to get system setting {key}: {str(e)}")
            return default_value

    def update_system_setting(self, key, value, description=None):
        """
        Update or insert a system setting.

        Args:
            key (str): Setting key
            value (str): Setting value
            description (str): Setting description
        """
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO system_settings (setting_key, setting_value, description)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    description = COALESCE(excluded.description, system_settings.description),
                    updated_at = CURRENT_TIMESTAMP
            """, (key, str(value), description))
        return True

    def close_all_connections(self):
        """Close every connection opened by this manager."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            try:
                connection.close()
            except sqlite3.Error as e:
                self.logger.error(f"Error closing connection: {str(e)}")
        self._local = threading.local()
