"""
Database Infrastructure for CrisisGate

Provides SQLite database management, connection pooling, migrations,
and transaction management for the dispatch core.
"""

import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime


@dataclass
class Migration:
    """Database migration definition"""
    version: int
    name: str
    sql: str
    rollback_sql: Optional[str] = None


class DatabaseError(Exception):
    """Database-related errors"""
    pass


ENTITY_TABLES = ['sos_requests', 'crises', 'shelters', 'teams', 'users']


class ConnectionPool:
    """Simple SQLite connection pool"""

    def __init__(self, database_path: str, max_connections: int = 10):
        self.database_path = database_path
        self.max_connections = max_connections
        self.connections = []
        self.in_use = set()
        self.lock = threading.Lock()
        self.available = threading.Condition(self.lock)
        self.logger = logging.getLogger(__name__)

    def get_connection(self, timeout: float = 30.0) -> sqlite3.Connection:
        """Get a connection from the pool, waiting while all are in use"""
        with self.available:
            while True:
                for conn in self.connections:
                    if conn not in self.in_use:
                        self.in_use.add(conn)
                        return conn

                if len(self.connections) < self.max_connections:
                    conn = sqlite3.connect(
                        self.database_path,
                        check_same_thread=False,
                        timeout=30.0
                    )
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA foreign_keys = ON")
                    conn.execute("PRAGMA journal_mode = WAL")
                    self.connections.append(conn)
                    self.in_use.add(conn)
                    return conn

                if not self.available.wait(timeout):
                    raise DatabaseError("Connection pool exhausted")

    def return_connection(self, conn: sqlite3.Connection):
        """Return a connection to the pool"""
        with self.available:
            if conn in self.in_use:
                self.in_use.remove(conn)
                self.available.notify()

    def close_all(self):
        """Close all connections in the pool"""
        with self.lock:
            for conn in self.connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    self.logger.warning(f"Error closing connection: {e}")
            self.connections.clear()
            self.in_use.clear()


class DatabaseManager:
    """
    Manages SQLite database operations, migrations, and connection pooling
    """

    def __init__(self, database_path: str, max_connections: int = 10):
        self.database_path = Path(database_path)
        self.pool = ConnectionPool(str(self.database_path), max_connections)
        self.logger = logging.getLogger(__name__)
        self.migrations = self._get_migrations()

        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections"""
        conn = None
        try:
            conn = self.pool.get_connection()
            yield conn
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self.pool.return_connection(conn)

    @contextmanager
    def transaction(self):
        """Context manager for database transactions"""
        with self.get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _initialize_database(self):
        """Initialize database with schema and migrations"""
        self.logger.info(f"Initializing database at {self.database_path}")

        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

        self._run_migrations()

    def _get_migrations(self) -> List[Migration]:
        """Get all database migrations"""
        return [
            Migration(
                version=1,
                name="initial_schema",
                sql="""
                -- SOS requests; statusHistory lives in the JSON data column
                CREATE TABLE sos_requests (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL DEFAULT 1,
                    deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    status TEXT NOT NULL,
                    category TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    reporter_id TEXT,
                    assigned_to TEXT,
                    longitude REAL NOT NULL,
                    latitude REAL NOT NULL,
                    data TEXT NOT NULL, -- JSON object
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL
                );

                CREATE TABLE crises (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL DEFAULT 1,
                    deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    status TEXT NOT NULL,
                    category TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    longitude REAL NOT NULL,
                    latitude REAL NOT NULL,
                    data TEXT NOT NULL,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL
                );

                CREATE TABLE shelters (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL DEFAULT 1,
                    deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    status TEXT NOT NULL,
                    category TEXT NOT NULL,
                    has_medical BOOLEAN NOT NULL DEFAULT FALSE,
                    longitude REAL NOT NULL,
                    latitude REAL NOT NULL,
                    data TEXT NOT NULL,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL
                );

                CREATE TABLE teams (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL DEFAULT 1,
                    deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    status TEXT NOT NULL,
                    current_assignment TEXT,
                    longitude REAL NOT NULL,
                    latitude REAL NOT NULL,
                    data TEXT NOT NULL,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL
                );

                CREATE TABLE users (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL DEFAULT 1,
                    deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    role TEXT NOT NULL,
                    email TEXT,
                    longitude REAL,
                    latitude REAL,
                    data TEXT NOT NULL,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL
                );
                """
            ),
            Migration(
                version=2,
                name="query_indices",
                sql="""
                CREATE INDEX idx_sos_status ON sos_requests (status);
                CREATE INDEX idx_sos_priority ON sos_requests (priority, created_at);
                CREATE INDEX idx_sos_category ON sos_requests (category);
                CREATE INDEX idx_sos_created ON sos_requests (created_at);
                CREATE INDEX idx_sos_location ON sos_requests (latitude, longitude);
                CREATE INDEX idx_crises_status ON crises (status);
                CREATE INDEX idx_crises_location ON crises (latitude, longitude);
                CREATE INDEX idx_shelters_status ON shelters (status);
                CREATE INDEX idx_shelters_location ON shelters (latitude, longitude);
                CREATE INDEX idx_teams_status ON teams (status);
                CREATE INDEX idx_teams_location ON teams (latitude, longitude);
                CREATE UNIQUE INDEX idx_users_email ON users (email);
                """
            )
        ]

    def _run_migrations(self):
        """Run pending database migrations"""
        with self.get_connection() as conn:
            rows = conn.execute("SELECT MAX(version) FROM migrations").fetchall()
            current_version = rows[0][0] or 0

            for migration in self.migrations:
                if migration.version > current_version:
                    self.logger.info(f"Running migration {migration.version}: {migration.name}")

                    try:
                        conn.executescript(migration.sql)
                        conn.execute(
                            "INSERT INTO migrations (version, name) VALUES (?, ?)",
                            (migration.version, migration.name)
                        )
                        conn.commit()
                        self.logger.info(f"Migration {migration.version} completed successfully")

                    except sqlite3.Error as e:
                        conn.rollback()
                        self.logger.error(f"Migration {migration.version} failed: {e}")
                        raise DatabaseError(f"Migration failed: {e}")

    def backup_database(self, backup_path: Optional[str] = None) -> str:
        """Create a backup of the database"""
        if backup_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = f"{self.database_path}.backup_{timestamp}"

        backup_path = Path(backup_path)
        backup_path.parent.mkdir(parents=True, exist_ok=True)

        with self.get_connection() as conn:
            with sqlite3.connect(str(backup_path)) as backup_conn:
                conn.backup(backup_conn)

        self.logger.info(f"Database backed up to {backup_path}")
        return str(backup_path)

    def execute_query(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        """Execute a SELECT query and return results"""
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params)
                return cursor.fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Query failed: {e}") from e

    def execute_update(self, query: str, params: Tuple = ()) -> int:
        """Execute an INSERT/UPDATE/DELETE query and return affected rows"""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(query, params)
                return cursor.rowcount
        except sqlite3.Error as e:
            raise DatabaseError(f"Update failed: {e}") from e

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        stats = {}

        for table in ENTITY_TABLES:
            rows = self.execute_query(f"SELECT COUNT(*) FROM {table}")
            stats[table] = rows[0][0] if rows else 0

        if self.database_path.exists():
            stats['database_size_bytes'] = self.database_path.stat().st_size
        else:
            stats['database_size_bytes'] = 0

        return stats

    def close(self):
        """Close all database connections"""
        self.pool.close_all()


def initialize_database(database_path: str, max_connections: int = 10) -> DatabaseManager:
    """Create the application database manager, running pending migrations"""
    return DatabaseManager(database_path, max_connections)
