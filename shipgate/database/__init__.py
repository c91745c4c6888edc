"""Database initialization and connection management for shipgate."""
from pathlib import Path
import sqlite3
from typing import Optional
from contextlib import contextmanager
import logging

from shipgate.config import Config
from shipgate.database.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager with automatic schema initialization.

    Each call to ``get_connection`` opens a fresh connection, so a Database
    can be shared between worker threads and concurrent runs.
    """

    def __init__(self, db_path: Optional[str] = None, busy_timeout: float = 30.0):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file. If None, uses Config.DB_PATH
            busy_timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path or Config.DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout

        logger.info(f"Initializing database at {self.db_path}")
        self._initialize_schema()

    def _initialize_schema(self):
        """Initialize database schema if not exists."""
        try:
            with self.get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA_SQL)
                conn.commit()
            logger.debug("Database schema initialized successfully")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize schema: {e}")
            raise

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection with Row factory enabled

        Example:
            with db.get_connection() as conn:
                conn.execute("SELECT * FROM run_events WHERE run_id = ?", (run_id,))
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            conn.close()


# Global database instance (singleton pattern)
_db_instance: Optional[Database] = None


def get_db() -> Database:
    """
    Get the global database instance (singleton).

    Returns:
        Database: The global database instance
    """
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance


def init_db(db_path: Optional[str] = None) -> Database:
    """
    Initialize the global database instance with a custom path.

    Args:
        db_path: Path to SQLite database file
    """
    global _db_instance
    _db_instance = Database(db_path)
    return _db_instance
