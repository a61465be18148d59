"""
Database module - Repository pattern implementation

This module provides:
1. Repository classes for ingestion checkpoints, window locks and timeline snapshots
2. Unified DatabaseManager that aggregates all repositories
3. Global get_db() and switch_database() functions for easy access
"""

import sqlite3
from pathlib import Path
from typing import Optional

from core.logger import get_logger
from core.sqls import schema

from .base import BaseRepository
from .checkpoints import IngestionCheckpointsRepository
from .snapshots import TimelineSnapshotsRepository
from .window_locks import WindowLocksRepository

logger = get_logger(__name__)


class DatabaseManager:
    """
    Unified database manager that provides access to all repositories

    Example:
        db = get_db()
        checkpoint = await db.checkpoints.get("user-1")
        timeline = await db.snapshots.get("user-1", "2024-05-01")
    """

    def __init__(self, db_path: Path):
        """
        Initialize DatabaseManager with all repositories

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)

        # Ensure database tables exist
        self._initialize_database()

        self.checkpoints = IngestionCheckpointsRepository(self.db_path)
        self.snapshots = TimelineSnapshotsRepository(self.db_path)
        self.window_locks = WindowLocksRepository(self.db_path)

        logger.debug(f"✓ DatabaseManager initialized with path: {self.db_path}")

    def _initialize_database(self):
        """
        Initialize database schema - create all tables and indexes

        This is called automatically when DatabaseManager is instantiated.
        """
        try:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            for table_sql in schema.ALL_TABLES:
                cursor.execute(table_sql)

            for index_sql in schema.ALL_INDEXES:
                cursor.execute(index_sql)

            conn.commit()
            conn.close()

            logger.debug(
                f"✓ Database schema initialized: {len(schema.ALL_TABLES)} tables, "
                f"{len(schema.ALL_INDEXES)} indexes"
            )

        except Exception as e:
            logger.error(f"Failed to initialize database schema: {e}", exc_info=True)
            raise


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db() -> DatabaseManager:
    """
    Get global DatabaseManager instance

    The database path is read from config.toml (database.path).

    Returns:
        DatabaseManager instance with all repositories
    """
    global _db_manager

    if _db_manager is None:
        from core.settings import get_settings

        db_path = get_settings().get_database_path()
        _db_manager = DatabaseManager(db_path)
        logger.debug(f"✓ Global DatabaseManager initialized: {db_path}")

    return _db_manager


def switch_database(new_db_path: str) -> bool:
    """
    Switch database to a new path at runtime

    Args:
        new_db_path: New database path (string or Path)

    Returns:
        True if switch successful, False otherwise
    """
    global _db_manager

    try:
        new_path = Path(new_db_path)

        if _db_manager is not None and _db_manager.db_path.resolve() == new_path.resolve():
            logger.debug(f"New path is same as current, no switch needed: {new_db_path}")
            return True

        new_path.parent.mkdir(parents=True, exist_ok=True)

        _db_manager = DatabaseManager(new_path)
        logger.debug(f"✓ Database switched to: {new_db_path}")
        return True

    except Exception as e:
        logger.error(f"Failed to switch database: {e}", exc_info=True)
        return False


__all__ = [
    "BaseRepository",
    "IngestionCheckpointsRepository",
    "TimelineSnapshotsRepository",
    "WindowLocksRepository",
    "DatabaseManager",
    "get_db",
    "switch_database",
]
