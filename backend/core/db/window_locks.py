"""
WindowLocks Repository - Ledger of committed ingestion windows

Every window that commits leaves one row here with the stats of its run, so
the history of a user's ingestion survives after the checkpoint has moved on.
Re-running a window replaces its row.
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from core.logger import get_logger
from models.entities import WindowLock, WindowRunStats

from .base import BaseRepository

logger = get_logger(__name__)

UPSERT_WINDOW_LOCK = """
    INSERT INTO ingestion_window_locks (
        user_id, window_start, window_end, locked_at, stats
    ) VALUES (?, ?, ?, ?, ?)
    ON CONFLICT(user_id, window_start) DO UPDATE SET
        window_end = excluded.window_end,
        locked_at = excluded.locked_at,
        stats = excluded.stats
"""


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def write_window_lock(
    conn: sqlite3.Connection,
    user_id: str,
    window_start: datetime,
    window_end: datetime,
    locked_at: datetime,
    stats: Optional[WindowRunStats] = None,
) -> None:
    """Upsert a window lock on an open connection without committing"""
    conn.execute(
        UPSERT_WINDOW_LOCK,
        (
            user_id,
            _iso(window_start),
            _iso(window_end),
            _iso(locked_at),
            json.dumps(stats.model_dump(mode="json")) if stats is not None else None,
        ),
    )


class WindowLocksRepository(BaseRepository):
    """Repository for the per-window ingestion ledger"""

    def __init__(self, db_path: Path):
        super().__init__(db_path)

    def _row_to_lock(self, row: Optional[sqlite3.Row]) -> Optional[WindowLock]:
        data = self._row_to_dict(row)
        if data is None:
            return None
        return WindowLock(
            user_id=data["user_id"],
            window_start=data["window_start"],
            window_end=data["window_end"],
            locked_at=data["locked_at"],
            stats=json.loads(data["stats"]) if data["stats"] else None,
        )

    async def lock_window(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        locked_at: datetime,
        stats: Optional[WindowRunStats] = None,
    ) -> None:
        """Record (or re-record) a committed window"""
        try:
            with self._get_conn() as conn:
                write_window_lock(conn, user_id, window_start, window_end, locked_at, stats)
                conn.commit()
            logger.debug(f"Locked window {user_id}@{_iso(window_start)}")
        except Exception as e:
            logger.error(
                f"Failed to lock window {user_id}@{_iso(window_start)}: {e}", exc_info=True
            )
            raise

    async def get(self, user_id: str, window_start: datetime) -> Optional[WindowLock]:
        try:
            row = self._execute_query(
                """
                SELECT user_id, window_start, window_end, locked_at, stats
                FROM ingestion_window_locks
                WHERE user_id = ? AND window_start = ?
                """,
                (user_id, _iso(window_start)),
                fetch_one=True,
            )
            return self._row_to_lock(row)
        except Exception as e:
            logger.error(
                f"Failed to get window lock {user_id}@{_iso(window_start)}: {e}", exc_info=True
            )
            raise

    async def is_locked(self, user_id: str, window_start: datetime) -> bool:
        return await self.get(user_id, window_start) is not None

    async def get_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[WindowLock]:
        """
        Locked windows whose start falls in [start, end), oldest first

        Args:
            user_id: User identifier
            start: Inclusive lower bound on window start
            end: Exclusive upper bound on window start
        """
        try:
            rows = self._execute_query(
                """
                SELECT user_id, window_start, window_end, locked_at, stats
                FROM ingestion_window_locks
                WHERE user_id = ? AND window_start >= ? AND window_start < ?
                ORDER BY window_start ASC
                """,
                (user_id, _iso(start), _iso(end)),
                fetch_all=True,
            )
            return [self._row_to_lock(row) for row in rows or []]
        except Exception as e:
            logger.error(f"Failed to list window locks for {user_id}: {e}", exc_info=True)
            raise
