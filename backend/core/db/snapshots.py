"""
TimelineSnapshots Repository - Handles the persisted DayTimeline read model
"""

import sqlite3
from datetime import timezone
from pathlib import Path
from typing import List, Optional

from core.logger import get_logger
from models.entities import DayTimeline

from .base import BaseRepository

logger = get_logger(__name__)

UPSERT_SNAPSHOT = """
    INSERT INTO timeline_snapshots (
        user_id, ymd, timezone, window_end, payload, updated_at
    ) VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT(user_id, ymd) DO UPDATE SET
        timezone = excluded.timezone,
        window_end = excluded.window_end,
        payload = excluded.payload,
        updated_at = CURRENT_TIMESTAMP
"""


def write_snapshot(conn: sqlite3.Connection, timeline: DayTimeline) -> None:
    """Upsert a snapshot on an open connection without committing"""
    conn.execute(
        UPSERT_SNAPSHOT,
        (
            timeline.user_id,
            timeline.ymd,
            timeline.timezone,
            timeline.window_end.astimezone(timezone.utc).isoformat(),
            timeline.model_dump_json(),
        ),
    )


class TimelineSnapshotsRepository(BaseRepository):
    """Repository for per-user, per-day timeline snapshots"""

    def __init__(self, db_path: Path):
        super().__init__(db_path)

    async def save(self, timeline: DayTimeline) -> None:
        """Save or replace the snapshot for (user, day)"""
        try:
            with self._get_conn() as conn:
                write_snapshot(conn, timeline)
                conn.commit()
                logger.debug(f"Saved timeline snapshot {timeline.user_id}/{timeline.ymd}")
        except Exception as e:
            logger.error(
                f"Failed to save timeline snapshot {timeline.user_id}/{timeline.ymd}: {e}",
                exc_info=True,
            )
            raise

    async def get(self, user_id: str, ymd: str) -> Optional[DayTimeline]:
        """Get the last committed snapshot for a user-day"""
        try:
            with self._get_conn() as conn:
                cursor = conn.execute(
                    """
                    SELECT payload FROM timeline_snapshots
                    WHERE user_id = ? AND ymd = ?
                    """,
                    (user_id, ymd),
                )
                row = cursor.fetchone()

            if not row:
                return None
            return DayTimeline.model_validate_json(row["payload"])

        except Exception as e:
            logger.error(f"Failed to get timeline snapshot {user_id}/{ymd}: {e}", exc_info=True)
            raise

    async def list_days(self, user_id: str, limit: int = 30) -> List[str]:
        """Most recent snapshot days for a user, newest first"""
        try:
            rows = self._execute_query(
                """
                SELECT ymd FROM timeline_snapshots
                WHERE user_id = ?
                ORDER BY ymd DESC
                LIMIT ?
                """,
                (user_id, limit),
                fetch_all=True,
            )
            return [row["ymd"] for row in rows or []]
        except Exception as e:
            logger.error(f"Failed to list snapshot days for {user_id}: {e}", exc_info=True)
            raise
