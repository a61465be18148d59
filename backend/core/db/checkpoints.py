"""
IngestionCheckpoints Repository - Handles per-user ingestion cursors

A checkpoint only moves forward: advance() refuses any window end that is
not strictly later than the stored one, and writes the day snapshot in the
same transaction so readers never see one without the other.
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from core.logger import get_logger
from models.entities import DayTimeline, IngestionCheckpoint, WindowRunStats

from .base import BaseRepository
from .snapshots import write_snapshot
from .window_locks import write_window_lock

logger = get_logger(__name__)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


class IngestionCheckpointsRepository(BaseRepository):
    """Repository for managing ingestion checkpoints in the database"""

    def __init__(self, db_path: Path):
        super().__init__(db_path)

    def _row_to_checkpoint(self, row: Optional[sqlite3.Row]) -> Optional[IngestionCheckpoint]:
        data = self._row_to_dict(row)
        if data is None:
            return None
        return IngestionCheckpoint(
            user_id=data["user_id"],
            timezone=data["timezone"],
            last_window_start=data["last_window_start"],
            last_window_end=data["last_window_end"],
            last_processed_at=data["last_processed_at"],
            stats=json.loads(data["last_run_stats"]) if data["last_run_stats"] else {},
        )

    async def get(self, user_id: str) -> Optional[IngestionCheckpoint]:
        """Get a user's checkpoint, None if the user was never registered"""
        try:
            row = self._execute_query(
                """
                SELECT user_id, timezone, last_window_start, last_window_end,
                       last_processed_at, last_run_stats
                FROM ingestion_checkpoints
                WHERE user_id = ?
                """,
                (user_id,),
                fetch_one=True,
            )
            return self._row_to_checkpoint(row)
        except Exception as e:
            logger.error(f"Failed to get checkpoint for {user_id}: {e}", exc_info=True)
            raise

    async def get_all(self) -> List[IngestionCheckpoint]:
        try:
            rows = self._execute_query(
                """
                SELECT user_id, timezone, last_window_start, last_window_end,
                       last_processed_at, last_run_stats
                FROM ingestion_checkpoints
                ORDER BY user_id
                """,
                fetch_all=True,
            )
            return [self._row_to_checkpoint(row) for row in rows or []]
        except Exception as e:
            logger.error(f"Failed to list checkpoints: {e}", exc_info=True)
            raise

    async def ensure(self, user_id: str, timezone_name: str) -> IngestionCheckpoint:
        """
        Create the user's checkpoint if missing and keep its timezone current

        Args:
            user_id: User identifier
            timezone_name: IANA timezone name used for day boundaries

        Returns:
            The stored checkpoint
        """
        try:
            with self._get_conn() as conn:
                conn.execute(
                    """
                    INSERT INTO ingestion_checkpoints (user_id, timezone)
                    VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        timezone = excluded.timezone,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE ingestion_checkpoints.timezone != excluded.timezone
                    """,
                    (user_id, timezone_name),
                )
                conn.commit()
        except Exception as e:
            logger.error(f"Failed to ensure checkpoint for {user_id}: {e}", exc_info=True)
            raise

        return await self.get(user_id)

    async def advance(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        processed_at: datetime,
        stats: WindowRunStats,
        timeline: Optional[DayTimeline] = None,
    ) -> bool:
        """
        Move the checkpoint to ``window_end`` and store the day snapshot atomically

        The window is also recorded in the window lock ledger in the same
        transaction.

        Args:
            user_id: User identifier
            window_start: Start of the window that just succeeded
            window_end: End of that window, the new cursor
            processed_at: Wall-clock time of the commit
            stats: Run statistics of the window
            timeline: Rebuilt day snapshot written in the same transaction

        Returns:
            True if the checkpoint moved; False when the stored cursor is
            already at or past ``window_end`` (nothing is written)
        """
        stats_json = json.dumps(stats.model_dump(mode="json"))
        end_iso = _iso(window_end)

        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE ingestion_checkpoints
                    SET last_window_start = ?,
                        last_window_end = ?,
                        last_processed_at = ?,
                        last_run_stats = ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE user_id = ?
                      AND (last_window_end IS NULL OR last_window_end < ?)
                    """,
                    (
                        _iso(window_start),
                        end_iso,
                        _iso(processed_at),
                        stats_json,
                        user_id,
                        end_iso,
                    ),
                )
                if cursor.rowcount == 0:
                    logger.warning(
                        f"Checkpoint for {user_id} not advanced: already at or past {end_iso}"
                    )
                    return False

                write_window_lock(conn, user_id, window_start, window_end, processed_at, stats)
                if timeline is not None:
                    write_snapshot(conn, timeline)

            logger.debug(f"Checkpoint for {user_id} advanced to {end_iso}")
            return True

        except Exception as e:
            logger.error(f"Failed to advance checkpoint for {user_id}: {e}", exc_info=True)
            raise

    async def delete(self, user_id: str) -> bool:
        try:
            with self._get_conn() as conn:
                cursor = conn.execute(
                    "DELETE FROM ingestion_checkpoints WHERE user_id = ?", (user_id,)
                )
                conn.commit()
                return cursor.rowcount > 0
        except Exception as e:
            logger.error(f"Failed to delete checkpoint for {user_id}: {e}", exc_info=True)
            raise
