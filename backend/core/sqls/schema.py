"""
Database schema - table and index definitions
"""

CREATE_INGESTION_CHECKPOINTS_TABLE = """
    CREATE TABLE IF NOT EXISTS ingestion_checkpoints (
        user_id TEXT PRIMARY KEY,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        last_window_start TEXT,
        last_window_end TEXT,
        last_processed_at TEXT,
        last_run_stats TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
"""

CREATE_TIMELINE_SNAPSHOTS_TABLE = """
    CREATE TABLE IF NOT EXISTS timeline_snapshots (
        user_id TEXT NOT NULL,
        ymd TEXT NOT NULL,
        timezone TEXT NOT NULL,
        window_end TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (user_id, ymd)
    )
"""

# One row per committed window; re-running a window replaces its row
CREATE_INGESTION_WINDOW_LOCKS_TABLE = """
    CREATE TABLE IF NOT EXISTS ingestion_window_locks (
        user_id TEXT NOT NULL,
        window_start TEXT NOT NULL,
        window_end TEXT NOT NULL,
        locked_at TEXT NOT NULL,
        stats TEXT,
        PRIMARY KEY (user_id, window_start)
    )
"""

CREATE_TIMELINE_SNAPSHOTS_USER_INDEX = """
    CREATE INDEX IF NOT EXISTS idx_timeline_snapshots_user
    ON timeline_snapshots(user_id, window_end DESC)
"""

ALL_TABLES = [
    CREATE_INGESTION_CHECKPOINTS_TABLE,
    CREATE_TIMELINE_SNAPSHOTS_TABLE,
    CREATE_INGESTION_WINDOW_LOCKS_TABLE,
]

ALL_INDEXES = [
    CREATE_TIMELINE_SNAPSHOTS_USER_INDEX,
]
