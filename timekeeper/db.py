"""
Database connection and schema management.

Single place for:
- DB path resolution
- Connection factory (commit on success, rollback on error)
- Schema creation

The CRUD layer owns these tables; the engine only flips statuses, writes
notification rows and the break-session projection.
"""

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from timekeeper import paths

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS meetings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_user_id TEXT REFERENCES users(id),
    title TEXT NOT NULL,
    meeting_type TEXT CHECK (meeting_type IN ('video', 'phone', 'in-person')),
    status TEXT NOT NULL DEFAULT 'scheduled' CHECK (status IN
        ('scheduled', 'in-progress', 'completed', 'cancelled')),
    start_time TEXT NOT NULL,
    end_time TEXT,
    started_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    event_type TEXT DEFAULT 'event' CHECK (event_type IN ('event', 'activity')),
    event_date TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    location TEXT,
    status TEXT NOT NULL DEFAULT 'upcoming' CHECK (status IN
        ('upcoming', 'today', 'completed', 'cancelled')),
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS break_windows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    break_type TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS break_sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    break_type TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    start_time TEXT,
    time_remaining_seconds INTEGER,
    is_paused INTEGER NOT NULL DEFAULT 0,
    last_updated TEXT,
    emergency_pause_used INTEGER NOT NULL DEFAULT 0,
    ended_at TEXT
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    category TEXT NOT NULL CHECK (category IN ('meeting', 'event', 'break', 'ticket')),
    type TEXT NOT NULL DEFAULT 'info',
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_meetings_status_start ON meetings(status, start_time);
CREATE INDEX IF NOT EXISTS idx_meetings_owner ON meetings(agent_user_id);
CREATE INDEX IF NOT EXISTS idx_events_status_date ON events(status, event_date);
CREATE INDEX IF NOT EXISTS idx_break_windows_start ON break_windows(start_time);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);
CREATE INDEX IF NOT EXISTS idx_notifications_dedup ON notifications(
    category,
    json_extract(payload, '$.entity_id'),
    json_extract(payload, '$.notification_subtype'),
    json_extract(payload, '$.entity_date')
);
"""


def get_db_path() -> Path:
    """
    Get the canonical DB path.

    Resolution order:
    1. TIMEKEEPER_DB env var (explicit override)
    2. ~/.timekeeper/data/timekeeper.db (default via paths.db_path())
    """
    return paths.db_path()


@contextmanager
def get_connection(db_path: str | Path | None = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Get a database connection with auto-commit/rollback.

    Usage:
        with get_connection() as conn:
            conn.execute(...)
    """
    path = Path(db_path) if db_path is not None else get_db_path()
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except (sqlite3.Error, ValueError, OSError) as e:
        conn.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        conn.close()


def init_db(db_path: str | Path | None = None) -> Path:
    """Initialize database with schema. Safe to call multiple times."""
    path = Path(db_path) if db_path is not None else get_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with get_connection(path) as conn:
        conn.executescript(SCHEMA)
        conn.execute("PRAGMA journal_mode=WAL")

    logger.info(f"Database initialized at {path}")
    return path
