"""SQLite schema and initialization for persistent tracking records.

Tables:
- tracking_records: One row per scheduled automation send
- engine_state: Key-value state persistence (daily quota counter)

Usage:
    from mailflow.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/mailflow.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailflow.core.errors import TrackingStoreError
from mailflow.core.logging import get_logger

logger = get_logger(__name__)

# Stored in PRAGMA user_version
SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS tracking_records (
    id TEXT PRIMARY KEY,
    customer_email TEXT NOT NULL,
    automation_type TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,             -- UTC ISO-8601, fixed microsecond precision
    status TEXT NOT NULL DEFAULT 'pending', -- pending, in_flight, sent, failed, cancelled
    attempts INTEGER NOT NULL DEFAULT 0,
    sent_at TEXT,
    last_error TEXT,
    provider TEXT,
    message_id TEXT,
    metadata_json TEXT,                     -- customer snapshot, event payload, priority
    created_at TEXT
);

-- Sweep: due pending records
CREATE INDEX IF NOT EXISTS idx_tracking_status_scheduled
    ON tracking_records(status, scheduled_at);

-- Frequency cap lookups
CREATE INDEX IF NOT EXISTS idx_tracking_email_type
    ON tracking_records(customer_email, automation_type);

CREATE TABLE IF NOT EXISTS engine_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT
);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        TrackingStoreError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            await db.commit()

        # Customer emails and order payloads live here (0600 = owner read/write only)
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "tracking_database_ready",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
        )

    except aiosqlite.Error as e:
        logger.error("tracking_database_init_failed", db_path=str(db_path), error=str(e))
        raise TrackingStoreError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e
