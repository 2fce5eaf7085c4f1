"""aiosqlite-backed TrackingStore.

Implements the same interface as ``InMemoryTrackingStore`` so the engine can
be pointed at either. Timestamps are stored as UTC ISO-8601 strings with
fixed precision so that range predicates compare correctly as text.

Usage:
    from mailflow.db.store import SqliteTrackingStore

    store = SqliteTrackingStore("data/mailflow.db")
    await store.initialize()
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from mailflow.automation.models import TrackingRecord, TrackingStatus
from mailflow.core.errors import TrackingStoreError
from mailflow.core.logging import get_logger
from mailflow.db.models import init_database

logger = get_logger(__name__)

_COLUMNS = (
    "id, customer_email, automation_type, scheduled_at, status, attempts, sent_at, "
    "last_error, provider, message_id, metadata_json, created_at"
)


def _to_db_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteTrackingStore:
    """Persistent TrackingStore on SQLite.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Tracking records
    # =========================================================================

    async def get(self, tracking_id: str) -> TrackingRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"SELECT {_COLUMNS} FROM tracking_records WHERE id = ?", (tracking_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_record(row) if row else None
        except aiosqlite.Error as e:
            logger.error("tracking_record_get_failed", tracking_id=tracking_id, error=str(e))
            raise TrackingStoreError(f"Failed to get tracking record: {e}") from e

    async def put(self, record: TrackingRecord) -> None:
        """Insert or replace a tracking record."""
        try:
            async with self._db() as db:
                await db.execute(
                    f"""
                    INSERT INTO tracking_records ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        customer_email = excluded.customer_email,
                        automation_type = excluded.automation_type,
                        scheduled_at = excluded.scheduled_at,
                        status = excluded.status,
                        attempts = excluded.attempts,
                        sent_at = excluded.sent_at,
                        last_error = excluded.last_error,
                        provider = excluded.provider,
                        message_id = excluded.message_id,
                        metadata_json = excluded.metadata_json
                    """,
                    (
                        record.id,
                        record.customer_email,
                        record.automation_type,
                        _to_db_time(record.scheduled_at),
                        str(record.status),
                        record.attempts,
                        _to_db_time(record.sent_at),
                        record.last_error,
                        record.provider,
                        record.message_id,
                        json.dumps(record.metadata, default=str),
                        _to_db_time(record.created_at),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("tracking_record_save_failed", tracking_id=record.id, error=str(e))
            raise TrackingStoreError(f"Failed to save tracking record: {e}") from e

    async def delete(self, tracking_id: str) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM tracking_records WHERE id = ?", (tracking_id,)
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise TrackingStoreError(f"Failed to delete tracking record: {e}") from e

    async def scan(
        self,
        email: str | None = None,
        automation_type: str | None = None,
        status: TrackingStatus | None = None,
    ) -> list[TrackingRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if email is not None:
            clauses.append("customer_email = ?")
            params.append(email)
        if automation_type is not None:
            clauses.append("automation_type = ?")
            params.append(automation_type)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"SELECT {_COLUMNS} FROM tracking_records{where} ORDER BY scheduled_at",
                    params,
                )
                rows = await cursor.fetchall()
                return [self._row_to_record(row) for row in rows]
        except aiosqlite.Error as e:
            logger.error("tracking_scan_failed", error=str(e))
            raise TrackingStoreError(f"Failed to scan tracking records: {e}") from e

    async def scan_due(self, now: datetime) -> list[TrackingRecord]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT {_COLUMNS} FROM tracking_records
                    WHERE status = 'pending' AND scheduled_at <= ?
                    ORDER BY scheduled_at
                    """,
                    (_to_db_time(now),),
                )
                rows = await cursor.fetchall()
                return [self._row_to_record(row) for row in rows]
        except aiosqlite.Error as e:
            logger.error("tracking_scan_due_failed", error=str(e))
            raise TrackingStoreError(f"Failed to scan due records: {e}") from e

    async def claim(self, tracking_id: str) -> TrackingRecord | None:
        """Conditionally move pending -> in_flight; None if another worker got it first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE tracking_records SET status = 'in_flight' "
                    "WHERE id = ? AND status = 'pending'",
                    (tracking_id,),
                )
                await db.commit()
                if cursor.rowcount == 0:
                    return None
        except aiosqlite.Error as e:
            logger.error("tracking_record_claim_failed", tracking_id=tracking_id, error=str(e))
            raise TrackingStoreError(f"Failed to claim tracking record: {e}") from e

        return await self.get(tracking_id)

    async def release_in_flight(self) -> int:
        """Move every in_flight record back to pending (startup recovery)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE tracking_records SET status = 'pending' WHERE status = 'in_flight'"
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.error("tracking_release_in_flight_failed", error=str(e))
            raise TrackingStoreError(f"Failed to release in-flight records: {e}") from e

    async def count(self) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT COUNT(*) AS n FROM tracking_records")
                row = await cursor.fetchone()
                return row["n"] if row else 0
        except aiosqlite.Error as e:
            raise TrackingStoreError(f"Failed to count tracking records: {e}") from e

    async def delete_older_than(self, cutoff: datetime) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    DELETE FROM tracking_records
                    WHERE scheduled_at < ? AND status NOT IN ('pending', 'in_flight')
                    """,
                    (_to_db_time(cutoff),),
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.error("tracking_cleanup_failed", error=str(e))
            raise TrackingStoreError(f"Failed to delete old tracking records: {e}") from e

    def _row_to_record(self, row: aiosqlite.Row) -> TrackingRecord:
        """Convert a database row to a TrackingRecord dataclass."""
        metadata: dict[str, Any] = {}
        if row["metadata_json"]:
            try:
                metadata = json.loads(row["metadata_json"])
            except json.JSONDecodeError:
                logger.warning("tracking_metadata_corrupt", tracking_id=row["id"])

        return TrackingRecord(
            id=row["id"],
            customer_email=row["customer_email"],
            automation_type=row["automation_type"],
            scheduled_at=_from_db_time(row["scheduled_at"]),
            status=TrackingStatus(row["status"]),
            attempts=row["attempts"],
            sent_at=_from_db_time(row["sent_at"]),
            last_error=row["last_error"],
            provider=row["provider"],
            message_id=row["message_id"],
            metadata=metadata,
            created_at=_from_db_time(row["created_at"]),
        )

    # =========================================================================
    # Engine state
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM engine_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None
        except aiosqlite.Error as e:
            logger.error("engine_state_get_failed", key=key, error=str(e))
            raise TrackingStoreError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO engine_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, datetime.now(UTC).isoformat()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("engine_state_set_failed", key=key, error=str(e))
            raise TrackingStoreError(f"Failed to set state: {e}") from e
