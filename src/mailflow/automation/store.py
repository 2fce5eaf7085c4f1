"""Tracking record repository interface and the in-memory backend.

The engine talks to a ``TrackingStore``; the in-memory backend is the default
(and the one tests use). ``mailflow.db.SqliteTrackingStore`` implements the
same interface on aiosqlite for deployments that must survive restarts.

Usage:
    from mailflow.automation.store import InMemoryTrackingStore

    store = InMemoryTrackingStore()
    await store.put(record)
    due = await store.scan_due(now)
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Protocol

from mailflow.automation.models import TrackingRecord, TrackingStatus


class TrackingStore(Protocol):
    """Repository for tracking records and small engine state values."""

    async def get(self, tracking_id: str) -> TrackingRecord | None: ...

    async def put(self, record: TrackingRecord) -> None: ...

    async def delete(self, tracking_id: str) -> bool: ...

    async def scan(
        self,
        email: str | None = None,
        automation_type: str | None = None,
        status: TrackingStatus | None = None,
    ) -> list[TrackingRecord]: ...

    async def scan_due(self, now: datetime) -> list[TrackingRecord]: ...

    async def claim(self, tracking_id: str) -> TrackingRecord | None: ...

    async def release_in_flight(self) -> int: ...

    async def count(self) -> int: ...

    async def delete_older_than(self, cutoff: datetime) -> int: ...

    async def get_state(self, key: str) -> str | None: ...

    async def set_state(self, key: str, value: str) -> None: ...


class InMemoryTrackingStore:
    """Dict-backed TrackingStore.

    Records are copied on the way in and out so callers cannot mutate stored
    state without going through ``put``. ``claim`` has no await between its
    check and its write, which makes it atomic on a single event loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, TrackingRecord] = {}
        self._state: dict[str, str] = {}

    async def get(self, tracking_id: str) -> TrackingRecord | None:
        record = self._records.get(tracking_id)
        return copy.deepcopy(record) if record else None

    async def put(self, record: TrackingRecord) -> None:
        self._records[record.id] = copy.deepcopy(record)

    async def delete(self, tracking_id: str) -> bool:
        return self._records.pop(tracking_id, None) is not None

    async def scan(
        self,
        email: str | None = None,
        automation_type: str | None = None,
        status: TrackingStatus | None = None,
    ) -> list[TrackingRecord]:
        return [
            copy.deepcopy(r)
            for r in self._records.values()
            if (email is None or r.customer_email == email)
            and (automation_type is None or r.automation_type == automation_type)
            and (status is None or r.status == status)
        ]

    async def scan_due(self, now: datetime) -> list[TrackingRecord]:
        """Pending records with scheduled_at <= now, oldest first."""
        due = [
            r
            for r in self._records.values()
            if r.status == TrackingStatus.PENDING and r.scheduled_at <= now
        ]
        due.sort(key=lambda r: r.scheduled_at)
        return [copy.deepcopy(r) for r in due]

    async def claim(self, tracking_id: str) -> TrackingRecord | None:
        """Move a pending record to in_flight; None if it is not pending."""
        record = self._records.get(tracking_id)
        if record is None or record.status != TrackingStatus.PENDING:
            return None
        record.status = TrackingStatus.IN_FLIGHT
        return copy.deepcopy(record)

    async def release_in_flight(self) -> int:
        """Move every in_flight record back to pending (startup recovery)."""
        stranded = [r for r in self._records.values() if r.status == TrackingStatus.IN_FLIGHT]
        for record in stranded:
            record.status = TrackingStatus.PENDING
        return len(stranded)

    async def count(self) -> int:
        return len(self._records)

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Remove terminal records scheduled before cutoff."""
        stale = [
            tracking_id
            for tracking_id, r in self._records.items()
            if r.scheduled_at < cutoff
            and r.status not in (TrackingStatus.PENDING, TrackingStatus.IN_FLIGHT)
        ]
        for tracking_id in stale:
            del self._records[tracking_id]
        return len(stale)

    async def get_state(self, key: str) -> str | None:
        return self._state.get(key)

    async def set_state(self, key: str, value: str) -> None:
        self._state[key] = value
