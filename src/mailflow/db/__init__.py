"""Persistent storage for tracking records.

Usage:
    from mailflow.db import SqliteTrackingStore

    store = SqliteTrackingStore("data/mailflow.db")
    await store.initialize()
"""

from mailflow.db.models import SCHEMA_VERSION, init_database
from mailflow.db.store import SqliteTrackingStore

__all__ = [
    "SCHEMA_VERSION",
    "init_database",
    "SqliteTrackingStore",
]
