"""Automation scheduling: gating rules, tracking store, and the engine."""

from mailflow.automation.engine import (
    AutomationEngine,
    AutomationStats,
    ProcessOutcome,
    ScheduleResult,
    SweepResult,
    TypeBreakdown,
)
from mailflow.automation.models import (
    CustomerSnapshot,
    TrackingRecord,
    TrackingStatus,
)
from mailflow.automation.quota import DailyQuota, DailyUsage
from mailflow.automation.store import InMemoryTrackingStore, TrackingStore

__all__ = [
    # Engine
    "AutomationEngine",
    "AutomationStats",
    "ProcessOutcome",
    "ScheduleResult",
    "SweepResult",
    "TypeBreakdown",
    # Models
    "CustomerSnapshot",
    "TrackingRecord",
    "TrackingStatus",
    # Quota
    "DailyQuota",
    "DailyUsage",
    # Store
    "InMemoryTrackingStore",
    "TrackingStore",
]
