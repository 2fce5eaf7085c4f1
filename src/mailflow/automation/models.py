"""Domain records for the automation engine.

CustomerSnapshot is passed by value at schedule time; TrackingRecord is the
persistent intent for one scheduled send and its lifecycle state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

Priority = Literal["high", "medium", "low"]


class TrackingStatus(StrEnum):
    """Lifecycle states of a tracking record.

    pending -> in_flight -> sent | pending (retry) | failed
    pending -> pending (quota deferral)
    pending -> cancelled
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TrackingStatus.SENT, TrackingStatus.FAILED, TrackingStatus.CANCELLED})


@dataclass(frozen=True)
class CustomerSnapshot:
    """Customer attributes at the time an automation is triggered."""

    email: str
    first_name: str | None = None
    last_name: str | None = None
    total_spent: float = 0.0
    order_count: int = 0
    quality_score: float = 0.0
    preferred_categories: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["preferred_categories"] = list(self.preferred_categories)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CustomerSnapshot:
        """Build a snapshot from a loose mapping (API payload or stored metadata)."""
        return cls(
            email=str(data["email"]).strip(),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            total_spent=float(data.get("total_spent") or 0),
            order_count=int(data.get("order_count") or 0),
            quality_score=float(data.get("quality_score") or 0),
            preferred_categories=tuple(data.get("preferred_categories") or ()),
        )


@dataclass
class TrackingRecord:
    """One scheduled automation send.

    metadata holds the customer snapshot ("customer"), the event payload
    ("data") and the priority hint ("priority").
    """

    id: str
    customer_email: str
    automation_type: str
    scheduled_at: datetime
    status: TrackingStatus = TrackingStatus.PENDING
    attempts: int = 0
    sent_at: datetime | None = None
    last_error: str | None = None
    provider: str | None = None
    message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def customer(self) -> CustomerSnapshot:
        raw = self.metadata.get("customer") or {"email": self.customer_email}
        return CustomerSnapshot.from_dict(raw)

    @property
    def priority(self) -> str:
        return self.metadata.get("priority", "medium")
