"""Per-customer frequency capping."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from mailflow.automation.models import TrackingStatus

if TYPE_CHECKING:
    from mailflow.automation.models import TrackingRecord


def within_limit(
    email: str,
    automation_type: str,
    cap: timedelta,
    history: Iterable[TrackingRecord],
    now: datetime,
) -> bool:
    """Return True if another send of this type to this customer is allowed.

    Only records that reached ``sent`` count against the cap; pending,
    in-flight, failed and cancelled records never do.

    Args:
        email: Customer email address
        automation_type: Automation type name
        cap: Minimum interval between two sends; zero disables the cap
        history: Prior tracking records (any customer/type, filtered here)
        now: Current time

    Returns:
        True if no sent record for the pair falls inside the cap window
    """
    if cap <= timedelta(0):
        return True

    cutoff = now - cap
    for record in history:
        if (
            record.customer_email == email
            and record.automation_type == automation_type
            and record.status == TrackingStatus.SENT
            and record.sent_at is not None
            and record.sent_at > cutoff
        ):
            return False

    return True
