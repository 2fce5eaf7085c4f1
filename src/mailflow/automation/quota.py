"""Daily send quota shared by every automation type.

The counter is checked and incremented immediately before a send attempt,
never at schedule time. A blocked send is deferred by the engine, not failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from mailflow.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DAILY_LIMIT = 300


@dataclass(frozen=True, slots=True)
class DailyUsage:
    """Snapshot of the quota counter."""

    date: str
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class DailyQuota:
    """Single (date, count) counter with a day-boundary reset.

    Example:
        quota = DailyQuota(limit=300)
        if quota.try_consume(today):
            ...  # send
    """

    def __init__(self, limit: int = DEFAULT_DAILY_LIMIT):
        self.limit = limit
        self._date: date | None = None
        self._count = 0

    def _roll(self, today: date) -> None:
        if self._date != today:
            self._date = today
            self._count = 0

    def try_consume(self, today: date) -> bool:
        """Take one unit of today's quota.

        Args:
            today: Current calendar date in the engine's timezone

        Returns:
            True if the send may proceed; False (nothing consumed) at the limit
        """
        self._roll(today)

        if self._count >= self.limit:
            logger.warning("daily_limit_reached", count=self._count, limit=self.limit)
            return False

        self._count += 1
        return True

    def usage(self, today: date | None = None) -> DailyUsage:
        """Return the counter, rolled to ``today`` when given."""
        if today is not None:
            self._roll(today)
        return DailyUsage(
            date=self._date.isoformat() if self._date else "",
            count=self._count,
            limit=self.limit,
        )

    def restore(self, day: date, count: int) -> None:
        """Seed the counter (e.g. from persisted state after a restart)."""
        self._date = day
        self._count = max(0, count)
