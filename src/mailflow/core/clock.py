"""Injectable time sources.

The engine and the abandoned-cart tracker never call ``datetime.now()``
directly; they take a ``Clock`` so tests can pin time.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta, tzinfo

Clock = Callable[[], datetime]


def system_clock(tz: tzinfo = UTC) -> Clock:
    """Return a clock reading the wall time in the given timezone."""

    def _now() -> datetime:
        return datetime.now(tz)

    return _now


class FrozenClock:
    """Manually advanced clock for deterministic tests and replays.

    Example:
        clock = FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))
        engine = AutomationEngine(..., clock=clock)
        clock.advance(hours=2)
    """

    def __init__(self, now: datetime):
        self._now = now

    def __call__(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **kwargs: float) -> datetime:
        """Move time forward by a timedelta built from kwargs (hours=1, days=3, ...)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now
