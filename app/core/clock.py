"""
Clock abstraction.

Every time-dependent decision (token expiry, due dates, retention,
scheduler wake-ups) reads the time through a Clock so tests can freeze it.
Times are naive UTC, matching how they are stored in the database.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()


class FrozenClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, at: datetime):
        self._now = at

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = at

    def advance(self, delta) -> None:
        self._now = self._now + delta


system_clock = Clock()
