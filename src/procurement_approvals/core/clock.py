"""
Injected time source.

Seasonal budget lookups, delegation windows and escalation deadlines all
depend on "now"; services take a Clock so tests can pin it.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, UTC


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock(Clock):
    """Clock frozen at a given instant until moved explicitly."""

    def __init__(self, at: datetime):
        self._now = _as_utc(at)

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = _as_utc(at)

    def advance(self, **delta) -> datetime:
        """Move forward by timedelta keyword arguments (hours=25, minutes=5, ...)."""
        self._now = self._now + timedelta(**delta)
        return self._now


def _as_utc(at: datetime) -> datetime:
    if at.tzinfo is None:
        return at.replace(tzinfo=UTC)
    return at.astimezone(UTC)
