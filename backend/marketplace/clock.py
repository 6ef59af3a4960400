"""
Clock abstraction.

Services never call datetime.now() directly; they receive a Clock so the
monitor, reconciler and ledger can be driven deterministically in tests.
All timestamps are naive UTC, matching the database columns.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current naive UTC timestamp."""


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock(Clock):
    """Deterministic clock for tests. Only moves when told to."""

    def __init__(self, fixed: Optional[datetime] = None):
        self._now = fixed or datetime(2024, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value
