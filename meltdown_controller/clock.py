"""
Meltdown Controller - Clock.

============================================================
RESPONSIBILITY
============================================================
Testable time source for the controller.

- State transitions, verdicts and lock tokens take their
  timestamps from a clock instance
- UTC only
- MockClock lets tests pin and advance time

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading


class ClockProtocol(ABC):
    """Abstract interface for the controller clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass


class SystemClock(ClockProtocol):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock(ClockProtocol):
    """
    Clock pinned to a settable instant.

    Used by tests to age windows and dedup entries without sleeping.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Args:
            initial_time: Pinned instant (naive values are taken as UTC)
        """
        self._time = ensure_utc(initial_time or datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Return the pinned instant."""
        with self._lock:
            return self._time

    def set_time(self, new_time: datetime) -> None:
        """Move the pinned instant."""
        with self._lock:
            self._time = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Move the pinned instant forward.

        Args:
            seconds: Seconds to add
            **kwargs: Extra timedelta fields (minutes, hours, ...)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
