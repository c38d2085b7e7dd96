"""Time source for the engine.

Every component asks its injected Clock for "now" so tests can pin and
advance time deterministically. Times are naive UTC, matching storage.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract current-time source."""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    """Wall clock (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class ManualClock(Clock):
    """Clock that only moves when told to.

    Example::

        clock = ManualClock(datetime(2026, 3, 10, 12, 0))
        clock.advance(hours=25)
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or SystemClock().now()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value

    def advance(self, **delta) -> datetime:
        """Move forward by ``timedelta(**delta)`` and return the new time."""
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now
