"""
Injectable clocks.

Components that stamp times or compute deadlines take a Clock instead of
reading the wall clock directly, so tests can drive time explicitly.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Source of wall-clock and monotonic time."""

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC time (timezone-aware)."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic seconds, only meaningful as a difference."""
        pass


class SystemClock(Clock):
    """Clock backed by the operating system."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._mono = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds


def utcnow() -> datetime:
    """Convenience for call sites without an injected clock."""
    return datetime.now(timezone.utc)
