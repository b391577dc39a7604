"""
Clock abstraction for deadline handling in the provider fallback chain.

Provides a unified time source that proxies wall-clock time in production and
can be advanced programmatically in tests.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Clock interface for time management."""

    def now(self) -> datetime:
        """Get current time as timezone-aware datetime."""
        ...

    def now_ms(self) -> int:
        """Get current time as milliseconds since epoch."""
        ...


class WallClock:
    """Real wall-clock time implementation."""

    def now(self) -> datetime:
        """Get current wall-clock time."""
        return datetime.now(UTC)

    def now_ms(self) -> int:
        """Get current time as milliseconds since epoch."""
        return int(self.now().timestamp() * 1000)


class SimClock:
    """Manually advanced clock used to make deadline logic deterministic."""

    def __init__(self, start_time: datetime | None = None):
        """
        Initialize simulation clock.

        Args:
            start_time: Starting simulation time (defaults to current time)
        """
        self._current_time = start_time or datetime.now(UTC)

    def now(self) -> datetime:
        """Get current simulation time."""
        return self._current_time

    def now_ms(self) -> int:
        """Get current time as milliseconds since epoch."""
        return int(self._current_time.timestamp() * 1000)

    def advance(self, seconds: float) -> None:
        """Move simulation time forward."""
        if seconds < 0:
            raise ValueError("Cannot move simulation clock backwards")
        self._current_time += timedelta(seconds=seconds)
