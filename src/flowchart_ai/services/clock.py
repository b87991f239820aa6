"""Clock abstraction so time-based behavior can be driven in tests."""

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime:
        """Return the current timezone-aware UTC time."""


class SystemClock(Clock):
    """Clock backed by the system wall time."""

    def now(self) -> datetime:
        return datetime.now(tz=UTC)


def elapsed_ms(start: datetime, end: datetime) -> float:
    """Milliseconds between two instants."""
    return (end - start).total_seconds() * 1000
