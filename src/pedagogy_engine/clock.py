"""Injectable clocks."""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to (simulations, tests, replays)."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    def advance(self, **kwargs: float) -> datetime:
        """Advance by timedelta keyword arguments (days=, hours=, ...)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now
