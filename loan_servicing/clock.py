"""
Clock Module

Supplies "today" to every status, aggregate and foreclosure computation.
Installment status is time-driven, so the clock is passed in explicitly
rather than read ad hoc; tests pin it with FixedClock.
"""

from datetime import date, datetime, time, timezone, timedelta
from typing import Optional

from .schedule import add_months


class Clock:
    """Source of the current instant (UTC)"""

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to a given day; can be advanced for time-travel tests"""

    def __init__(self, today: date, at: Optional[time] = None):
        self._current = datetime.combine(today, at or time(12, 0), tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, days: int = 0, months: int = 0) -> None:
        """Move the clock forward"""
        moved = add_months(self._current.date(), months) + timedelta(days=days)
        self._current = datetime.combine(moved, self._current.timetz())

    def set(self, today: date) -> None:
        self._current = datetime.combine(today, self._current.timetz())
