"""
Clock -- injectable time source.

Services never call ``datetime.now()`` or ``date.today()`` directly; they
receive a Clock so that posting dates, settlement numbers and period
windows are reproducible in tests.

Also holds the small date helpers shared by every period query.  Periods
are inclusive calendar dates; queries use the half-open UTC window
``[start 00:00, end + 1 day 00:00)``.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime``.
        - ``today()`` is the UTC calendar date of ``now()``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    def today(self) -> date:
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):
    """Production clock returning the system time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()``, ``set_time()`` or
    ``tick()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, when: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = when
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._advance_seconds += seconds

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        self.advance(1)
        return self.now()


def period_bounds(period_start: date, period_end: date) -> tuple[datetime, datetime]:
    """Half-open UTC datetime window covering the inclusive date range."""
    if period_end < period_start:
        raise ValueError(
            f"period_end {period_end} is before period_start {period_start}"
        )
    start = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
    end = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def utc_date(value: datetime) -> date:
    """
    Calendar date of a stored timestamp.

    SQLite hands back naive datetimes (already UTC); PostgreSQL returns
    aware ones.
    """
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()
