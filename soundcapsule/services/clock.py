"""
Clock

Single source of "now" and of the yyyy-MM-dd / yyyy-MM strings used for
session dates, months and streak days. Every string comes from the one
configured timezone so day boundaries agree between writers and readers.
"""

from __future__ import annotations

import threading
import time
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

DATE_FORMAT = "%Y-%m-%d"
MONTH_FORMAT = "%Y-%m"
MS_PER_DAY = 24 * 60 * 60 * 1000


class Clock:
    """Wall clock in epoch milliseconds, formatting in a fixed timezone."""

    def __init__(self, timezone: str = "UTC") -> None:
        self.timezone = timezone
        self._tz = ZoneInfo(timezone)

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    def to_datetime(self, epoch_ms: int) -> datetime:
        return datetime.fromtimestamp(epoch_ms / 1000, tz=self._tz)

    def date_string(self, epoch_ms: int | None = None) -> str:
        epoch_ms = self.now_ms() if epoch_ms is None else epoch_ms
        return self.to_datetime(epoch_ms).strftime(DATE_FORMAT)

    def month_string(self, epoch_ms: int | None = None) -> str:
        epoch_ms = self.now_ms() if epoch_ms is None else epoch_ms
        return self.to_datetime(epoch_ms).strftime(MONTH_FORMAT)

    def today(self) -> str:
        return self.date_string()

    def current_month(self) -> str:
        return self.month_string()

    def date_days_ago(self, days: int, epoch_ms: int | None = None) -> str:
        """Calendar date `days` before the given instant (default now)."""
        epoch_ms = self.now_ms() if epoch_ms is None else epoch_ms
        day = self.to_datetime(epoch_ms).date() - timedelta(days=days)
        return day.strftime(DATE_FORMAT)


class ManualClock(Clock):
    """Clock whose time only moves when told to. Used for replays and tests."""

    def __init__(self, start_ms: int, timezone: str = "UTC") -> None:
        super().__init__(timezone)
        self._now = start_ms
        self._lock = threading.Lock()

    @classmethod
    def at(cls, moment: datetime | date, timezone: str = "UTC") -> "ManualClock":
        if not isinstance(moment, datetime):
            moment = datetime(moment.year, moment.month, moment.day, 12, 0)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=ZoneInfo(timezone))
        return cls(int(moment.timestamp() * 1000), timezone)

    def now_ms(self) -> int:
        with self._lock:
            return self._now

    def set(self, epoch_ms: int) -> None:
        with self._lock:
            self._now = epoch_ms

    def advance(self, ms: int) -> int:
        with self._lock:
            self._now += ms
            return self._now

    def advance_days(self, days: int) -> int:
        return self.advance(days * MS_PER_DAY)


def parse_date(value: str) -> date:
    """Parse a yyyy-MM-dd string. Raises ValueError/TypeError on bad input."""
    return datetime.strptime(value, DATE_FORMAT).date()


def parse_month(value: str) -> date:
    """Parse a yyyy-MM string to the first day of that month."""
    return datetime.strptime(value, MONTH_FORMAT).date()


def month_display_name(month: str) -> str:
    """'2025-05' -> 'May 2025'; unparseable input is returned unchanged."""
    try:
        return parse_month(month).strftime("%B %Y")
    except (TypeError, ValueError):
        return month
