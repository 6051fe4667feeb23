"""Exchange trading window calendar.

The window is a weekday set plus an open/close time of day in the exchange
timezone (default New York, 09:30-16:00, Monday to Friday). Holidays come
from configuration or from a pluggable callable.
"""
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from tradeguard.core.config import MarketHoursConfig

HolidayHook = Callable[[date], bool]


def _parse_time(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


class MarketCalendar:
    """Answers "is the venue open?" and "when does it next open?"."""

    def __init__(
        self,
        config: Optional[MarketHoursConfig] = None,
        holidays: Optional[Iterable[date]] = None,
        holiday_hook: Optional[HolidayHook] = None,
    ):
        config = config or MarketHoursConfig()
        self.tz = ZoneInfo(config.timezone)
        self.open_time = _parse_time(config.open_time)
        self.close_time = _parse_time(config.close_time)
        self.trading_days = frozenset(config.trading_days)
        self.holidays = {date.fromisoformat(d) for d in config.holidays}
        if holidays:
            self.holidays.update(holidays)
        self.holiday_hook = holiday_hook

    def local(self, now: datetime) -> datetime:
        """``now`` in the exchange timezone."""
        return now.astimezone(self.tz)

    def is_holiday(self, day: date) -> bool:
        if day in self.holidays:
            return True
        return bool(self.holiday_hook and self.holiday_hook(day))

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() in self.trading_days and not self.is_holiday(day)

    def is_open(self, now: datetime) -> bool:
        local = self.local(now)
        if not self.is_trading_day(local.date()):
            return False
        return self.open_time <= local.time() < self.close_time

    def next_open(self, now: datetime) -> datetime:
        """
        Next time the venue opens, or ``now`` if it is open.

        Searches up to a year ahead; raises ValueError if no trading day
        is found (e.g. an empty weekday set).
        """
        if self.is_open(now):
            return now
        local = self.local(now)
        day = local.date()
        if not (self.is_trading_day(day) and local.time() < self.open_time):
            day += timedelta(days=1)
        for _ in range(366):
            if self.is_trading_day(day):
                return datetime.combine(day, self.open_time, tzinfo=self.tz)
            day += timedelta(days=1)
        raise ValueError("No trading day within a year")

    def describe_next_open(self, now: datetime) -> str:
        """Status-surface form: "NOW" or the local ISO timestamp."""
        if self.is_open(now):
            return "NOW"
        return self.next_open(now).isoformat()
