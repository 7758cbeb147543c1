"""
Trading calendar helpers.

Trading days are weekdays that are not configured holidays. Intraday
cycles start at the session open and step by the run interval; a daily
interval (1440 minutes) means one cycle at the session open.
"""

from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, Optional
from zoneinfo import ZoneInfo

from ..core.config import Settings, get_settings

MINUTES_PER_DAY = 1440


def is_trading_day(day: date, holidays: Iterable[date] = ()) -> bool:
    return day.weekday() < 5 and day not in set(holidays)


def iter_trading_days(
    start: date,
    end: date,
    holidays: Iterable[date] = (),
) -> Iterator[date]:
    """Trading days from start to end inclusive, in calendar order."""
    holidays = set(holidays)
    current = start
    while current <= end:
        if is_trading_day(current, holidays):
            yield current
        current += timedelta(days=1)


def count_trading_days(start: date, end: date, holidays: Iterable[date] = ()) -> int:
    return sum(1 for _ in iter_trading_days(start, end, holidays))


def cycles_per_day(interval_minutes: int, session_minutes: int = 375) -> int:
    """
    Number of intraday cycles for an interval.

    >>> cycles_per_day(60, 375)
    6
    >>> cycles_per_day(1440, 375)
    1
    """
    if interval_minutes >= MINUTES_PER_DAY:
        return 1
    return max(1, session_minutes // interval_minutes)


def cycle_times(
    day: date,
    interval_minutes: int,
    settings: Optional[Settings] = None,
) -> list[datetime]:
    """Simulated cycle timestamps for a trading day, in the market timezone."""
    settings = settings or get_settings()
    tz = ZoneInfo(settings.market_timezone)
    first = datetime.combine(day, settings.session_open, tzinfo=tz)
    count = cycles_per_day(interval_minutes, settings.session_minutes)
    return [first + timedelta(minutes=i * interval_minutes) for i in range(count)]


def is_market_open(now: Optional[datetime] = None, settings: Optional[Settings] = None) -> bool:
    """Weekday (non-holiday) within market hours, in the market timezone."""
    settings = settings or get_settings()
    tz = ZoneInfo(settings.market_timezone)
    local = (now or datetime.now(tz)).astimezone(tz)
    if not is_trading_day(local.date(), settings.market_holidays):
        return False
    return settings.market_open <= local.time() <= settings.market_close
