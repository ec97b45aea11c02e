from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

ALL_TIME_START = date(1970, 1, 1)
FALLBACK_DAYS = 30

ROLLING_WINDOWS = {
    "last_7_days": 7,
    "last_30_days": 30,
    "last_90_days": 90,
    "last_365_days": 365,
}
PERIOD_KEYS = (
    *ROLLING_WINDOWS,
    "this_month",
    "last_month",
    "this_year",
    "all_time",
)


class InvalidPeriodKey(ValueError):
    pass


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def _month_end(first: date) -> date:
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def resolve_period_key(key: Optional[str], *, today: Optional[date] = None) -> Period:
    """Turn a symbolic period key into concrete inclusive bounds.

    Rolling windows end today and start N days earlier. ``all_time`` keeps a
    fixed lower bound so callers always receive both dates.
    """
    today = today or date.today()
    if key in ROLLING_WINDOWS:
        return Period(key, today - timedelta(days=ROLLING_WINDOWS[key]), today)
    if key == "this_month":
        first = today.replace(day=1)
        return Period("this_month", first, _month_end(first))
    if key == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        return Period("last_month", last_month_end.replace(day=1), last_month_end)
    if key == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if key == "all_time":
        return Period("all_time", ALL_TIME_START, today)
    raise InvalidPeriodKey(f"Unknown period key: {key!r}")


def fallback_period(today: Optional[date] = None) -> Period:
    today = today or date.today()
    return Period("fallback", today - timedelta(days=FALLBACK_DAYS), today)
