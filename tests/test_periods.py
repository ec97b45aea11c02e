from datetime import date, timedelta

import pytest

from periods import PERIOD_KEYS, InvalidPeriodKey, fallback_period, resolve_period_key

TODAY = date(2025, 3, 15)


def test_rolling_windows_end_today() -> None:
    for key, days in [("last_7_days", 7), ("last_30_days", 30), ("last_90_days", 90)]:
        period = resolve_period_key(key, today=TODAY)
        assert period.slug == key
        assert period.end == TODAY
        assert period.start == TODAY - timedelta(days=days)


def test_calendar_periods() -> None:
    this_month = resolve_period_key("this_month", today=TODAY)
    assert (this_month.start, this_month.end) == (date(2025, 3, 1), date(2025, 3, 31))

    last_month = resolve_period_key("last_month", today=TODAY)
    assert (last_month.start, last_month.end) == (date(2025, 2, 1), date(2025, 2, 28))

    this_year = resolve_period_key("this_year", today=TODAY)
    assert (this_year.start, this_year.end) == (date(2025, 1, 1), date(2025, 12, 31))


def test_month_boundaries_roll_over_years() -> None:
    december = resolve_period_key("this_month", today=date(2024, 12, 10))
    assert december.end == date(2024, 12, 31)

    previous = resolve_period_key("last_month", today=date(2025, 1, 5))
    assert (previous.start, previous.end) == (date(2024, 12, 1), date(2024, 12, 31))


def test_all_time_still_has_both_bounds() -> None:
    period = resolve_period_key("all_time", today=TODAY)
    assert period.start == date(1970, 1, 1)
    assert period.end == TODAY


def test_every_known_key_resolves() -> None:
    for key in PERIOD_KEYS:
        period = resolve_period_key(key, today=TODAY)
        assert period.start <= period.end


def test_unknown_key_raises() -> None:
    with pytest.raises(InvalidPeriodKey):
        resolve_period_key("fortnight", today=TODAY)
    with pytest.raises(InvalidPeriodKey):
        resolve_period_key(None, today=TODAY)


def test_fallback_period_is_thirty_days_ending_today() -> None:
    period = fallback_period(TODAY)
    assert period.end == TODAY
    assert (period.end - period.start).days == 30
