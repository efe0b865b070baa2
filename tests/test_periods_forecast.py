from datetime import date

from forecast import elapsed_days, project_month
from periods import add_months, clamp_day, month_label, month_ranges


def test_month_ranges_for_explicit_month() -> None:
    ranges = month_ranges("2026-01", today=date(2026, 10, 18))
    assert ranges.month == "2026-01"
    assert ranges.label == "January 2026"
    assert ranges.start == date(2026, 1, 1)
    assert ranges.end_exclusive == date(2026, 2, 1)
    assert ranges.previous_start == date(2025, 12, 1)
    assert ranges.previous_end_exclusive == date(2026, 1, 1)


def test_invalid_month_falls_back_to_current() -> None:
    today = date(2026, 10, 18)
    for raw in (None, "", "2026-13", "10/2026", "2026-1"):
        assert month_ranges(raw, today=today).month == "2026-10"


def test_calendar_helpers() -> None:
    assert add_months(date(2026, 12, 31), 1) == date(2027, 1, 1)
    assert add_months(date(2026, 1, 15), -1) == date(2025, 12, 1)
    assert clamp_day(2026, 2, 31) == date(2026, 2, 28)
    assert clamp_day(2028, 2, 31) == date(2028, 2, 29)
    assert month_label("2026-09") == "September 2026"


def test_projection_scales_month_to_date_totals() -> None:
    forecast = project_month(100000, 150000, date(2026, 9, 1), date(2026, 9, 10))
    assert forecast.days_in_month == 30
    assert forecast.days_elapsed == 10
    assert forecast.income_cents == 300000
    assert forecast.expense_cents == 450000
    assert forecast.net_cents == -150000
    assert forecast.is_negative


def test_elapsed_days_outside_the_current_month() -> None:
    assert elapsed_days(date(2026, 8, 1), date(2026, 9, 10)) == 31
    assert elapsed_days(date(2026, 11, 1), date(2026, 9, 10)) == 1
    assert elapsed_days(date(2026, 9, 1), date(2026, 9, 1)) == 1

    past = project_month(5000, 2000, date(2026, 8, 1), date(2026, 9, 10))
    assert (past.income_cents, past.expense_cents) == (5000, 2000)
    assert not past.is_negative
