from datetime import date

from billing import card_cycle_dates, card_cycle_summary
from models import Card, EntryKind, LedgerEntry


def _card(closing_day: int, due_day: int, limit_cents: int = 10000) -> Card:
    return Card(
        id=1,
        user_id=1,
        name="Visa",
        limit_cents=limit_cents,
        closing_day=closing_day,
        due_day=due_day,
    )


def _charge(day: date, cents: int, kind: EntryKind = EntryKind.expense, card_id: int = 1):
    return LedgerEntry(
        user_id=1,
        occurred_at=day,
        kind=kind,
        description="card",
        amount_cents=cents,
        card_id=card_id,
    )


def test_cycle_after_closing_rolls_to_next_month() -> None:
    dates = card_cycle_dates(_card(10, 20), date(2026, 10, 15))
    assert dates.closing_date == date(2026, 11, 10)
    assert dates.due_date == date(2026, 11, 20)
    assert dates.cycle_start == date(2026, 10, 11)
    assert dates.previous_closing == date(2026, 10, 10)
    assert dates.previous_due == date(2026, 10, 20)


def test_due_day_before_closing_day_lands_in_following_month() -> None:
    dates = card_cycle_dates(_card(25, 5), date(2026, 10, 15))
    assert dates.closing_date == date(2026, 10, 25)
    assert dates.due_date == date(2026, 11, 5)
    assert dates.previous_closing == date(2026, 9, 25)
    assert dates.previous_due == date(2026, 10, 5)


def test_short_months_clamp_the_closing_day() -> None:
    dates = card_cycle_dates(_card(31, 10), date(2026, 2, 10))
    assert dates.closing_date == date(2026, 2, 28)
    assert dates.previous_closing == date(2026, 1, 31)
    assert dates.cycle_start == date(2026, 2, 1)
    assert dates.due_date == date(2026, 3, 10)


def test_summary_tracks_outstanding_statement_and_limit() -> None:
    entries = [
        _charge(date(2026, 9, 20), 5000),
        _charge(date(2026, 10, 12), 3000),
        _charge(date(2026, 10, 14), 2000, kind=EntryKind.card_payment),
        _charge(date(2026, 10, 13), 9999, card_id=2),
    ]
    summary = card_cycle_summary(_card(10, 20), entries, date(2026, 10, 15))

    assert summary.statement_total_cents == 5000
    assert summary.paid_since_closing_cents == 2000
    assert summary.outstanding_cents == 3000
    assert summary.current_total_cents == 3000
    assert summary.limit_used_cents == 6000
    assert summary.limit_available_cents == 4000
    assert summary.statement_due == date(2026, 10, 20)
    assert summary.has_open_invoice
    assert summary.has_outstanding_statement


def test_overpayment_never_goes_negative() -> None:
    entries = [
        _charge(date(2026, 9, 20), 1000),
        _charge(date(2026, 10, 14), 5000, kind=EntryKind.card_payment),
    ]
    summary = card_cycle_summary(_card(10, 20, limit_cents=500), entries, date(2026, 10, 15))
    assert summary.outstanding_cents == 0
    assert summary.limit_available_cents == 500
    assert not summary.has_open_invoice
    assert not summary.has_outstanding_statement
