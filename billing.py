from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable

from models import Card, EntryKind, LedgerEntry
from periods import add_months, clamp_day

OPEN_INVOICE_THRESHOLD_CENTS = 1


@dataclass(frozen=True)
class CycleDates:
    cycle_start: date
    closing_date: date
    due_date: date
    previous_closing: date
    previous_due: date


@dataclass(frozen=True)
class CardCycleSummary:
    card_id: int
    cycle_start: date
    closing_date: date
    due_date: date
    current_total_cents: int
    statement_total_cents: int
    statement_due: date
    paid_since_closing_cents: int
    outstanding_cents: int
    limit_used_cents: int
    limit_available_cents: int

    @property
    def has_open_invoice(self) -> bool:
        return self.current_total_cents >= OPEN_INVOICE_THRESHOLD_CENTS

    @property
    def has_outstanding_statement(self) -> bool:
        return self.outstanding_cents >= OPEN_INVOICE_THRESHOLD_CENTS


def _due_for_closing(closing: date, closing_day: int, due_day: int) -> date:
    if due_day > closing_day:
        return clamp_day(closing.year, closing.month, due_day)
    following = add_months(closing, 1)
    return clamp_day(following.year, following.month, due_day)


def card_cycle_dates(card: Card, today: date) -> CycleDates:
    this_closing = clamp_day(today.year, today.month, card.closing_day)
    if today <= this_closing:
        closing = this_closing
    else:
        following = add_months(today, 1)
        closing = clamp_day(following.year, following.month, card.closing_day)
    before = add_months(closing, -1)
    previous_closing = clamp_day(before.year, before.month, card.closing_day)
    return CycleDates(
        cycle_start=previous_closing + timedelta(days=1),
        closing_date=closing,
        due_date=_due_for_closing(closing, card.closing_day, card.due_day),
        previous_closing=previous_closing,
        previous_due=_due_for_closing(previous_closing, card.closing_day, card.due_day),
    )


def card_cycle_summary(
    card: Card, entries: Iterable[LedgerEntry], today: date
) -> CardCycleSummary:
    dates = card_cycle_dates(card, today)
    before = add_months(dates.previous_closing, -1)
    statement_start = clamp_day(before.year, before.month, card.closing_day) + timedelta(
        days=1
    )

    current_total = 0
    statement_total = 0
    paid = 0
    for entry in entries:
        if entry.card_id != card.id:
            continue
        amount = abs(int(entry.amount_cents or 0))
        if entry.kind == EntryKind.card_payment:
            if dates.previous_closing < entry.occurred_at <= today:
                paid += amount
            continue
        if dates.cycle_start <= entry.occurred_at <= dates.closing_date:
            current_total += amount
        elif statement_start <= entry.occurred_at <= dates.previous_closing:
            statement_total += amount

    outstanding = max(0, statement_total - paid)
    limit_used = current_total + outstanding
    return CardCycleSummary(
        card_id=card.id,
        cycle_start=dates.cycle_start,
        closing_date=dates.closing_date,
        due_date=dates.due_date,
        current_total_cents=current_total,
        statement_total_cents=statement_total,
        statement_due=dates.previous_due,
        paid_since_closing_cents=paid,
        outstanding_cents=outstanding,
        limit_used_cents=limit_used,
        limit_available_cents=max(0, int(card.limit_cents or 0) - limit_used),
    )
