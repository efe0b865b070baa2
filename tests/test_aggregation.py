from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from aggregation import ExpenseAggregator, LedgerQueryError, distribute_percentages
from database import Base
from models import (
    Card,
    EntryKind,
    InvestmentOperation,
    InvestmentPosition,
    LedgerEntry,
    Tag,
)


def _entry(day: int, kind: EntryKind, description: str, cents: int, **extra) -> LedgerEntry:
    return LedgerEntry(
        user_id=1,
        occurred_at=date(2026, 9, day),
        kind=kind,
        description=description,
        amount_cents=cents,
        **extra,
    )


def test_percentages_always_sum_to_one_hundred() -> None:
    totals = distribute_percentages([("A", 1), ("B", 1), ("C", 1)])
    assert sum(item.percent for item in totals) == Decimal("100")
    assert [str(item.percent) for item in totals] == ["33.34", "33.33", "33.33"]

    empty = distribute_percentages([("A", 0)])
    assert empty[0].percent == Decimal("0")


def test_aggregate_splits_income_and_expense(session) -> None:
    card = Card(user_id=1, name="Visa", limit_cents=500000, closing_day=10, due_day=20)
    session.add(card)
    session.flush()
    pix = Tag(user_id=1, name="PIX")
    session.add_all(
        [
            _entry(2, EntryKind.income, "Salary", 500000),
            _entry(3, EntryKind.adjustment, "Refund", 10000),
            _entry(4, EntryKind.expense, "iFood dinner", 6000),
            _entry(5, EntryKind.expense, "Rent", 150000, category="Housing"),
            _entry(6, EntryKind.expense, "Uber trip", 2500, card_id=card.id),
            _entry(7, EntryKind.card_payment, "Card bill", 30000, card_id=card.id),
            _entry(8, EntryKind.transfer, "To savings", 99999),
            _entry(9, EntryKind.expense, "Pix to John", 4000, tags=[pix]),
            _entry(10, EntryKind.expense, "Zero", 0),
            LedgerEntry(
                user_id=1,
                occurred_at=date(2026, 10, 1),
                kind=EntryKind.expense,
                description="Next month",
                amount_cents=7000,
            ),
            LedgerEntry(
                user_id=2,
                occurred_at=date(2026, 9, 4),
                kind=EntryKind.expense,
                description="Other user",
                amount_cents=7000,
            ),
        ]
    )
    session.flush()

    result = ExpenseAggregator(session, 1).aggregate(date(2026, 9, 1), date(2026, 10, 1))

    assert result.income_cents == 510000
    assert result.expense_cents == 6000 + 150000 + 2500 + 30000 + 4000
    assert result.warnings == []
    assert [row.amount_cents for row in result.expense_rows] == [150000, 30000, 6000, 4000, 2500]
    assert all(row.amount_cents >= 0 for row in result.expense_rows)

    by_description = {row.description: row for row in result.expense_rows}
    assert by_description["Rent"].category == "Housing"
    assert by_description["iFood dinner"].category == "Food"
    assert by_description["Uber trip"].expense_type == "card"
    assert by_description["Card bill"].expense_type == "card"
    assert by_description["Pix to John"].expense_type == "pix"

    totals = [item.total_cents for item in result.category_totals]
    assert totals == sorted(totals, reverse=True)
    assert result.top_category.category == "Housing"
    assert sum(item.percent for item in result.category_totals) == Decimal("100")


def test_investment_buys_count_as_outflows(session) -> None:
    session.add_all(
        [
            _entry(4, EntryKind.expense, "Mercado", 20000),
            InvestmentPosition(
                user_id=1,
                asset_name="CDB Banco X",
                operation=InvestmentOperation.buy,
                started_on=date(2026, 9, 15),
                quantity=Decimal("1"),
                invested_amount_cents=100000,
            ),
            InvestmentPosition(
                user_id=1,
                asset_name="PETR4",
                operation=InvestmentOperation.sell,
                started_on=date(2026, 9, 16),
                quantity=Decimal("10"),
                invested_amount_cents=50000,
            ),
        ]
    )
    session.flush()

    result = ExpenseAggregator(session, 1).aggregate(date(2026, 9, 1), date(2026, 10, 1))

    assert result.expense_cents == 120000
    top = result.expense_rows[0]
    assert top.source == "investment"
    assert top.description == "Contribution CDB Banco X"
    assert top.category == "Investments"
    assert top.expense_type == "investment"


def test_missing_investments_table_degrades_with_warning() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    InvestmentPosition.__table__.drop(engine)

    with Session(engine) as session:
        session.add(_entry(4, EntryKind.expense, "Mercado", 20000))
        session.flush()
        result = ExpenseAggregator(session, 1).aggregate(date(2026, 9, 1), date(2026, 10, 1))

    assert result.expense_cents == 20000
    assert result.warnings == [
        "Investments table not found; investment outflows were not included."
    ]


def test_ledger_failure_raises_typed_error() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine, tables=[Card.__table__])

    with Session(engine) as session:
        with pytest.raises(LedgerQueryError):
            ExpenseAggregator(session, 1).aggregate(date(2026, 9, 1), date(2026, 10, 1))
