import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from classifier import classify
from models import (
    EXPENSE_KINDS,
    INCOME_KINDS,
    EntryKind,
    InvestmentOperation,
    InvestmentPosition,
    LedgerEntry,
)
from text_utils import normalize_text

logger = logging.getLogger(__name__)

_PIX_PREFIX = re.compile(r"^pix\b", re.IGNORECASE)


class LedgerQueryError(RuntimeError):
    """Raised when the ledger cannot be read; aborts the enclosing run."""


@dataclass(frozen=True)
class ExpenseRow:
    id: int
    date: date
    description: str
    category: str
    amount_cents: int
    expense_type: str
    source: str


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    total_cents: int
    percent: Decimal


@dataclass
class Aggregation:
    start: date
    end_exclusive: date
    income_cents: int = 0
    expense_cents: int = 0
    category_totals: list[CategoryTotal] = field(default_factory=list)
    expense_rows: list[ExpenseRow] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def top_category(self) -> Optional[CategoryTotal]:
        return self.category_totals[0] if self.category_totals else None


def distribute_percentages(totals: list[tuple[str, int]]) -> list[CategoryTotal]:
    """Turn category totals into shares that add up to exactly 100.00.

    Works in hundredths of a percent and hands the rounding remainder to the
    categories with the largest fractional parts.
    """
    grand_total = sum(total for _, total in totals)
    if grand_total <= 0:
        return [CategoryTotal(name, total, Decimal("0")) for name, total in totals]

    scaled = [(name, total, total * 10000) for name, total in totals]
    floors = [raw // grand_total for _, _, raw in scaled]
    remainder = 10000 - sum(floors)
    by_fraction = sorted(
        range(len(scaled)),
        key=lambda idx: (-(scaled[idx][2] % grand_total), idx),
    )
    for idx in by_fraction[:remainder]:
        floors[idx] += 1
    return [
        CategoryTotal(name, total, Decimal(floors[idx]) / Decimal(100))
        for idx, (name, total, _) in enumerate(scaled)
    ]


def _is_pix(entry: LedgerEntry) -> bool:
    if (entry.channel or "").lower() == "pix":
        return True
    if any(normalize_text(tag.name) == "pix" for tag in entry.tags):
        return True
    return bool(_PIX_PREFIX.match(entry.description or ""))


def expense_type_for(entry: LedgerEntry, category: str) -> str:
    if entry.kind == EntryKind.card_payment or entry.card_id is not None:
        return "card"
    if _is_pix(entry):
        return "pix"
    if "invest" in normalize_text(category):
        return "investment"
    return "expense"


class ExpenseAggregator:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _ledger_entries(self, start: date, end_exclusive: date) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .options(selectinload(LedgerEntry.tags))
            .where(
                LedgerEntry.user_id == self.user_id,
                LedgerEntry.kind.in_(INCOME_KINDS + EXPENSE_KINDS),
                LedgerEntry.occurred_at >= start,
                LedgerEntry.occurred_at < end_exclusive,
            )
            .order_by(LedgerEntry.occurred_at, LedgerEntry.id)
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise LedgerQueryError(
                f"Failed to load ledger entries for user {self.user_id}"
            ) from exc

    def _investments_available(self) -> bool:
        bind = self.session.get_bind()
        return inspect(bind).has_table(InvestmentPosition.__tablename__)

    def _investment_buys(
        self, start: date, end_exclusive: date, warnings: list[str]
    ) -> list[InvestmentPosition]:
        if not self._investments_available():
            warnings.append(
                "Investments table not found; investment outflows were not included."
            )
            logger.warning(f"aggregate: user_id={self.user_id} investments_table=missing")
            return []
        stmt = (
            select(InvestmentPosition)
            .where(
                InvestmentPosition.user_id == self.user_id,
                InvestmentPosition.operation == InvestmentOperation.buy,
                InvestmentPosition.started_on >= start,
                InvestmentPosition.started_on < end_exclusive,
            )
            .order_by(InvestmentPosition.started_on, InvestmentPosition.id)
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            warnings.append(f"Failed to load investments: {exc.__class__.__name__}")
            logger.warning(f"aggregate: user_id={self.user_id} investments_error={exc}")
            return []

    def aggregate(self, start: date, end_exclusive: date) -> Aggregation:
        result = Aggregation(start=start, end_exclusive=end_exclusive)
        by_category: dict[str, int] = {}

        for entry in self._ledger_entries(start, end_exclusive):
            amount = abs(int(entry.amount_cents or 0))
            if amount <= 0:
                continue
            if entry.kind in INCOME_KINDS:
                result.income_cents += amount
                continue
            category = classify(entry.description, entry.category)
            result.expense_cents += amount
            by_category[category] = by_category.get(category, 0) + amount
            result.expense_rows.append(
                ExpenseRow(
                    id=entry.id,
                    date=entry.occurred_at,
                    description=(entry.description or "").strip() or "Entry",
                    category=category,
                    amount_cents=amount,
                    expense_type=expense_type_for(entry, category),
                    source="ledger",
                )
            )

        for position in self._investment_buys(start, end_exclusive, result.warnings):
            amount = abs(int(position.invested_amount_cents or 0))
            if amount <= 0 or position.started_on is None:
                continue
            asset = (position.asset_name or position.asset_type or "Investment").strip()
            category = (position.category or "").strip() or "Investments"
            result.expense_cents += amount
            by_category[category] = by_category.get(category, 0) + amount
            result.expense_rows.append(
                ExpenseRow(
                    id=position.id,
                    date=position.started_on,
                    description=f"Contribution {asset}",
                    category=category,
                    amount_cents=amount,
                    expense_type="investment",
                    source="investment",
                )
            )

        ordered = sorted(by_category.items(), key=lambda item: (-item[1], item[0]))
        result.category_totals = distribute_percentages(ordered)
        result.expense_rows.sort(key=lambda row: (-row.amount_cents, row.date, row.id))
        return result
