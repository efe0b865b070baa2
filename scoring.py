"""
Banking-relationship health score.

Five pillars (punctuality, limit usage, investment habit, activity history,
spending control) are scored 0-100 from cards, recent ledger entries and
investment positions, then combined with fixed weights. One snapshot row is
kept per user and reference date.
"""
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aggregation import LedgerQueryError
from billing import CardCycleSummary, card_cycle_summary
from config import Settings, get_settings
from database import SessionFactory, SessionLocal, run_in_sessions
from llm import LanguageModelClient
from models import (
    EXPENSE_KINDS,
    INCOME_KINDS,
    AlertType,
    Card,
    EntryKind,
    InvestmentOperation,
    InvestmentPosition,
    LedgerEntry,
    RelationshipScoreSnapshot,
    RiskLevel,
    Severity,
)
from periods import add_months, month_key
from text_utils import format_percent, round2

logger = logging.getLogger(__name__)

PILLAR_WEIGHTS = {
    "punctuality": 30,
    "limit_usage": 25,
    "investments": 15,
    "history": 15,
    "spending_control": 15,
}
DUE_SOON_DAYS = 3
HISTORY_WINDOW_DAYS = 90
ACTIVE_MONTH_MIN_ENTRIES = 8
SCORE_DROP_POINTS = 7
SPENDING_SPIKE_PCT = 20.0
LIMIT_HIGH_PCT = 70.0
LIMIT_CRITICAL_PCT = 85.0
MAX_RECOMMENDATIONS = 6

RISK_LABELS = {
    RiskLevel.excellent: "Excellent relationship",
    RiskLevel.good: "Good relationship",
    RiskLevel.needs_attention: "Needs attention",
    RiskLevel.high_risk: "High risk",
}

RISK_ALERT_TYPES = {
    "delay_risk": AlertType.relationship_delay_risk,
    "limit_high": AlertType.relationship_limit_high,
    "score_drop": AlertType.relationship_score_drop,
    "spending_spike": AlertType.relationship_spending_spike,
}


def clamp_score(value: float) -> int:
    rounded = int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return min(100, max(0, rounded))


@dataclass(frozen=True)
class Pillars:
    punctuality: int
    limit_usage: int
    investments: int
    history: int
    spending_control: int


@dataclass(frozen=True)
class Indicators:
    cards_count: int
    cards_with_open_invoice: int
    overdue_invoices: int
    due_soon_invoices: int
    on_time_payment_rate: float
    card_limit_utilization_pct: float
    active_investments: int
    invested_total_cents: int
    income_current_month_cents: int
    expense_current_month_cents: int
    expense_delta_pct: Optional[float]
    savings_rate_pct: Optional[float]
    activity_months_90d: int


@dataclass(frozen=True)
class RiskAlert:
    code: str
    severity: Severity
    title: str
    body: str

    @property
    def alert_type(self) -> AlertType:
        return RISK_ALERT_TYPES[self.code]


@dataclass
class RelationshipSummary:
    reference_date: date
    score: int
    previous_score: Optional[int]
    risk_level: RiskLevel
    pillars: Pillars
    indicators: Indicators
    recommendations: list[str] = field(default_factory=list)
    model_recommendations: list[str] = field(default_factory=list)
    risk_alerts: list[RiskAlert] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def delta_score(self) -> Optional[int]:
        if self.previous_score is None:
            return None
        return self.score - self.previous_score

    @property
    def risk_label(self) -> str:
        return RISK_LABELS[self.risk_level]

    def as_dict(self) -> dict:
        return {
            "reference_date": self.reference_date.isoformat(),
            "score": self.score,
            "previous_score": self.previous_score,
            "delta_score": self.delta_score,
            "risk_level": self.risk_level.value,
            "risk_label": self.risk_label,
            "pillars": asdict(self.pillars),
            "indicators": asdict(self.indicators),
            "recommendations": list(self.recommendations),
            "model_recommendations": list(self.model_recommendations),
            "risk_alerts": [
                {
                    "code": alert.code,
                    "type": alert.alert_type.value,
                    "severity": alert.severity.value,
                    "title": alert.title,
                    "body": alert.body,
                }
                for alert in self.risk_alerts
            ],
            "warnings": list(self.warnings),
        }


def limit_usage_score(utilization_pct: float, has_cards: bool) -> int:
    if not has_cards:
        return 75
    if utilization_pct <= 30:
        return 100
    if utilization_pct <= 50:
        return 88
    if utilization_pct <= 70:
        return 68
    if utilization_pct <= 85:
        return 42
    return 20


def investment_score(active_positions: int, invested_total_cents: int) -> int:
    if active_positions >= 3 and invested_total_cents >= 100_000:
        return 100
    if active_positions >= 2 and invested_total_cents >= 50_000:
        return 90
    if active_positions >= 1 and invested_total_cents >= 20_000:
        return 78
    if active_positions >= 1:
        return 68
    return 45


def history_score(active_months: int, entry_count: int) -> int:
    if active_months >= 3 and entry_count >= 30:
        return 95
    if active_months >= 2 and entry_count >= 15:
        return 82
    if active_months >= 1 and entry_count >= 6:
        return 68
    return 50


def spending_control_score(
    expense_delta_pct: Optional[float], savings_rate_pct: Optional[float]
) -> int:
    score = 82
    delta = expense_delta_pct or 0.0
    if delta > 30:
        score -= 34
    elif delta > 15:
        score -= 20
    elif delta > 5:
        score -= 10
    elif delta < -10:
        score += 8

    savings = savings_rate_pct or 0.0
    if savings < 0:
        score -= 22
    elif savings < 10:
        score -= 12
    elif savings >= 20:
        score += 8
    return clamp_score(score)


def risk_level_for(score: int) -> RiskLevel:
    if score >= 85:
        return RiskLevel.excellent
    if score >= 70:
        return RiskLevel.good
    if score >= 50:
        return RiskLevel.needs_attention
    return RiskLevel.high_risk


def weighted_score(pillars: Pillars) -> int:
    total = sum(getattr(pillars, name) * weight for name, weight in PILLAR_WEIGHTS.items())
    return clamp_score(Decimal(total) / Decimal(100))


def build_recommendations(indicators: Indicators, pillars: Pillars) -> list[str]:
    items: list[str] = []
    if (
        pillars.punctuality < 80
        or indicators.due_soon_invoices > 0
        or indicators.overdue_invoices > 0
    ):
        items.append("Pay card invoices before the due date to build trust with your bank.")

    if indicators.card_limit_utilization_pct >= LIMIT_HIGH_PCT:
        items.append("Keep card limit usage below 70% to improve your credit score.")
    elif indicators.card_limit_utilization_pct <= 40 and indicators.cards_count > 0:
        items.append("Limit usage is healthy. Keep spending consciously.")

    if indicators.active_investments <= 0:
        items.append("Start with monthly investment contributions to strengthen your profile.")
    elif indicators.active_investments >= 2:
        items.append("Your investment habit is helping your credit profile.")

    if (indicators.expense_delta_pct or 0.0) >= SPENDING_SPIKE_PCT:
        items.append("Expenses rose sharply. Review variable costs and set a weekly cap.")

    savings = indicators.savings_rate_pct or 0.0
    if savings < 10:
        items.append("Raise your monthly savings to at least 10% of income.")
    elif savings >= 20:
        items.append("High savings rate. This strengthens your banking profile.")

    if pillars.history < 70:
        items.append("Move money through your account regularly to keep a consistent history.")

    return list(dict.fromkeys(items))[:MAX_RECOMMENDATIONS]


def build_risk_alerts(
    indicators: Indicators, score: int, previous_score: Optional[int]
) -> list[RiskAlert]:
    alerts: list[RiskAlert] = []
    if indicators.overdue_invoices > 0:
        alerts.append(
            RiskAlert(
                "delay_risk",
                Severity.critical,
                "High risk of late payment",
                f"{indicators.overdue_invoices} invoice(s) past the due date.",
            )
        )
    elif indicators.due_soon_invoices > 0:
        alerts.append(
            RiskAlert(
                "delay_risk",
                Severity.warning,
                "Invoice delay risk",
                f"{indicators.due_soon_invoices} invoice(s) due within {DUE_SOON_DAYS} days "
                "without full payment.",
            )
        )

    utilization = indicators.card_limit_utilization_pct
    if utilization >= LIMIT_HIGH_PCT:
        alerts.append(
            RiskAlert(
                "limit_high",
                Severity.critical if utilization >= LIMIT_CRITICAL_PCT else Severity.warning,
                "High card limit usage",
                f"Current limit usage at {format_percent(utilization)}.",
            )
        )

    if previous_score is not None and score <= previous_score - SCORE_DROP_POINTS:
        alerts.append(
            RiskAlert(
                "score_drop",
                Severity.warning,
                "Banking score dropping",
                f"Your score fell {previous_score - score} point(s) recently.",
            )
        )

    if (indicators.expense_delta_pct or 0.0) >= SPENDING_SPIKE_PCT:
        alerts.append(
            RiskAlert(
                "spending_spike",
                Severity.warning,
                "Spending out of pattern",
                f"Expenses rose {format_percent(indicators.expense_delta_pct or 0.0)} "
                "versus the recent average.",
            )
        )
    return alerts


def _month_total(entries: Iterable[LedgerEntry], month: str, kinds: tuple) -> int:
    return sum(
        abs(int(entry.amount_cents or 0))
        for entry in entries
        if entry.kind in kinds and month_key(entry.occurred_at) == month
    )


def _days_until(target: date, today: date) -> int:
    return (target - today).days


def _invoice_flags(summary: CardCycleSummary, today: date) -> tuple[bool, bool, bool]:
    """(open, overdue, due_soon) for one card's billing summary."""
    is_open = summary.has_open_invoice or summary.has_outstanding_statement
    overdue = summary.has_outstanding_statement and summary.statement_due < today
    due_soon = False
    if summary.has_outstanding_statement and not overdue:
        due_soon = 0 <= _days_until(summary.statement_due, today) <= DUE_SOON_DAYS
    if not due_soon and summary.has_open_invoice:
        due_soon = 0 <= _days_until(summary.due_date, today) <= DUE_SOON_DAYS
    return is_open, overdue, due_soon and not overdue


def is_active_position(position: InvestmentPosition) -> bool:
    if position.operation == InvestmentOperation.sell:
        return False
    quantity = abs(Decimal(position.quantity or 0))
    return quantity > 0 or abs(int(position.current_amount_cents or 0)) > 0


def compute_relationship(
    cards: list[Card],
    entries: list[LedgerEntry],
    positions: list[InvestmentPosition],
    previous_score: Optional[int],
    today: date,
) -> RelationshipSummary:
    """Score the relationship from already loaded rows. No I/O."""
    visible = [card for card in cards if not card.archived]
    by_id = {card.id: card for card in visible}
    summaries = [card_cycle_summary(card, entries, today) for card in visible]

    total_limit = sum(max(0, int(card.limit_cents or 0)) for card in visible)
    used_limit = sum(max(0, summary.limit_used_cents) for summary in summaries)
    utilization = used_limit / total_limit * 100 if total_limit > 0 else 0.0

    payments = [
        entry
        for entry in entries
        if entry.kind == EntryKind.card_payment and entry.card_id in by_id
    ]
    on_time = [entry for entry in payments if entry.occurred_at.day <= by_id[entry.card_id].due_day]
    if payments:
        on_time_rate = len(on_time) / len(payments) * 100
    else:
        on_time_rate = 65.0 if visible else 80.0

    flags = [_invoice_flags(summary, today) for summary in summaries]
    open_count = sum(1 for is_open, _, _ in flags if is_open)
    overdue = sum(1 for _, is_overdue, _ in flags if is_overdue)
    due_soon = sum(1 for _, _, is_due_soon in flags if is_due_soon)

    punctuality = on_time_rate - overdue * 25 - due_soon * 8
    if not payments and visible:
        punctuality = min(punctuality, 70)

    active = [position for position in positions if is_active_position(position)]
    invested_total = sum(abs(int(position.current_amount_cents or 0)) for position in active)

    window_start = today - timedelta(days=HISTORY_WINDOW_DAYS)
    recent = [entry for entry in entries if entry.occurred_at >= window_start]
    per_month: dict[str, int] = {}
    for entry in recent:
        key = month_key(entry.occurred_at)
        per_month[key] = per_month.get(key, 0) + 1
    active_months = sum(1 for count in per_month.values() if count >= ACTIVE_MONTH_MIN_ENTRIES)

    this_month = month_key(today)
    current_expense = _month_total(entries, this_month, EXPENSE_KINDS)
    current_income = _month_total(entries, this_month, INCOME_KINDS)
    previous_expenses = [
        _month_total(entries, month_key(add_months(today, -step)), EXPENSE_KINDS)
        for step in (1, 2, 3)
    ]
    average = (
        sum(previous_expenses) / len(previous_expenses)
        if any(value > 0 for value in previous_expenses)
        else 0.0
    )
    expense_delta = (current_expense - average) / average * 100 if average > 0 else None
    savings_rate = (
        (current_income - current_expense) / current_income * 100 if current_income > 0 else None
    )

    pillars = Pillars(
        punctuality=clamp_score(punctuality),
        limit_usage=limit_usage_score(utilization, bool(visible)),
        investments=investment_score(len(active), invested_total),
        history=history_score(active_months, len(recent)),
        spending_control=spending_control_score(expense_delta, savings_rate),
    )
    score = weighted_score(pillars)
    indicators = Indicators(
        cards_count=len(visible),
        cards_with_open_invoice=open_count,
        overdue_invoices=overdue,
        due_soon_invoices=due_soon,
        on_time_payment_rate=round2(on_time_rate),
        card_limit_utilization_pct=round2(utilization),
        active_investments=len(active),
        invested_total_cents=invested_total,
        income_current_month_cents=current_income,
        expense_current_month_cents=current_expense,
        expense_delta_pct=round2(expense_delta) if expense_delta is not None else None,
        savings_rate_pct=round2(savings_rate) if savings_rate is not None else None,
        activity_months_90d=active_months,
    )
    return RelationshipSummary(
        reference_date=today,
        score=score,
        previous_score=previous_score,
        risk_level=risk_level_for(score),
        pillars=pillars,
        indicators=indicators,
        recommendations=build_recommendations(indicators, pillars),
        risk_alerts=build_risk_alerts(indicators, score, previous_score),
    )


def build_recommendation_prompt(summary: RelationshipSummary) -> str:
    ind = summary.indicators

    def pct(value: Optional[float]) -> str:
        return "no baseline" if value is None else format_percent(value)

    return "\n".join(
        [
            "You are a personal finance advisor.",
            "Give up to 3 short, practical tips to improve banking score and credit.",
            "",
            f"Current score: {summary.score}",
            f"Risk level: {summary.risk_level.value}",
            f"Limit usage: {format_percent(ind.card_limit_utilization_pct)}",
            f"On-time payments: {format_percent(ind.on_time_payment_rate)}",
            f"Expense change: {pct(ind.expense_delta_pct)}",
            f"Savings rate: {pct(ind.savings_rate_pct)}",
            f"Active investments: {ind.active_investments}",
        ]
    )


def history_window_start(today: date) -> date:
    return min(today - timedelta(days=HISTORY_WINDOW_DAYS), add_months(today, -3))


@dataclass
class ScoringInputs:
    cards: list[Card]
    entries: list[LedgerEntry]
    positions: list[InvestmentPosition]
    previous_score: Optional[int]
    warnings: list[str] = field(default_factory=list)


class RelationshipStore:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def previous_score(self, today: date) -> Optional[int]:
        stmt = (
            select(RelationshipScoreSnapshot.score)
            .where(
                RelationshipScoreSnapshot.user_id == self.user_id,
                RelationshipScoreSnapshot.reference_date < today,
            )
            .order_by(RelationshipScoreSnapshot.reference_date.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def latest(self) -> Optional[RelationshipScoreSnapshot]:
        stmt = (
            select(RelationshipScoreSnapshot)
            .where(RelationshipScoreSnapshot.user_id == self.user_id)
            .order_by(RelationshipScoreSnapshot.reference_date.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def history(self, limit: int = 30) -> list[RelationshipScoreSnapshot]:
        stmt = (
            select(RelationshipScoreSnapshot)
            .where(RelationshipScoreSnapshot.user_id == self.user_id)
            .order_by(RelationshipScoreSnapshot.reference_date.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def upsert(self, summary: RelationshipSummary) -> RelationshipScoreSnapshot:
        row = self.session.scalar(
            select(RelationshipScoreSnapshot).where(
                RelationshipScoreSnapshot.user_id == self.user_id,
                RelationshipScoreSnapshot.reference_date == summary.reference_date,
            )
        )
        if row is None:
            row = RelationshipScoreSnapshot(
                user_id=self.user_id, reference_date=summary.reference_date
            )
            self.session.add(row)
        row.month_ref = month_key(summary.reference_date)
        row.score = summary.score
        row.punctuality_score = summary.pillars.punctuality
        row.limit_usage_score = summary.pillars.limit_usage
        row.investment_score = summary.pillars.investments
        row.history_score = summary.pillars.history
        row.spending_control_score = summary.pillars.spending_control
        row.risk_level = summary.risk_level
        row.recommendations_json = json.dumps(summary.recommendations)
        row.model_recommendations_json = json.dumps(summary.model_recommendations)
        row.indicators_json = json.dumps(asdict(summary.indicators))
        self.session.flush()
        logger.info(
            f"relationship_snapshot: user_id={self.user_id} "
            f"reference_date={summary.reference_date} score={summary.score}"
        )
        return row


def snapshot_as_dict(row: RelationshipScoreSnapshot) -> dict:
    return {
        "reference_date": row.reference_date.isoformat(),
        "month_ref": row.month_ref,
        "score": row.score,
        "risk_level": row.risk_level.value,
        "pillars": {
            "punctuality": row.punctuality_score,
            "limit_usage": row.limit_usage_score,
            "investments": row.investment_score,
            "history": row.history_score,
            "spending_control": row.spending_control_score,
        },
        "recommendations": json.loads(row.recommendations_json or "[]"),
        "model_recommendations": json.loads(row.model_recommendations_json or "[]"),
        "indicators": json.loads(row.indicators_json or "{}"),
    }


class RelationshipScorer:
    def __init__(
        self,
        user_id: int,
        *,
        session_factory: Optional[SessionFactory] = None,
        model_client: Optional[LanguageModelClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.user_id = user_id
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.model_client = model_client or LanguageModelClient(self.settings)

    def _cards(self, session: Session) -> list[Card]:
        stmt = select(Card).where(Card.user_id == self.user_id, Card.archived.is_(False))
        return list(session.scalars(stmt).all())

    def _entries(self, session: Session, start: date) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == self.user_id, LedgerEntry.occurred_at >= start)
            .order_by(LedgerEntry.occurred_at, LedgerEntry.id)
        )
        try:
            return list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise LedgerQueryError(
                f"Failed to load ledger entries for user {self.user_id}"
            ) from exc

    def _positions(self, session: Session) -> tuple[list[InvestmentPosition], list[str]]:
        if not inspect(session.get_bind()).has_table(InvestmentPosition.__tablename__):
            return [], ["Investments table not found; investment pillar uses defaults."]
        stmt = select(InvestmentPosition).where(InvestmentPosition.user_id == self.user_id)
        return list(session.scalars(stmt).all()), []

    def load(self, today: date) -> ScoringInputs:
        start = history_window_start(today)
        cards, entries, (positions, warnings), previous = run_in_sessions(
            self.session_factory,
            self._cards,
            lambda session: self._entries(session, start),
            self._positions,
            lambda session: RelationshipStore(session, self.user_id).previous_score(today),
        )
        return ScoringInputs(cards, entries, positions, previous, warnings)

    def model_recommendations(self, summary: RelationshipSummary) -> list[str]:
        outcome = self.model_client.complete_lines(
            "Reply only with short plain-text bullet points, no extra markdown.",
            build_recommendation_prompt(summary),
            self.settings.max_model_lines,
        )
        if not outcome.ok:
            logger.warning(
                f"relationship_model: user_id={self.user_id} degraded={outcome.degraded}"
            )
        return outcome.value_or([])

    def evaluate(self, today: date, inputs: Optional[ScoringInputs] = None) -> RelationshipSummary:
        inputs = inputs or self.load(today)
        summary = compute_relationship(
            inputs.cards, inputs.entries, inputs.positions, inputs.previous_score, today
        )
        summary.warnings.extend(inputs.warnings)
        summary.model_recommendations = self.model_recommendations(summary)
        logger.info(
            f"relationship_score: user_id={self.user_id} score={summary.score} "
            f"risk_level={summary.risk_level.value} risk_alerts={len(summary.risk_alerts)}"
        )
        return summary
