"""
Insight generation for a monthly period.

Two streams feed one snapshot: deterministic rule lines computed from the
aggregates, and optional language-model lines that degrade to nothing. The
snapshot for a (user, period) pair is replaced as a whole on every run.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from aggregation import Aggregation, CategoryTotal, ExpenseRow
from config import Settings, get_settings
from forecast import Forecast
from llm import LanguageModelClient
from models import InsightRecord, InsightSource, Severity
from text_utils import dedupe_lines, format_brl, format_percent, normalize_text

logger = logging.getLogger(__name__)

STABLE_BAND_PCT = 5.0
CATEGORY_TIP_SHARE_PCT = 35.0
CATEGORY_CONCERN_SHARE_PCT = 40.0
DELIVERY_SHARE_PCT = 8.0
SUBSCRIPTION_MATERIALITY_CENTS = 1000
OUTLIER_FLOOR_CENTS = 8000
OUTLIER_TICKET_FACTOR = 2.4

SUBSCRIPTION_TERMS = (
    "assinatura",
    "subscription",
    "netflix",
    "spotify",
    "prime",
    "hbo",
    "disney",
    "youtube",
    "apple",
    "cloud",
)
DELIVERY_TERMS = (
    "delivery",
    "ifood",
    "uber eats",
    "rappi",
    "lanche",
    "restaurante",
    "restaurant",
    "pizza",
    "hamburg",
)

MODEL_SYSTEM_PROMPT = "Reply only with short plain-text bullet points, no extra markdown."


@dataclass(frozen=True)
class InsightLine:
    insight_type: str
    title: str
    body: str
    severity: Severity
    source: InsightSource = InsightSource.rule


@dataclass
class InsightContext:
    user_id: int
    period: str
    month_label: str
    current: Aggregation
    previous: Aggregation
    delta_cents: int
    delta_percent: Optional[float]
    forecast: Forecast
    spike_threshold_pct: float = 20.0

    @property
    def top_category(self) -> Optional[CategoryTotal]:
        return self.current.top_category

    @property
    def top_expenses(self) -> list[ExpenseRow]:
        return self.current.expense_rows[:10]


@dataclass
class InsightBundle:
    heuristic: list[InsightLine] = field(default_factory=list)
    model: list[InsightLine] = field(default_factory=list)
    merged: list[InsightLine] = field(default_factory=list)
    model_degraded: Optional[str] = None

    @property
    def texts(self) -> list[str]:
        return [line.body for line in self.merged]


def _matching_total(rows: list[ExpenseRow], terms: tuple[str, ...]) -> int:
    total = 0
    for row in rows:
        text = normalize_text(f"{row.description} {row.category}")
        if any(term in text for term in terms):
            total += row.amount_cents
    return total


def _trend_line(ctx: InsightContext) -> InsightLine:
    previous = ctx.previous.expense_cents
    if previous <= 0 or ctx.delta_percent is None:
        return InsightLine(
            "no_baseline",
            "No comparison baseline",
            "There is not enough history to compare with the previous month.",
            Severity.info,
        )
    pct = ctx.delta_percent
    if pct > STABLE_BAND_PCT:
        return InsightLine(
            "spending_spike",
            "Spending increase",
            f"You spent {format_percent(pct)} more than last month "
            f"({format_brl(abs(ctx.delta_cents))} increase over {format_brl(previous)}).",
            Severity.warning if pct >= ctx.spike_threshold_pct else Severity.info,
        )
    if pct < -STABLE_BAND_PCT:
        return InsightLine(
            "spending_reduction",
            "Spending reduction",
            f"You cut spending by {format_percent(abs(pct))} compared with last month "
            f"({format_brl(abs(ctx.delta_cents))} saved).",
            Severity.success,
        )
    return InsightLine(
        "spending_stable",
        "Stable spending",
        f"Spending is practically flat compared with last month "
        f"({format_percent(abs(pct))} change).",
        Severity.info,
    )


def _category_line(ctx: InsightContext) -> Optional[InsightLine]:
    top = ctx.top_category
    if top is None or ctx.current.expense_cents <= 0:
        return None
    share = float(top.percent)
    body = (
        f"{top.category} accounts for {format_percent(share)} of the total "
        f"({format_brl(top.total_cents)})."
    )
    if share >= CATEGORY_TIP_SHARE_PCT:
        body += (
            f" Cutting {top.category} by 10% would save about "
            f"{format_brl(round(top.total_cents * 0.1))} next month."
        )
    return InsightLine(
        "category_focus",
        f"Top category: {top.category}",
        body,
        Severity.warning if share >= CATEGORY_CONCERN_SHARE_PCT else Severity.info,
    )


def _outlier_line(ctx: InsightContext) -> Optional[InsightLine]:
    rows = ctx.current.expense_rows
    if not rows:
        return None
    biggest = rows[0]
    average = ctx.current.expense_cents / len(rows)
    detail = (
        f"{biggest.description} ({format_brl(biggest.amount_cents)} on "
        f"{biggest.date.strftime('%d/%m/%Y')})"
    )
    if biggest.amount_cents >= max(OUTLIER_FLOOR_CENTS, average * OUTLIER_TICKET_FACTOR):
        return InsightLine(
            "outlier", "Unusual expense", f"Largest out-of-pattern expense: {detail}.", Severity.warning
        )
    return InsightLine(
        "largest_expense", "Largest expense", f"Largest single expense: {detail}.", Severity.info
    )


def _forecast_line(ctx: InsightContext) -> InsightLine:
    net = ctx.forecast.net_cents
    if net >= 0:
        return InsightLine(
            "forecast",
            "Month-end forecast",
            f"Projected month-end balance: {format_brl(net)}.",
            Severity.success,
        )
    return InsightLine(
        "forecast",
        "Month-end forecast",
        f"Projected month-end balance: {format_brl(net)} (negative).",
        Severity.critical,
    )


def build_heuristic_insights(ctx: InsightContext) -> list[InsightLine]:
    total = ctx.current.expense_cents
    if total <= 0 or not ctx.current.expense_rows:
        return [
            InsightLine(
                "overview",
                f"Spending summary ({ctx.month_label})",
                "No spending recorded for the selected period.",
                Severity.info,
            ),
            _trend_line(ctx),
            _forecast_line(ctx),
        ]

    lines: list[InsightLine] = [
        InsightLine(
            "overview",
            f"Spending summary ({ctx.month_label})",
            f"Total spent in {ctx.month_label}: {format_brl(total)}.",
            Severity.info,
        ),
        _trend_line(ctx),
    ]
    category = _category_line(ctx)
    if category:
        lines.append(category)
    lines.append(_forecast_line(ctx))
    outlier = _outlier_line(ctx)
    if outlier:
        lines.append(outlier)

    rows = ctx.current.expense_rows
    subscriptions = _matching_total(rows, SUBSCRIPTION_TERMS)
    if subscriptions >= SUBSCRIPTION_MATERIALITY_CENTS:
        lines.append(
            InsightLine(
                "subscriptions",
                "Recurring subscriptions",
                f"Subscriptions and recurring services added up to {format_brl(subscriptions)}. "
                "Review plans you rarely use.",
                Severity.info,
            )
        )

    delivery = _matching_total(rows, DELIVERY_TERMS)
    if delivery > 0 and delivery * 100 / total >= DELIVERY_SHARE_PCT:
        lines.append(
            InsightLine(
                "delivery",
                "Delivery and eating out",
                f"Delivery and ready-made food took {format_brl(delivery)}. "
                "Planning meals can reduce this.",
                Severity.warning,
            )
        )
    return lines


def build_model_prompt(ctx: InsightContext) -> str:
    categories = [
        {"category": item.category, "total": item.total_cents / 100, "percent": float(item.percent)}
        for item in ctx.current.category_totals[:8]
    ]
    top = [
        {"description": row.description, "category": row.category, "amount": row.amount_cents / 100}
        for row in ctx.top_expenses[:8]
    ]
    variation = "no baseline" if ctx.delta_percent is None else format_percent(ctx.delta_percent)
    return "\n".join(
        [
            "You are a personal finance analyst.",
            "Write up to 3 short, actionable insights.",
            "",
            f"Month: {ctx.month_label}",
            f"Total spent: {format_brl(ctx.current.expense_cents)}",
            f"Previous month: {format_brl(ctx.previous.expense_cents)}",
            f"Change: {variation}",
            f"Projected month-end balance: {format_brl(ctx.forecast.net_cents)}",
            f"Categories: {json.dumps(categories, ensure_ascii=False)}",
            f"Largest expenses: {json.dumps(top, ensure_ascii=False)}",
            "",
            "Focus on where spending concentrates, savings opportunities and "
            "practical steps for next month.",
        ]
    )


def merge_insights(
    heuristic: list[InsightLine], model: list[InsightLine], limit: int
) -> list[InsightLine]:
    """Rule lines first, model lines take the last slots; dedup on the body text."""
    room = max(0, limit - len(model))
    candidates = heuristic[:room] + model + heuristic[room:]
    by_text = {}
    for line in candidates:
        by_text.setdefault(normalize_text(line.body), line)
    kept = dedupe_lines((line.body for line in candidates), limit=limit)
    return [by_text[normalize_text(text)] for text in kept]


class InsightGenerator:
    def __init__(
        self,
        *,
        model_client: Optional[LanguageModelClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.model_client = model_client or LanguageModelClient(self.settings)

    def model_insights(self, ctx: InsightContext) -> tuple[list[InsightLine], Optional[str]]:
        outcome = self.model_client.complete_lines(
            MODEL_SYSTEM_PROMPT, build_model_prompt(ctx), self.settings.max_model_lines
        )
        if not outcome.ok:
            logger.warning(
                f"model_insights: user_id={ctx.user_id} period={ctx.period} degraded={outcome.degraded}"
            )
            return [], outcome.degraded
        return [
            InsightLine(
                "model_tip",
                f"Model insight {index}",
                text,
                Severity.info,
                InsightSource.model,
            )
            for index, text in enumerate(outcome.value_or([]), start=1)
        ], None

    def generate(self, ctx: InsightContext) -> InsightBundle:
        heuristic = build_heuristic_insights(ctx)
        model, degraded = self.model_insights(ctx)
        merged = merge_insights(heuristic, model, self.settings.max_insights)
        return InsightBundle(
            heuristic=heuristic, model=model, merged=merged, model_degraded=degraded
        )


class InsightStore:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def replace_snapshot(
        self, period: str, lines: list[InsightLine], metadata: Optional[dict] = None
    ) -> int:
        """Swap the stored rule/model insights for `period` with `lines`."""
        self.session.execute(
            delete(InsightRecord).where(
                InsightRecord.user_id == self.user_id,
                InsightRecord.period == period,
                InsightRecord.source.in_((InsightSource.rule, InsightSource.model)),
            )
        )
        payload = json.dumps(metadata or {}, default=str)
        for position, line in enumerate(lines):
            self.session.add(
                InsightRecord(
                    user_id=self.user_id,
                    period=period,
                    insight_type=line.insight_type,
                    title=line.title,
                    body=line.body,
                    severity=line.severity,
                    source=line.source,
                    metadata_json=payload if line.source == InsightSource.rule else "{}",
                    position=position,
                )
            )
        self.session.flush()
        logger.info(
            f"insight_snapshot: user_id={self.user_id} period={period} rows={len(lines)}"
        )
        return len(lines)

    def for_period(self, period: str) -> list[InsightRecord]:
        stmt = (
            select(InsightRecord)
            .where(InsightRecord.user_id == self.user_id, InsightRecord.period == period)
            .order_by(InsightRecord.position, InsightRecord.id)
        )
        return list(self.session.scalars(stmt).all())

    def latest_period(self) -> Optional[str]:
        stmt = (
            select(InsightRecord.period)
            .where(InsightRecord.user_id == self.user_id)
            .order_by(InsightRecord.period.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)
