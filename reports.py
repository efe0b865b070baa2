import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from sqlalchemy.orm import Session

from aggregation import Aggregation, ExpenseAggregator, ExpenseRow
from category_metadata import CategoryMetadataService, CategoryVisual
from config import Settings, get_settings
from database import SessionFactory, SessionLocal, run_in_sessions, session_scope
from forecast import Forecast, project_month
from insights import InsightBundle, InsightContext, InsightGenerator, InsightStore
from llm import LanguageModelClient
from periods import MonthRanges, month_ranges
from text_utils import round2

logger = logging.getLogger(__name__)

TOP_ROWS = 10


@dataclass
class MonthlyReport:
    user_id: int
    ranges: MonthRanges
    current: Aggregation
    previous: Aggregation
    delta_cents: int
    delta_percent: Optional[float]
    forecast: Forecast
    top_rows: list[ExpenseRow]
    visuals: dict[str, CategoryVisual] = field(default_factory=dict)
    insights: InsightBundle = field(default_factory=InsightBundle)
    warnings: list[str] = field(default_factory=list)

    @property
    def month(self) -> str:
        return self.ranges.month

    @property
    def top_category_share(self) -> Optional[float]:
        top = self.current.top_category
        return float(top.percent) if top else None

    def summary(self) -> dict[str, Any]:
        top = self.current.top_category
        return {
            "month": self.ranges.month,
            "label": self.ranges.label,
            "range": {
                "start": self.ranges.start.isoformat(),
                "end_exclusive": self.ranges.end_exclusive.isoformat(),
                "previous_start": self.ranges.previous_start.isoformat(),
                "previous_end_exclusive": self.ranges.previous_end_exclusive.isoformat(),
            },
            "income_cents": self.current.income_cents,
            "expense_cents": self.current.expense_cents,
            "previous_expense_cents": self.previous.expense_cents,
            "delta_cents": self.delta_cents,
            "delta_percent": self.delta_percent,
            "top_category": top.category if top else None,
            "top_category_share": self.top_category_share,
            "forecast": {
                "days_in_month": self.forecast.days_in_month,
                "days_elapsed": self.forecast.days_elapsed,
                "income_cents": self.forecast.income_cents,
                "expense_cents": self.forecast.expense_cents,
                "net_cents": self.forecast.net_cents,
            },
            "categories": [
                {
                    "category": item.category,
                    "total_cents": item.total_cents,
                    "percent": str(item.percent),
                    "icon_name": self.visuals[item.category].icon_name
                    if item.category in self.visuals
                    else None,
                    "icon_color": self.visuals[item.category].icon_color
                    if item.category in self.visuals
                    else None,
                }
                for item in self.current.category_totals
            ],
            "top_expenses": [
                {
                    "id": row.id,
                    "date": row.date.isoformat(),
                    "description": row.description,
                    "category": row.category,
                    "amount_cents": row.amount_cents,
                    "expense_type": row.expense_type,
                    "source": row.source,
                }
                for row in self.top_rows
            ],
            "insights": [
                {
                    "type": line.insight_type,
                    "title": line.title,
                    "body": line.body,
                    "severity": line.severity.value,
                    "source": line.source.value,
                }
                for line in self.insights.merged
            ],
            "warnings": list(self.warnings),
        }


def spending_delta(current_cents: int, previous_cents: int) -> tuple[int, Optional[float]]:
    delta = current_cents - previous_cents
    if previous_cents <= 0:
        return delta, None
    return delta, round2(delta / previous_cents * 100)


class MonthlyReportBuilder:
    """Current vs previous month report for one user.

    Both aggregations run concurrently in separate sessions. Category
    metadata rows are upserted as a side effect; insights are only persisted
    when the caller asks for it.
    """

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
        self.generator = InsightGenerator(model_client=model_client, settings=self.settings)

    def _aggregate(self, ranges: MonthRanges) -> tuple[Aggregation, Aggregation]:
        user_id = self.user_id
        current, previous = run_in_sessions(
            self.session_factory,
            lambda session: ExpenseAggregator(session, user_id).aggregate(
                ranges.start, ranges.end_exclusive
            ),
            lambda session: ExpenseAggregator(session, user_id).aggregate(
                ranges.previous_start, ranges.previous_end_exclusive
            ),
        )
        return current, previous

    def build(
        self,
        month: Optional[str] = None,
        *,
        today: date,
        spike_threshold_pct: float = 20.0,
        persist: bool = False,
    ) -> MonthlyReport:
        ranges = month_ranges(month, today=today)
        current, previous = self._aggregate(ranges)
        delta_cents, delta_percent = spending_delta(current.expense_cents, previous.expense_cents)
        forecast = project_month(current.income_cents, current.expense_cents, ranges.start, today)

        with session_scope(self.session_factory) as session:
            visuals = CategoryMetadataService(session, self.user_id).ensure_for_names(
                item.category for item in current.category_totals
            )

        ctx = InsightContext(
            user_id=self.user_id,
            period=ranges.month,
            month_label=ranges.label,
            current=current,
            previous=previous,
            delta_cents=delta_cents,
            delta_percent=delta_percent,
            forecast=forecast,
            spike_threshold_pct=spike_threshold_pct,
        )
        bundle = self.generator.generate(ctx)
        warnings = list(dict.fromkeys(current.warnings + previous.warnings))
        if bundle.model_degraded:
            warnings.append(f"Model insights unavailable: {bundle.model_degraded}")

        report = MonthlyReport(
            user_id=self.user_id,
            ranges=ranges,
            current=current,
            previous=previous,
            delta_cents=delta_cents,
            delta_percent=delta_percent,
            forecast=forecast,
            top_rows=current.expense_rows[:TOP_ROWS],
            visuals=visuals,
            insights=bundle,
            warnings=warnings,
        )
        if persist:
            with session_scope(self.session_factory) as session:
                save_report_insights(session, report)
        logger.info(
            f"monthly_report: user_id={self.user_id} month={ranges.month} "
            f"expense_cents={current.expense_cents} delta_percent={delta_percent} "
            f"insights={len(bundle.merged)}"
        )
        return report


def save_report_insights(session: Session, report: MonthlyReport) -> int:
    metadata = {
        "expense_cents": report.current.expense_cents,
        "previous_expense_cents": report.previous.expense_cents,
        "delta_percent": report.delta_percent,
        "forecast_net_cents": report.forecast.net_cents,
    }
    return InsightStore(session, report.user_id).replace_snapshot(
        report.month, report.insights.merged, metadata
    )
