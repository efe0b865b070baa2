"""
Per-user automation run.

Order of work: category backfill, then the monthly report and the
relationship score concurrently, then threshold rules, then one transaction
that replaces the insight and score snapshots, records risk alerts and fans
out the surviving events. A hard failure anywhere before that transaction
leaves the previous snapshots untouched.
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from automation_settings import AutomationConfig, AutomationSettingsService
from billing import card_cycle_summary
from classifier import CategoryBackfillJob
from config import Settings, get_settings
from database import SessionFactory, SessionLocal, session_scope
from email_alerts import EmailSender
from forecast import Forecast
from fx_rates import FxQuote, FxRateService
from llm import LanguageModelClient
from models import AlertType, Card, InvestmentPosition, LedgerEntry, RunStatus, User
from notifications import AlertStore, AutomationEvent, NotificationFanout, dedupe_events
from outcome import Outcome
from periods import local_today
from push import PushSender
from reports import MonthlyReport, MonthlyReportBuilder, save_report_insights
from scoring import RelationshipScorer, RelationshipStore, RelationshipSummary, ScoringInputs
from text_utils import format_brl, format_percent

logger = logging.getLogger(__name__)


def spending_spike_event(
    delta_percent: Optional[float], config: AutomationConfig
) -> Optional[AutomationEvent]:
    if delta_percent is None or delta_percent < config.spending_spike_pct:
        return None
    return AutomationEvent(
        AlertType.spending_spike,
        "Significant spending increase",
        f"Your spending rose {format_percent(delta_percent)} this month vs the previous period.",
    )


def forecast_event(forecast: Forecast) -> Optional[AutomationEvent]:
    if not forecast.is_negative:
        return None
    return AutomationEvent(
        AlertType.forecast_warning,
        "Negative balance forecast",
        f"The current forecast points to a balance of {format_brl(forecast.net_cents)} "
        "at month end.",
    )


def dollar_events(bid: Optional[Decimal], config: AutomationConfig) -> list[AutomationEvent]:
    if bid is None:
        return []
    events: list[AutomationEvent] = []
    if config.dollar_upper is not None and bid >= config.dollar_upper:
        events.append(
            AutomationEvent(
                AlertType.dollar_threshold,
                "Dollar above limit",
                f"USD/BRL at {bid:.4f} (upper limit {config.dollar_upper:.4f}).",
            )
        )
    if config.dollar_lower is not None and bid <= config.dollar_lower:
        events.append(
            AutomationEvent(
                AlertType.dollar_threshold,
                "Dollar below limit",
                f"USD/BRL at {bid:.4f} (lower limit {config.dollar_lower:.4f}).",
            )
        )
    return events


def card_events(
    cards: list[Card], entries: list[LedgerEntry], config: AutomationConfig, today: date
) -> list[AutomationEvent]:
    events: list[AutomationEvent] = []
    window = range(0, config.card_due_days + 1)
    for card in cards:
        if card.archived:
            continue
        summary = card_cycle_summary(card, entries, today)
        if summary.has_outstanding_statement:
            due_date, amount = summary.statement_due, summary.outstanding_cents
        else:
            due_date, amount = summary.due_date, summary.current_total_cents
        due_in = (due_date - today).days
        if (summary.has_outstanding_statement or summary.has_open_invoice) and due_in in window:
            events.append(
                AutomationEvent(
                    AlertType.card_due_soon,
                    f"{card.name} invoice due soon",
                    f"Due in {due_in} day(s). Current amount: {format_brl(amount)}.",
                    due_at=due_date,
                    card_id=card.id,
                )
            )
        closing_in = (summary.closing_date - today).days
        if summary.has_open_invoice and closing_in in window:
            events.append(
                AutomationEvent(
                    AlertType.card_closing_soon,
                    f"{card.name} invoice closes soon",
                    f"Closes in {closing_in} day(s). "
                    f"Current partial: {format_brl(summary.current_total_cents)}.",
                    due_at=summary.closing_date,
                    card_id=card.id,
                )
            )
    return events


def previous_price_cents(position: InvestmentPosition) -> int:
    """Second-to-last price in the history, else the average cost."""
    try:
        history = json.loads(position.price_history_json or "[]")
    except json.JSONDecodeError:
        history = []
    if isinstance(history, list) and len(history) >= 2:
        try:
            candidate = int(round(float(history[-2])))
        except (TypeError, ValueError):
            candidate = 0
        if candidate > 0:
            return candidate
    return int(position.average_price_cents or 0)


def investment_drop_event(
    positions: list[InvestmentPosition], config: AutomationConfig
) -> Optional[AutomationEvent]:
    movers: list[tuple[float, InvestmentPosition]] = []
    for position in positions:
        if abs(Decimal(position.quantity or 0)) <= 0:
            continue
        previous = previous_price_cents(position)
        if previous <= 0:
            continue
        current = int(position.current_price_cents or 0)
        movers.append(((current - previous) / previous * 100, position))
    if not movers:
        return None
    pct, worst = min(movers, key=lambda item: item[0])
    if pct > -config.investment_drop_pct:
        return None
    label = worst.asset_name or worst.asset_type or "Investment"
    return AutomationEvent(
        AlertType.investment_drop,
        f"Drop in {label}",
        f"{label} fell {format_percent(abs(pct))} recently.",
    )


def build_events(
    report: MonthlyReport,
    inputs: ScoringInputs,
    config: AutomationConfig,
    bid: Optional[Decimal],
    today: date,
) -> list[AutomationEvent]:
    events: list[AutomationEvent] = []
    spike = spending_spike_event(report.delta_percent, config)
    if spike:
        events.append(spike)
    negative = forecast_event(report.forecast)
    if negative:
        events.append(negative)
    events.extend(dollar_events(bid, config))
    events.extend(card_events(inputs.cards, inputs.entries, config, today))
    drop = investment_drop_event(inputs.positions, config)
    if drop:
        events.append(drop)
    return dedupe_events(events)


def risk_alert_events(summary: RelationshipSummary) -> list[AutomationEvent]:
    return [
        AutomationEvent(alert.alert_type, alert.title, alert.body)
        for alert in summary.risk_alerts
    ]


@dataclass
class AutomationResult:
    user_id: int
    status: RunStatus
    events: list[AutomationEvent] = field(default_factory=list)
    alerts_created: int = 0
    risk_alerts_created: int = 0
    insights: int = 0
    score: Optional[int] = None
    categorized: int = 0
    pushed: int = 0
    emailed: bool = False
    warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "events": [
                {"type": event.alert_type.value, "title": event.title, "body": event.body}
                for event in self.events
            ],
            "alerts_created": self.alerts_created,
            "risk_alerts_created": self.risk_alerts_created,
            "insights": self.insights,
            "score": self.score,
            "categorized": self.categorized,
            "pushed": self.pushed,
            "emailed": self.emailed,
            "warnings": list(self.warnings),
            "error": self.error,
        }


class AutomationEngine:
    def __init__(
        self,
        user_id: int,
        *,
        session_factory: Optional[SessionFactory] = None,
        settings: Optional[Settings] = None,
        fx_service: Optional[FxRateService] = None,
        model_client: Optional[LanguageModelClient] = None,
        push_sender: Optional[PushSender] = None,
        email_sender: Optional[EmailSender] = None,
    ) -> None:
        self.user_id = user_id
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.fx_service = fx_service or FxRateService(self.settings)
        self.model_client = model_client or LanguageModelClient(self.settings)
        self.push_sender = push_sender
        self.email_sender = email_sender or EmailSender(self.settings)
        self.report_builder = MonthlyReportBuilder(
            user_id,
            session_factory=self.session_factory,
            model_client=self.model_client,
            settings=self.settings,
        )
        self.scorer = RelationshipScorer(
            user_id,
            session_factory=self.session_factory,
            model_client=self.model_client,
            settings=self.settings,
        )

    def _backfill(self) -> int:
        with session_scope(self.session_factory) as session:
            job = CategoryBackfillJob(session, self.user_id, self.settings.classifier_batch_limit)
            return job.run()

    def _score(self, today: date) -> tuple[ScoringInputs, RelationshipSummary]:
        inputs = self.scorer.load(today)
        return inputs, self.scorer.evaluate(today, inputs)

    def _quote(
        self, config: AutomationConfig, fx: Optional[Outcome[FxQuote]]
    ) -> tuple[Optional[Decimal], Optional[str]]:
        if config.dollar_upper is None and config.dollar_lower is None:
            return None, None
        outcome = fx if fx is not None else self.fx_service.usd_brl_bid()
        if not outcome.ok:
            return None, f"FX threshold check skipped: {outcome.degraded}"
        quote = outcome.value_or(None)
        return (quote.bid if quote else None), None

    def _fanout(self, session: Session) -> NotificationFanout:
        return NotificationFanout(
            session,
            self.user_id,
            push_sender=self.push_sender,
            email_sender=self.email_sender,
            settings=self.settings,
        )

    def run(
        self,
        config: AutomationConfig,
        *,
        today: date,
        recipient: Optional[str] = None,
        fx: Optional[Outcome[FxQuote]] = None,
        now: Optional[datetime] = None,
    ) -> AutomationResult:
        result = AutomationResult(self.user_id, RunStatus.success)
        result.categorized = self._backfill()

        with ThreadPoolExecutor(max_workers=2) as pool:
            report_job = pool.submit(
                self.report_builder.build,
                None,
                today=today,
                spike_threshold_pct=config.spending_spike_pct,
            )
            score_job = pool.submit(self._score, today)
        report = report_job.result()
        inputs, summary = score_job.result()
        result.warnings.extend(report.warnings)
        result.warnings.extend(summary.warnings)

        bid, fx_warning = self._quote(config, fx)
        if fx_warning:
            result.warnings.append(fx_warning)
            logger.warning(f"automation_fx: user_id={self.user_id} {fx_warning}")
        events = build_events(report, inputs, config, bid, today)

        with session_scope(self.session_factory) as session:
            result.insights = save_report_insights(session, report)
            RelationshipStore(session, self.user_id).upsert(summary)
            result.score = summary.score
            result.risk_alerts_created = len(
                AlertStore(session, self.user_id, self.settings.alert_dedup_hours).insert_new(
                    risk_alert_events(summary), now
                )
            )
            fanout = self._fanout(session).record(events, config, now)

        with session_scope(self.session_factory) as session:
            fanout = self._fanout(session).send(fanout, config, recipient)

        result.events = fanout.delivered
        result.alerts_created = fanout.inserted
        result.pushed = fanout.pushed
        result.emailed = fanout.emailed
        result.warnings.extend(fanout.warnings)
        logger.info(
            f"automation_run: user_id={self.user_id} events={len(events)} "
            f"delivered={len(fanout.delivered)} insights={result.insights} score={result.score}"
        )
        return result


class AutomationRunner:
    """Runs the engine for one user or for every user with automation enabled."""

    def __init__(
        self,
        *,
        session_factory: Optional[SessionFactory] = None,
        settings: Optional[Settings] = None,
        fx_service: Optional[FxRateService] = None,
        model_client: Optional[LanguageModelClient] = None,
        push_sender: Optional[PushSender] = None,
        email_sender: Optional[EmailSender] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.fx_service = fx_service or FxRateService(self.settings)
        self.model_client = model_client or LanguageModelClient(self.settings)
        self.push_sender = push_sender
        self.email_sender = email_sender or EmailSender(self.settings)

    def engine_for(self, user_id: int) -> AutomationEngine:
        return AutomationEngine(
            user_id,
            session_factory=self.session_factory,
            settings=self.settings,
            fx_service=self.fx_service,
            model_client=self.model_client,
            push_sender=self.push_sender,
            email_sender=self.email_sender,
        )

    def _record(self, user_id: int, status: RunStatus, error: Optional[str] = None) -> None:
        with session_scope(self.session_factory) as session:
            AutomationSettingsService(session, user_id).record_run(status, error)

    def run_user(
        self,
        user_id: int,
        *,
        today: Optional[date] = None,
        fx: Optional[Outcome[FxQuote]] = None,
    ) -> AutomationResult:
        today = today or local_today(self.settings.timezone)
        with session_scope(self.session_factory) as session:
            config = AutomationSettingsService(session, user_id).get()
            user = session.get(User, user_id)
            recipient = user.email if user else None

        if not config.enabled:
            self._record(user_id, RunStatus.skipped)
            logger.info(f"automation_run: user_id={user_id} status=skipped")
            return AutomationResult(user_id, RunStatus.skipped)

        try:
            result = self.engine_for(user_id).run(
                config, today=today, recipient=recipient, fx=fx
            )
        except Exception as exc:
            logger.exception(f"automation_run: user_id={user_id} status=error")
            self._record(user_id, RunStatus.error, str(exc) or exc.__class__.__name__)
            return AutomationResult(
                user_id, RunStatus.error, error=str(exc) or exc.__class__.__name__
            )
        self._record(user_id, RunStatus.success)
        return result

    def user_ids(self) -> list[int]:
        with session_scope(self.session_factory) as session:
            return list(session.scalars(select(User.id).order_by(User.id)).all())

    def run_all(self, *, today: Optional[date] = None) -> list[AutomationResult]:
        today = today or local_today(self.settings.timezone)
        fx = self.fx_service.usd_brl_bid()
        user_ids = self.user_ids()
        if not user_ids:
            return []
        workers = max(1, min(self.settings.automation_workers, len(user_ids)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(
                pool.map(lambda uid: self.run_user(uid, today=today, fx=fx), user_ids)
            )
        failed = sum(1 for item in results if item.status == RunStatus.error)
        logger.info(
            f"automation_run_all: users={len(results)} failed={failed} fx_ok={fx.ok}"
        )
        return results
