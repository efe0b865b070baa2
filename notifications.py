"""
Notification fan-out.

Events that survive dedup become internal alert rows, push messages and a
digest email. Each channel is gated by its own setting and fails on its own.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import select
from sqlalchemy.orm import Session

from automation_settings import AutomationConfig
from config import Settings, get_settings
from email_alerts import EmailMessage, EmailSender
from models import AlertRecord, AlertType, DeliveryStatus, MonthlyReportDelivery
from push import PushPayload, PushSender
from reports import MonthlyReport
from text_utils import format_brl

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

templates = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)
templates.filters["currency"] = format_brl


@dataclass(frozen=True)
class AutomationEvent:
    alert_type: AlertType
    title: str
    body: str
    due_at: Optional[date] = None
    card_id: Optional[int] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.alert_type.value, self.title, self.body)


def dedupe_events(events: Iterable[AutomationEvent]) -> list[AutomationEvent]:
    seen: set[tuple[str, str, str]] = set()
    output: list[AutomationEvent] = []
    for event in events:
        if event.key in seen:
            continue
        seen.add(event.key)
        output.append(event)
    return output


class AlertStore:
    def __init__(self, session: Session, user_id: int, dedup_hours: int = 18) -> None:
        self.session = session
        self.user_id = user_id
        self.dedup_hours = dedup_hours

    def exists_recent(self, alert_type: AlertType, title: str, now: datetime) -> bool:
        cutoff = now - timedelta(hours=self.dedup_hours)
        stmt = (
            select(AlertRecord.id)
            .where(
                AlertRecord.user_id == self.user_id,
                AlertRecord.type == alert_type,
                AlertRecord.title == title,
                AlertRecord.created_at >= cutoff,
            )
            .limit(1)
        )
        return self.session.scalar(stmt) is not None

    def insert_new(
        self, events: Iterable[AutomationEvent], now: Optional[datetime] = None
    ) -> list[AutomationEvent]:
        """Insert alerts with no same type/title row in the dedup window.

        Returns the events that were inserted.
        """
        now = now or datetime.utcnow()
        inserted: list[AutomationEvent] = []
        skipped = 0
        for event in events:
            if self.exists_recent(event.alert_type, event.title, now):
                skipped += 1
                continue
            self.session.add(
                AlertRecord(
                    user_id=self.user_id,
                    card_id=event.card_id,
                    type=event.alert_type,
                    title=event.title,
                    body=event.body,
                    due_at=event.due_at,
                    is_read=False,
                    created_at=now,
                )
            )
            self.session.flush()
            inserted.append(event)
        logger.info(
            f"alerts_insert: user_id={self.user_id} created={len(inserted)} skipped={skipped}"
        )
        return inserted

    def recent(self, *, unread_only: bool = False, limit: int = 50) -> list[AlertRecord]:
        stmt = select(AlertRecord).where(AlertRecord.user_id == self.user_id)
        if unread_only:
            stmt = stmt.where(AlertRecord.is_read.is_(False))
        stmt = stmt.order_by(AlertRecord.created_at.desc(), AlertRecord.id.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def mark_read(self, alert_id: int) -> Optional[AlertRecord]:
        alert = self.session.get(AlertRecord, alert_id)
        if alert is None or alert.user_id != self.user_id:
            return None
        alert.is_read = True
        self.session.flush()
        return alert


def render_alerts_email(events: list[AutomationEvent], to: str) -> EmailMessage:
    html = templates.get_template("email/alerts_digest.html").render(events=events)
    text = "\n".join(f"- {event.title}: {event.body}" for event in events)
    return EmailMessage(
        to=to,
        subject="Finsight - automatic alerts",
        html=html,
        text=f"Finsight automatic alerts\n\n{text}",
    )


@dataclass
class FanoutResult:
    inserted: int = 0
    pushed: int = 0
    push_failed: int = 0
    emailed: bool = False
    delivered: list[AutomationEvent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class NotificationFanout:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        push_sender: Optional[PushSender] = None,
        email_sender: Optional[EmailSender] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.push_sender = push_sender or PushSender(session, self.settings)
        self.email_sender = email_sender or EmailSender(self.settings)
        self.alerts = AlertStore(session, user_id, self.settings.alert_dedup_hours)

    def record(
        self,
        events: Iterable[AutomationEvent],
        config: AutomationConfig,
        now: Optional[datetime] = None,
    ) -> FanoutResult:
        """Dedupe the run's events and store the new ones as internal alerts."""
        result = FanoutResult()
        candidates = dedupe_events(events)
        if config.internal_enabled:
            survivors = self.alerts.insert_new(candidates, now)
            result.inserted = len(survivors)
        else:
            survivors = candidates
        result.delivered = survivors
        return result

    def send(
        self,
        result: FanoutResult,
        config: AutomationConfig,
        recipient: Optional[str] = None,
    ) -> FanoutResult:
        """Push and email the recorded events.

        Pending writes are committed before the first network call and again
        after every push, so no write transaction stays open across them.
        """
        survivors = result.delivered
        if not survivors:
            return result
        self.session.commit()

        if config.push_enabled:
            for event in survivors:
                push = self.push_sender.send_to_user(
                    self.user_id,
                    PushPayload(title=event.title, body=event.body, tag=event.alert_type.value),
                )
                self.session.commit()
                result.pushed += push.sent
                result.push_failed += push.failed
                if push.message and not push.sent:
                    result.warnings.append(f"Push skipped: {push.message}")
                    break

        if config.email_enabled and recipient:
            sent = self.email_sender.send(render_alerts_email(survivors, recipient))
            result.emailed = sent.ok
            if not sent.ok:
                result.warnings.append(f"Alert email failed: {sent.error}")

        logger.info(
            f"fanout: user_id={self.user_id} events={len(survivors)} inserted={result.inserted} "
            f"pushed={result.pushed} emailed={result.emailed}"
        )
        return result

    def deliver(
        self,
        events: Iterable[AutomationEvent],
        config: AutomationConfig,
        recipient: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FanoutResult:
        return self.send(self.record(events, config, now), config, recipient)


class MonthlyReportMailer:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        email_sender: Optional[EmailSender] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.email_sender = email_sender or EmailSender(settings or get_settings())

    def render(self, report: MonthlyReport, to: str) -> EmailMessage:
        html = templates.get_template("email/monthly_report.html").render(report=report)
        lines = [
            f"Monthly report: {report.ranges.label}",
            f"Total spent: {format_brl(report.current.expense_cents)}",
            f"Income: {format_brl(report.current.income_cents)}",
            f"Projected month-end balance: {format_brl(report.forecast.net_cents)}",
            "",
        ]
        lines.extend(f"- {line.body}" for line in report.insights.merged)
        return EmailMessage(
            to=to,
            subject=f"Finsight - monthly report {report.ranges.label}",
            html=html,
            text="\n".join(lines),
        )

    def _upsert(self, month: str) -> MonthlyReportDelivery:
        row = self.session.scalar(
            select(MonthlyReportDelivery).where(
                MonthlyReportDelivery.user_id == self.user_id,
                MonthlyReportDelivery.month == month,
            )
        )
        if row is None:
            row = MonthlyReportDelivery(user_id=self.user_id, month=month)
            self.session.add(row)
        return row

    def send(self, report: MonthlyReport, recipient: Optional[str]) -> MonthlyReportDelivery:
        row = self._upsert(report.month)
        row.total_cents = report.current.expense_cents
        row.recipient_email = recipient or ""
        if not recipient:
            row.status = DeliveryStatus.skipped
            row.details = "no recipient email"
        else:
            result = self.email_sender.send(self.render(report, recipient))
            if result.ok:
                row.status = DeliveryStatus.sent
                row.details = f"provider={result.provider} id={result.message_id or '-'}"
                row.sent_at = datetime.utcnow()
            else:
                row.status = DeliveryStatus.error
                row.details = (result.error or "send failed")[:500]
        self.session.flush()
        logger.info(
            f"monthly_report_email: user_id={self.user_id} month={report.month} "
            f"status={row.status.value}"
        )
        return row
