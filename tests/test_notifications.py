from datetime import date, datetime, timedelta

from automation_settings import AutomationConfig
from database import session_scope
from fakes import FakeEmailSender, FakeModelClient, FakePushSender
from models import AlertRecord, AlertType, DeliveryStatus, EntryKind, LedgerEntry
from notifications import (
    AlertStore,
    AutomationEvent,
    MonthlyReportMailer,
    NotificationFanout,
    render_alerts_email,
)
from reports import MonthlyReportBuilder

NOW = datetime(2026, 10, 18, 9, 0)


def _event(title: str = "Dollar above limit") -> AutomationEvent:
    return AutomationEvent(AlertType.dollar_threshold, title, "USD/BRL at 5.5000.")


def test_same_alert_inside_window_is_not_repeated(session) -> None:
    store = AlertStore(session, 1, dedup_hours=18)

    assert len(store.insert_new([_event(), _event()], NOW)) == 1
    assert store.insert_new([_event()], NOW + timedelta(hours=17)) == []
    assert len(store.insert_new([_event()], NOW + timedelta(hours=19))) == 1
    assert len(AlertStore(session, 2).insert_new([_event()], NOW)) == 1

    assert session.query(AlertRecord).filter_by(user_id=1).count() == 2


def test_recent_and_mark_read(session) -> None:
    store = AlertStore(session, 1)
    store.insert_new([_event("first"), _event("second")], NOW)

    alerts = store.recent()
    assert len(alerts) == 2
    assert store.mark_read(alerts[0].id).is_read
    assert [alert.title for alert in store.recent(unread_only=True)] == [alerts[1].title]
    assert AlertStore(session, 2).mark_read(alerts[1].id) is None


def test_fanout_delivers_only_new_events(session) -> None:
    push, email = FakePushSender(), FakeEmailSender()
    fanout = NotificationFanout(session, 1, push_sender=push, email_sender=email)

    first = fanout.deliver([_event(), _event("Second")], AutomationConfig(), "ana@example.com", NOW)
    assert first.inserted == 2
    assert first.pushed == 2
    assert first.emailed
    assert push.sent[0][1].tag == "dollar_threshold"
    assert "Second" in email.messages[0].html

    again = fanout.deliver([_event()], AutomationConfig(), "ana@example.com", NOW)
    assert again.inserted == 0
    assert again.delivered == []
    assert len(push.sent) == 2
    assert len(email.messages) == 1


def test_fanout_respects_channel_switches(session) -> None:
    push, email = FakePushSender(), FakeEmailSender(ok=False)
    fanout = NotificationFanout(session, 1, push_sender=push, email_sender=email)

    result = fanout.deliver(
        [_event()],
        AutomationConfig(internal_enabled=False, push_enabled=False),
        "ana@example.com",
        NOW,
    )

    assert result.inserted == 0
    assert len(result.delivered) == 1
    assert push.sent == []
    assert not result.emailed
    assert result.warnings == ["Alert email failed: provider down"]
    assert session.query(AlertRecord).count() == 0

    quiet = fanout.deliver([_event("Other")], AutomationConfig(email_enabled=False), None, NOW)
    assert quiet.inserted == 1
    assert len(email.messages) == 1


def test_record_stores_alerts_before_anything_is_sent(session) -> None:
    push = FakePushSender()
    fanout = NotificationFanout(session, 1, push_sender=push, email_sender=FakeEmailSender())

    recorded = fanout.record([_event(), _event()], AutomationConfig(), NOW)

    assert recorded.inserted == 1
    assert push.sent == []
    assert session.query(AlertRecord).count() == 1

    sent = fanout.send(recorded, AutomationConfig(email_enabled=False), None)

    assert sent.pushed == 1
    assert len(push.sent) == 1


def test_alert_digest_escapes_html() -> None:
    message = render_alerts_email([_event("<b>Visa</b> invoice due soon")], "ana@example.com")
    assert "&lt;b&gt;Visa&lt;/b&gt;" in message.html
    assert "- <b>Visa</b> invoice due soon: USD/BRL at 5.5000." in message.text


def test_monthly_report_delivery_is_recorded(session_factory) -> None:
    with session_scope(session_factory) as session:
        session.add(
            LedgerEntry(
                user_id=1,
                occurred_at=date(2026, 9, 3),
                kind=EntryKind.expense,
                description="Aluguel",
                amount_cents=150000,
            )
        )
    report = MonthlyReportBuilder(
        1, session_factory=session_factory, model_client=FakeModelClient()
    ).build("2026-09", today=date(2026, 10, 1))

    email = FakeEmailSender()
    with session_scope(session_factory) as session:
        skipped = MonthlyReportMailer(session, 1, email_sender=email).send(report, None)
        assert skipped.status == DeliveryStatus.skipped
        assert skipped.recipient_email == ""

    with session_scope(session_factory) as session:
        sent = MonthlyReportMailer(session, 1, email_sender=email).send(report, "ana@example.com")
        assert sent.status == DeliveryStatus.sent
        assert sent.total_cents == 150000
        assert sent.sent_at is not None

    assert email.messages[0].subject == "Finsight - monthly report September 2026"
    assert "R$ 1.500,00" in email.messages[0].html
    assert "Total spent: R$ 1.500,00" in email.messages[0].text

    with session_scope(session_factory) as session:
        failed = MonthlyReportMailer(
            session, 1, email_sender=FakeEmailSender(ok=False)
        ).send(report, "ana@example.com")
        assert failed.status == DeliveryStatus.error
        assert failed.details == "provider down"
