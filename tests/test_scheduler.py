from datetime import date

from sqlalchemy import select

from automation import AutomationRunner
from automation_settings import AutomationSettingsService
from database import session_scope
from fakes import FakeEmailSender, FakeFxService, FakeModelClient, FakePushSender
from models import DeliveryStatus, EntryKind, LedgerEntry, MonthlyReportDelivery, User
from periods import add_months, local_today, month_key
from scheduler import SchedulerManager
from schemas import AutomationSettingsIn


def _manager(session_factory, email: FakeEmailSender) -> SchedulerManager:
    runner = AutomationRunner(
        session_factory=session_factory,
        fx_service=FakeFxService(None),
        model_client=FakeModelClient(),
        push_sender=FakePushSender(),
        email_sender=email,
    )
    return SchedulerManager(runner)


def test_jobs_are_registered_and_stopped(session_factory) -> None:
    manager = _manager(session_factory, FakeEmailSender())
    manager.start()
    try:
        assert manager.scheduler.get_job("automation_daily") is not None
        assert manager.scheduler.get_job("monthly_report_email") is not None
    finally:
        manager.stop()
    assert not manager.scheduler.running


def test_previous_month_report_goes_to_opted_in_users(session_factory) -> None:
    manager = _manager(session_factory, FakeEmailSender())
    previous = add_months(local_today(manager.settings.timezone), -1)
    with session_scope(session_factory) as session:
        session.add_all(
            [
                User(id=1, email="ana@example.com"),
                User(id=2, email=None),
                User(id=3, email="carla@example.com"),
                LedgerEntry(
                    user_id=1,
                    occurred_at=date(previous.year, previous.month, 5),
                    kind=EntryKind.expense,
                    description="Mercado",
                    amount_cents=12345,
                ),
            ]
        )
        session.flush()
        AutomationSettingsService(session, 3).update(
            AutomationSettingsIn(monthly_report_enabled=False)
        )

    manager._send_monthly_reports("test")

    with session_scope(session_factory) as session:
        rows = {
            row.user_id: row for row in session.scalars(select(MonthlyReportDelivery)).all()
        }
    assert set(rows) == {1, 2}
    assert rows[1].status == DeliveryStatus.sent
    assert rows[1].month == month_key(previous)
    assert rows[1].total_cents == 12345
    assert rows[2].status == DeliveryStatus.skipped
    assert len(manager.runner.email_sender.messages) == 1
