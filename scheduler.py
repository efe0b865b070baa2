import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from automation import AutomationRunner
from automation_settings import AutomationSettingsService
from config import get_settings
from database import session_scope
from models import User
from notifications import MonthlyReportMailer
from periods import add_months, local_today, month_key
from reports import MonthlyReportBuilder


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, runner: Optional[AutomationRunner] = None) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)
        self.runner = runner or AutomationRunner(settings=self.settings)

    def _run_automation(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        results = self.runner.run_all()
        logger.info(f"scheduler_run: source={source} users={len(results)}")

    def _send_monthly_reports(self, source: str = "manual") -> None:
        today = local_today(self.settings.timezone)
        month = month_key(add_months(today, -1))
        sent = 0
        for user_id in self.runner.user_ids():
            with session_scope(self.runner.session_factory) as session:
                config = AutomationSettingsService(session, user_id).get()
                user = session.get(User, user_id)
                recipient = user.email if user else None
            if not (config.enabled and config.monthly_report_enabled):
                continue
            try:
                report = MonthlyReportBuilder(
                    user_id,
                    session_factory=self.runner.session_factory,
                    model_client=self.runner.model_client,
                    settings=self.settings,
                ).build(month, today=today, spike_threshold_pct=config.spending_spike_pct)
                with session_scope(self.runner.session_factory) as session:
                    MonthlyReportMailer(
                        session, user_id, email_sender=self.runner.email_sender
                    ).send(report, recipient)
            except Exception:
                logger.exception(
                    f"scheduler_monthly_report: user_id={user_id} month={month} status=error"
                )
                continue
            sent += 1
        logger.info(f"scheduler_monthly_report: source={source} month={month} users={sent}")

    def start(self) -> None:
        trigger = CronTrigger(
            hour=self.settings.automation_hour, minute=self.settings.automation_minute
        )
        self.scheduler.add_job(
            self._run_automation,
            trigger,
            args=["daily"],
            id="automation_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
        )

        trigger = CronTrigger(
            day=1,
            hour=self.settings.automation_hour,
            minute=(self.settings.automation_minute + 15) % 60,
        )
        self.scheduler.add_job(
            self._send_monthly_reports,
            trigger,
            args=["monthly_day_1"],
            id="monthly_report_email",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily automation at "
            f"{self.settings.automation_hour:02d}:{self.settings.automation_minute:02d}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
