import logging
import tomllib
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from automation import AutomationRunner, risk_alert_events
from automation_settings import AutomationSettingsService, config_as_dict
from config import get_settings
from database import SessionLocal, session_scope
from insights import InsightStore
from models import AlertRecord, PushSubscription, User
from notifications import AlertStore, MonthlyReportMailer
from periods import local_today, normalize_month_key
from reports import MonthlyReportBuilder
from scheduler import SchedulerManager
from schemas import AutomationSettingsIn, MonthlyReportEmailIn, PushSubscriptionIn
from scoring import RelationshipScorer, RelationshipStore, snapshot_as_dict

logger = logging.getLogger(__name__)

app = FastAPI(title="Finsight")


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


_runner: Optional[AutomationRunner] = None


def get_runner() -> AutomationRunner:
    global _runner
    if _runner is None:
        _runner = AutomationRunner()
    return _runner


def get_current_user_id() -> int:
    return 1


scheduler_manager: Optional[SchedulerManager] = None


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    scheduler_manager = SchedulerManager(get_runner())
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


def _today(runner: AutomationRunner):
    return local_today(runner.settings.timezone)


def _alert_dict(alert: AlertRecord) -> dict:
    return {
        "id": alert.id,
        "type": alert.type.value,
        "title": alert.title,
        "body": alert.body,
        "card_id": alert.card_id,
        "due_at": alert.due_at.isoformat() if alert.due_at else None,
        "is_read": alert.is_read,
        "created_at": alert.created_at.isoformat(),
    }


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/automations/run")
def run_automation(
    runner: AutomationRunner = Depends(get_runner),
    user_id: int = Depends(get_current_user_id),
):
    result = runner.run_user(user_id)
    return result.as_dict()


@app.get("/api/automations/settings")
def get_automation_settings(
    db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)
):
    service = AutomationSettingsService(db, user_id)
    row = service.ensure()
    return {
        "settings": config_as_dict(service.get()),
        "last_run_at": row.last_run_at.isoformat() if row.last_run_at else None,
        "last_status": row.last_status.value if row.last_status else None,
        "last_error": row.last_error,
    }


@app.put("/api/automations/settings")
def update_automation_settings(
    payload: AutomationSettingsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        config = AutomationSettingsService(db, user_id).update(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"settings": config_as_dict(config)}


@app.get("/api/insights/latest")
def latest_insights(
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    runner: AutomationRunner = Depends(get_runner),
    user_id: int = Depends(get_current_user_id),
):
    store = InsightStore(db, user_id)
    if month:
        period = normalize_month_key(month, today=_today(runner))
    else:
        period = store.latest_period() or normalize_month_key(None, today=_today(runner))
    return {
        "period": period,
        "insights": [
            {
                "type": row.insight_type,
                "title": row.title,
                "body": row.body,
                "severity": row.severity.value,
                "source": row.source.value,
                "created_at": row.created_at.isoformat(),
            }
            for row in store.for_period(period)
        ],
    }


def _report_builder(runner: AutomationRunner, user_id: int) -> MonthlyReportBuilder:
    return MonthlyReportBuilder(
        user_id,
        session_factory=runner.session_factory,
        model_client=runner.model_client,
        settings=runner.settings,
    )


def _spike_threshold(runner: AutomationRunner, user_id: int) -> float:
    with session_scope(runner.session_factory) as session:
        return AutomationSettingsService(session, user_id).get().spending_spike_pct


@app.post("/api/insights/run")
def run_insights(
    month: Optional[str] = None,
    runner: AutomationRunner = Depends(get_runner),
    user_id: int = Depends(get_current_user_id),
):
    report = _report_builder(runner, user_id).build(
        month,
        today=_today(runner),
        spike_threshold_pct=_spike_threshold(runner, user_id),
        persist=True,
    )
    return {
        "period": report.month,
        "insights": report.summary()["insights"],
        "warnings": report.warnings,
    }


@app.get("/api/reports/monthly/summary")
def monthly_report_summary(
    month: Optional[str] = None,
    runner: AutomationRunner = Depends(get_runner),
    user_id: int = Depends(get_current_user_id),
):
    report = _report_builder(runner, user_id).build(
        month,
        today=_today(runner),
        spike_threshold_pct=_spike_threshold(runner, user_id),
    )
    return report.summary()


@app.post("/api/reports/monthly/email")
def send_monthly_report_email(
    payload: MonthlyReportEmailIn,
    db: Session = Depends(get_db),
    runner: AutomationRunner = Depends(get_runner),
    user_id: int = Depends(get_current_user_id),
):
    user = db.get(User, user_id)
    recipient = payload.to or (user.email if user else None)
    if not recipient:
        raise HTTPException(status_code=400, detail="No recipient email available")
    report = _report_builder(runner, user_id).build(
        payload.month,
        today=_today(runner),
        spike_threshold_pct=_spike_threshold(runner, user_id),
    )
    delivery = MonthlyReportMailer(db, user_id, email_sender=runner.email_sender).send(
        report, recipient
    )
    return {
        "month": delivery.month,
        "recipient": delivery.recipient_email,
        "status": delivery.status.value,
        "details": delivery.details,
    }


@app.get("/api/banking/relationship/summary")
def relationship_summary(
    db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)
):
    store = RelationshipStore(db, user_id)
    latest = store.latest()
    alerts = [
        _alert_dict(alert)
        for alert in AlertStore(db, user_id).recent(limit=20)
        if alert.type.value.startswith("relationship_")
    ]
    return {
        "summary": snapshot_as_dict(latest) if latest else None,
        "history": [
            {
                "reference_date": row.reference_date.isoformat(),
                "score": row.score,
                "risk_level": row.risk_level.value,
            }
            for row in store.history()
        ],
        "alerts": alerts,
    }


@app.post("/api/banking/relationship/run")
def run_relationship_score(
    runner: AutomationRunner = Depends(get_runner),
    user_id: int = Depends(get_current_user_id),
):
    summary = RelationshipScorer(
        user_id,
        session_factory=runner.session_factory,
        model_client=runner.model_client,
        settings=runner.settings,
    ).evaluate(_today(runner))
    with session_scope(runner.session_factory) as session:
        RelationshipStore(session, user_id).upsert(summary)
        created = AlertStore(session, user_id, runner.settings.alert_dedup_hours).insert_new(
            risk_alert_events(summary)
        )
    payload = summary.as_dict()
    payload["alerts_created"] = len(created)
    return payload


@app.get("/api/alerts")
def list_alerts(
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    limit = max(1, min(limit, 200))
    return {
        "alerts": [
            _alert_dict(alert)
            for alert in AlertStore(db, user_id).recent(unread_only=unread_only, limit=limit)
        ]
    }


@app.post("/api/alerts/{alert_id}/read")
def mark_alert_read(
    alert_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    alert = AlertStore(db, user_id).mark_read(alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return _alert_dict(alert)


@app.get("/api/push/vapid")
def vapid_public_key():
    settings = get_settings()
    if not settings.vapid_public_key:
        raise HTTPException(status_code=404, detail="VAPID public key not configured")
    return {"public_key": settings.vapid_public_key}


@app.post("/api/push/subscribe")
def register_push_subscription(
    payload: PushSubscriptionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    row = db.scalar(
        select(PushSubscription).where(
            PushSubscription.user_id == user_id,
            PushSubscription.endpoint == payload.endpoint,
        )
    )
    if row is None:
        row = PushSubscription(user_id=user_id, endpoint=payload.endpoint)
        db.add(row)
    row.p256dh = payload.keys.p256dh
    row.auth = payload.keys.auth
    row.active = True
    row.failure_reason = None
    db.flush()
    logger.info(f"push_subscribe: user_id={user_id} subscription_id={row.id}")
    return {"id": row.id, "active": row.active}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
