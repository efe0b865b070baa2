from datetime import date

from models import Card, EntryKind, LedgerEntry, RiskLevel, Severity
from scoring import (
    Indicators,
    Pillars,
    RelationshipStore,
    RiskAlert,
    build_risk_alerts,
    clamp_score,
    compute_relationship,
    risk_level_for,
    spending_control_score,
    weighted_score,
)


def _indicators(**overrides) -> Indicators:
    values = dict(
        cards_count=1,
        cards_with_open_invoice=0,
        overdue_invoices=0,
        due_soon_invoices=0,
        on_time_payment_rate=100.0,
        card_limit_utilization_pct=10.0,
        active_investments=0,
        invested_total_cents=0,
        income_current_month_cents=0,
        expense_current_month_cents=0,
        expense_delta_pct=None,
        savings_rate_pct=None,
        activity_months_90d=0,
    )
    values.update(overrides)
    return Indicators(**values)


def test_empty_profile_scores_with_default_pillars() -> None:
    summary = compute_relationship([], [], [], None, date(2026, 10, 18))

    assert summary.pillars == Pillars(
        punctuality=80, limit_usage=75, investments=45, history=50, spending_control=70
    )
    assert summary.score == 68
    assert summary.risk_level == RiskLevel.needs_attention
    assert summary.risk_label == "Needs attention"
    assert summary.delta_score is None
    assert summary.risk_alerts == []
    assert summary.recommendations


def test_weighted_score_rounds_half_up() -> None:
    assert weighted_score(Pillars(80, 75, 45, 50, 70)) == 68
    assert weighted_score(Pillars(100, 100, 100, 100, 100)) == 100
    assert weighted_score(Pillars(0, 0, 0, 0, 0)) == 0
    assert clamp_score(104.2) == 100
    assert clamp_score(-3) == 0
    assert clamp_score(84.5) == 85


def test_risk_bands() -> None:
    assert risk_level_for(85) == RiskLevel.excellent
    assert risk_level_for(84) == RiskLevel.good
    assert risk_level_for(70) == RiskLevel.good
    assert risk_level_for(69) == RiskLevel.needs_attention
    assert risk_level_for(50) == RiskLevel.needs_attention
    assert risk_level_for(49) == RiskLevel.high_risk


def test_spending_control_adjustments() -> None:
    assert spending_control_score(None, None) == 70
    assert spending_control_score(35.0, -5.0) == 26
    assert spending_control_score(-20.0, 25.0) == 98


def test_overdue_statement_raises_delay_risk() -> None:
    card = Card(
        id=1, user_id=1, name="Visa", limit_cents=10000, closing_day=10, due_day=20, archived=False
    )
    charge = LedgerEntry(
        user_id=1,
        occurred_at=date(2026, 9, 20),
        kind=EntryKind.expense,
        description="Loja",
        amount_cents=5000,
        card_id=1,
    )

    summary = compute_relationship([card], [charge], [], None, date(2026, 10, 25))

    assert summary.indicators.overdue_invoices == 1
    assert summary.indicators.card_limit_utilization_pct == 50.0
    assert summary.pillars.punctuality == 40
    assert summary.pillars.limit_usage == 88
    delay = [alert for alert in summary.risk_alerts if alert.code == "delay_risk"]
    assert delay[0].severity == Severity.critical
    assert delay[0].title == "High risk of late payment"


def test_risk_alerts_for_limit_and_score_drop() -> None:
    alerts = build_risk_alerts(
        _indicators(card_limit_utilization_pct=90.0, expense_delta_pct=25.0), 70, 80
    )
    codes = [alert.code for alert in alerts]

    assert codes == ["limit_high", "score_drop", "spending_spike"]
    assert alerts[0].severity == Severity.critical
    assert alerts[0].alert_type.value == "relationship_limit_high"
    assert "10 point(s)" in alerts[1].body

    assert build_risk_alerts(_indicators(card_limit_utilization_pct=75.0), 70, 76) == [
        RiskAlert(
            "limit_high", Severity.warning, "High card limit usage", "Current limit usage at 75.0%."
        )
    ]


def test_store_keeps_one_snapshot_per_day(session) -> None:
    store = RelationshipStore(session, 1)
    first = compute_relationship([], [], [], None, date(2026, 10, 17))
    store.upsert(first)
    assert store.previous_score(date(2026, 10, 18)) == 68
    assert store.previous_score(date(2026, 10, 17)) is None

    today = compute_relationship([], [], [], 68, date(2026, 10, 18))
    store.upsert(today)
    store.upsert(today)

    history = store.history()
    assert [row.reference_date for row in history] == [date(2026, 10, 18), date(2026, 10, 17)]
    assert store.latest().month_ref == "2026-10"
    assert today.delta_score == 0
