"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None

ENTRY_KINDS = ("income", "expense", "adjustment", "card_payment", "transfer")
ALERT_TYPES = (
    "card_closing_soon",
    "card_due_soon",
    "investment_drop",
    "dollar_threshold",
    "spending_spike",
    "forecast_warning",
    "relationship_delay_risk",
    "relationship_limit_high",
    "relationship_score_drop",
    "relationship_spending_spike",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255)),
        sa.Column("name", sa.String(length=120)),
        *_timestamps(),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=50), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
    )

    op.create_table(
        "cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("issuer", sa.String(length=100)),
        sa.Column("limit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closing_day", sa.Integer(), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("limit_cents >= 0", name="ck_cards_limit_positive"),
        sa.CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_cards_closing_day"),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_cards_due_day"),
    )
    op.create_index("ix_cards_user_archived", "cards", ["user_id", "archived"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("occurred_at", sa.Date(), nullable=False),
        sa.Column("kind", sa.Enum(*ENTRY_KINDS, name="entrykind"), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("category", sa.String(length=100)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=20)),
        sa.Column("card_id", sa.Integer(), sa.ForeignKey("cards.id")),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_ledger_amount_positive"),
    )
    op.create_index("ix_ledger_user_date", "ledger_entries", ["user_id", "occurred_at"])
    op.create_index(
        "ix_ledger_user_kind_date", "ledger_entries", ["user_id", "kind", "occurred_at"]
    )

    op.create_table(
        "ledger_entry_tags",
        sa.Column(
            "entry_id", sa.Integer(), sa.ForeignKey("ledger_entries.id"), primary_key=True
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "investment_positions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("asset_name", sa.String(length=120)),
        sa.Column("asset_type", sa.String(length=60)),
        sa.Column("category", sa.String(length=100)),
        sa.Column(
            "operation",
            sa.Enum("buy", "sell", name="investmentoperation"),
            nullable=False,
            server_default="buy",
        ),
        sa.Column("started_on", sa.Date()),
        sa.Column("quantity", sa.Numeric(20, 8), nullable=False, server_default="0"),
        sa.Column("current_price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("invested_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_history_json", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "invested_amount_cents >= 0", name="ck_investments_invested_positive"
        ),
    )
    op.create_index(
        "ix_investments_user_started", "investment_positions", ["user_id", "started_on"]
    )

    op.create_table(
        "automation_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("push_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("internal_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("card_due_days", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("dollar_upper", sa.Numeric(10, 4)),
        sa.Column("dollar_lower", sa.Numeric(10, 4)),
        sa.Column("investment_drop_pct", sa.Float(), nullable=False, server_default="2"),
        sa.Column("spending_spike_pct", sa.Float(), nullable=False, server_default="20"),
        sa.Column(
            "monthly_report_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "market_refresh_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("config_json", sa.Text()),
        sa.Column("last_run_at", sa.DateTime()),
        sa.Column(
            "last_status", sa.Enum("success", "skipped", "error", name="runstatus")
        ),
        sa.Column("last_error", sa.String(length=500)),
        *_timestamps(),
    )

    op.create_table(
        "insights",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("insight_type", sa.String(length=40), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column(
            "severity",
            sa.Enum("info", "warning", "critical", "success", name="severity"),
            nullable=False,
        ),
        sa.Column("source", sa.Enum("rule", "model", name="insightsource"), nullable=False),
        sa.Column("metadata_json", sa.Text()),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_insights_user_period", "insights", ["user_id", "period"])

    op.create_table(
        "relationship_scores",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("reference_date", sa.Date(), nullable=False),
        sa.Column("month_ref", sa.String(length=7), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("punctuality_score", sa.Integer(), nullable=False),
        sa.Column("limit_usage_score", sa.Integer(), nullable=False),
        sa.Column("investment_score", sa.Integer(), nullable=False),
        sa.Column("history_score", sa.Integer(), nullable=False),
        sa.Column("spending_control_score", sa.Integer(), nullable=False),
        sa.Column(
            "risk_level",
            sa.Enum("excellent", "good", "needs_attention", "high_risk", name="risklevel"),
            nullable=False,
        ),
        sa.Column("recommendations_json", sa.Text()),
        sa.Column("model_recommendations_json", sa.Text()),
        sa.Column("indicators_json", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "reference_date", name="uq_relationship_user_reference"
        ),
        sa.CheckConstraint("score BETWEEN 0 AND 100", name="ck_relationship_score_range"),
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("card_id", sa.Integer(), sa.ForeignKey("cards.id")),
        sa.Column("type", sa.Enum(*ALERT_TYPES, name="alerttype"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("due_at", sa.Date()),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_alerts_user_type_created", "alerts", ["user_id", "type", "created_at"]
    )

    op.create_table(
        "category_metadata",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("normalized_name", sa.String(length=100), nullable=False),
        sa.Column("icon_name", sa.String(length=40)),
        sa.Column("icon_color", sa.String(length=32)),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "normalized_name", name="uq_category_metadata_user_key"
        ),
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.String(length=255), nullable=False),
        sa.Column("auth", sa.String(length=255), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_success_at", sa.DateTime()),
        sa.Column("last_failure_at", sa.DateTime()),
        sa.Column("failure_reason", sa.String(length=500)),
        *_timestamps(),
    )
    op.create_index("ix_push_user_active", "push_subscriptions", ["user_id", "active"])

    op.create_table(
        "monthly_report_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status", sa.Enum("sent", "error", "skipped", name="deliverystatus"), nullable=False
        ),
        sa.Column("details", sa.String(length=500)),
        sa.Column("sent_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "month", name="uq_report_delivery_user_month"),
    )


def downgrade():
    op.drop_table("monthly_report_deliveries")
    op.drop_index("ix_push_user_active", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
    op.drop_table("category_metadata")
    op.drop_index("ix_alerts_user_type_created", table_name="alerts")
    op.drop_table("alerts")
    op.drop_table("relationship_scores")
    op.drop_index("ix_insights_user_period", table_name="insights")
    op.drop_table("insights")
    op.drop_table("automation_settings")
    op.drop_index("ix_investments_user_started", table_name="investment_positions")
    op.drop_table("investment_positions")
    op.drop_table("ledger_entry_tags")
    op.drop_index("ix_ledger_user_kind_date", table_name="ledger_entries")
    op.drop_index("ix_ledger_user_date", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_cards_user_archived", table_name="cards")
    op.drop_table("cards")
    op.drop_table("tags")
    op.drop_table("users")
