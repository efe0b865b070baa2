from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class EntryKind(str, Enum):
    income = "income"
    expense = "expense"
    adjustment = "adjustment"
    card_payment = "card_payment"
    transfer = "transfer"


INCOME_KINDS = (EntryKind.income, EntryKind.adjustment)
EXPENSE_KINDS = (EntryKind.expense, EntryKind.card_payment)


class InvestmentOperation(str, Enum):
    buy = "buy"
    sell = "sell"


class Severity(str, Enum):
    info = "info"
    warning = "warning"
    critical = "critical"
    success = "success"


class InsightSource(str, Enum):
    rule = "rule"
    model = "model"


class RiskLevel(str, Enum):
    excellent = "excellent"
    good = "good"
    needs_attention = "needs_attention"
    high_risk = "high_risk"


class AlertType(str, Enum):
    card_closing_soon = "card_closing_soon"
    card_due_soon = "card_due_soon"
    investment_drop = "investment_drop"
    dollar_threshold = "dollar_threshold"
    spending_spike = "spending_spike"
    forecast_warning = "forecast_warning"
    relationship_delay_risk = "relationship_delay_risk"
    relationship_limit_high = "relationship_limit_high"
    relationship_score_drop = "relationship_score_drop"
    relationship_spending_spike = "relationship_spending_spike"


class RunStatus(str, Enum):
    success = "success"
    skipped = "skipped"
    error = "error"


class DeliveryStatus(str, Enum):
    sent = "sent"
    error = "error"
    skipped = "skipped"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    name: Mapped[Optional[str]] = mapped_column(String(120))


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    entries: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry", secondary="ledger_entry_tags", back_populates="tags"
    )


ledger_entry_tags = Table(
    "ledger_entry_tags",
    Base.metadata,
    Column("entry_id", Integer, ForeignKey("ledger_entries.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Card(Base, TimestampMixin):
    __tablename__ = "cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    issuer: Mapped[Optional[str]] = mapped_column(String(100))
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("limit_cents >= 0", name="ck_cards_limit_positive"),
        CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_cards_closing_day"),
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_cards_due_day"),
        Index("ix_cards_user_archived", "user_id", "archived"),
    )


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    occurred_at: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[EntryKind] = mapped_column(SAEnum(EntryKind), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(String(100))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[Optional[str]] = mapped_column(String(20))
    card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cards.id"))

    card: Mapped[Optional["Card"]] = relationship("Card")
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="ledger_entry_tags", back_populates="entries"
    )

    __table_args__ = (
        Index("ix_ledger_user_date", "user_id", "occurred_at"),
        Index("ix_ledger_user_kind_date", "user_id", "kind", "occurred_at"),
        CheckConstraint("amount_cents >= 0", name="ck_ledger_amount_positive"),
    )


class InvestmentPosition(Base, TimestampMixin):
    __tablename__ = "investment_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    asset_name: Mapped[Optional[str]] = mapped_column(String(120))
    asset_type: Mapped[Optional[str]] = mapped_column(String(60))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    operation: Mapped[InvestmentOperation] = mapped_column(
        SAEnum(InvestmentOperation), nullable=False, default=InvestmentOperation.buy
    )
    started_on: Mapped[Optional[date]] = mapped_column(Date)
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=0)
    current_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invested_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    price_history_json: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_investments_user_started", "user_id", "started_on"),
        CheckConstraint(
            "invested_amount_cents >= 0", name="ck_investments_invested_positive"
        ),
    )


class AutomationSettings(Base, TimestampMixin):
    __tablename__ = "automation_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    internal_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    card_due_days: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    dollar_upper: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4))
    dollar_lower: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4))
    investment_drop_pct: Mapped[float] = mapped_column(Float, default=2, nullable=False)
    spending_spike_pct: Mapped[float] = mapped_column(
        Float, default=20, nullable=False
    )
    monthly_report_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    market_refresh_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    config_json: Mapped[Optional[str]] = mapped_column(Text)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_status: Mapped[Optional[RunStatus]] = mapped_column(SAEnum(RunStatus))
    last_error: Mapped[Optional[str]] = mapped_column(String(500))


class InsightRecord(Base):
    __tablename__ = "insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    insight_type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[Severity] = mapped_column(SAEnum(Severity), nullable=False)
    source: Mapped[InsightSource] = mapped_column(SAEnum(InsightSource), nullable=False)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_insights_user_period", "user_id", "period"),)


class RelationshipScoreSnapshot(Base, TimestampMixin):
    __tablename__ = "relationship_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_date: Mapped[date] = mapped_column(Date, nullable=False)
    month_ref: Mapped[str] = mapped_column(String(7), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    punctuality_score: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_usage_score: Mapped[int] = mapped_column(Integer, nullable=False)
    investment_score: Mapped[int] = mapped_column(Integer, nullable=False)
    history_score: Mapped[int] = mapped_column(Integer, nullable=False)
    spending_control_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[RiskLevel] = mapped_column(SAEnum(RiskLevel), nullable=False)
    recommendations_json: Mapped[Optional[str]] = mapped_column(Text)
    model_recommendations_json: Mapped[Optional[str]] = mapped_column(Text)
    indicators_json: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "reference_date", name="uq_relationship_user_reference"
        ),
        CheckConstraint("score BETWEEN 0 AND 100", name="ck_relationship_score_range"),
    )


class AlertRecord(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cards.id"))
    type: Mapped[AlertType] = mapped_column(SAEnum(AlertType), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    due_at: Mapped[Optional[date]] = mapped_column(Date)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_alerts_user_type_created", "user_id", "type", "created_at"),
    )


class CategoryMetadata(Base, TimestampMixin):
    __tablename__ = "category_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon_name: Mapped[Optional[str]] = mapped_column(String(40))
    icon_color: Mapped[Optional[str]] = mapped_column(String(32))

    __table_args__ = (
        UniqueConstraint(
            "user_id", "normalized_name", name="uq_category_metadata_user_key"
        ),
    )


class PushSubscription(Base, TimestampMixin):
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh: Mapped[str] = mapped_column(String(255), nullable=False)
    auth: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500))

    __table_args__ = (Index("ix_push_user_active", "user_id", "active"),)


class MonthlyReportDelivery(Base, TimestampMixin):
    __tablename__ = "monthly_report_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[DeliveryStatus] = mapped_column(
        SAEnum(DeliveryStatus), nullable=False
    )
    details: Mapped[Optional[str]] = mapped_column(String(500))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("user_id", "month", name="uq_report_delivery_user_month"),
    )
