import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import AutomationSettings, RunStatus
from schemas import AutomationSettingsIn

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    "enabled": True,
    "push_enabled": True,
    "email_enabled": True,
    "internal_enabled": True,
    "card_due_days": 3,
    "dollar_upper": None,
    "dollar_lower": None,
    "investment_drop_pct": 2.0,
    "spending_spike_pct": 20.0,
    "monthly_report_enabled": True,
    "market_refresh_enabled": True,
}


@dataclass(frozen=True)
class AutomationConfig:
    enabled: bool = True
    push_enabled: bool = True
    email_enabled: bool = True
    internal_enabled: bool = True
    card_due_days: int = 3
    dollar_upper: Optional[Decimal] = None
    dollar_lower: Optional[Decimal] = None
    investment_drop_pct: float = 2.0
    spending_spike_pct: float = 20.0
    monthly_report_enabled: bool = True
    market_refresh_enabled: bool = True
    extras: dict[str, Any] = field(default_factory=dict)


def _bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _number(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if math.isfinite(parsed) else fallback


def _nullable_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() and parsed > 0 else None


def _extras(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def normalize_automation_settings(row: Any = None) -> AutomationConfig:
    """Build a complete config from a stored row, a dict, or nothing.

    Missing or malformed fields fall back to defaults and numeric fields are
    clamped to their allowed bands.
    """
    if row is None:
        source: dict[str, Any] = {}
    elif isinstance(row, dict):
        source = row
    else:
        source = {name: getattr(row, name, None) for name in DEFAULTS}
        source["config"] = getattr(row, "config_json", None)

    return AutomationConfig(
        enabled=_bool(source.get("enabled"), DEFAULTS["enabled"]),
        push_enabled=_bool(source.get("push_enabled"), DEFAULTS["push_enabled"]),
        email_enabled=_bool(source.get("email_enabled"), DEFAULTS["email_enabled"]),
        internal_enabled=_bool(source.get("internal_enabled"), DEFAULTS["internal_enabled"]),
        card_due_days=int(
            min(10, max(1, round(_number(source.get("card_due_days"), DEFAULTS["card_due_days"]))))
        ),
        dollar_upper=_nullable_decimal(source.get("dollar_upper")),
        dollar_lower=_nullable_decimal(source.get("dollar_lower")),
        investment_drop_pct=min(
            50.0,
            max(0.5, _number(source.get("investment_drop_pct"), DEFAULTS["investment_drop_pct"])),
        ),
        spending_spike_pct=min(
            100.0,
            max(5.0, _number(source.get("spending_spike_pct"), DEFAULTS["spending_spike_pct"])),
        ),
        monthly_report_enabled=_bool(
            source.get("monthly_report_enabled"), DEFAULTS["monthly_report_enabled"]
        ),
        market_refresh_enabled=_bool(
            source.get("market_refresh_enabled"), DEFAULTS["market_refresh_enabled"]
        ),
        extras=_extras(source.get("config")),
    )


def config_as_dict(config: AutomationConfig) -> dict[str, Any]:
    return {
        "enabled": config.enabled,
        "push_enabled": config.push_enabled,
        "email_enabled": config.email_enabled,
        "internal_enabled": config.internal_enabled,
        "card_due_days": config.card_due_days,
        "dollar_upper": float(config.dollar_upper) if config.dollar_upper is not None else None,
        "dollar_lower": float(config.dollar_lower) if config.dollar_lower is not None else None,
        "investment_drop_pct": config.investment_drop_pct,
        "spending_spike_pct": config.spending_spike_pct,
        "monthly_report_enabled": config.monthly_report_enabled,
        "market_refresh_enabled": config.market_refresh_enabled,
        "config": config.extras,
    }


class AutomationSettingsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def ensure(self) -> AutomationSettings:
        row = self.session.scalar(
            select(AutomationSettings).where(AutomationSettings.user_id == self.user_id)
        )
        if row:
            return row
        row = AutomationSettings(user_id=self.user_id, config_json="{}", **DEFAULTS)
        self.session.add(row)
        self.session.flush()
        logger.info(f"automation_settings: user_id={self.user_id} created=defaults")
        return row

    def get(self) -> AutomationConfig:
        return normalize_automation_settings(self.ensure())

    def update(self, data: AutomationSettingsIn) -> AutomationConfig:
        row = self.ensure()
        changes = data.model_dump(exclude_unset=True)
        extras = changes.pop("config", None)
        changes = {
            name: value
            for name, value in changes.items()
            if value is not None or name in ("dollar_upper", "dollar_lower")
        }
        upper = changes.get("dollar_upper", row.dollar_upper)
        lower = changes.get("dollar_lower", row.dollar_lower)
        if upper is not None and lower is not None and lower > upper:
            raise ValueError("dollar_lower must not exceed dollar_upper")

        for name, value in changes.items():
            setattr(row, name, value)
        if extras is not None:
            row.config_json = json.dumps(extras)
        self.session.flush()
        return normalize_automation_settings(row)

    def record_run(self, status: RunStatus, error: Optional[str] = None) -> None:
        row = self.ensure()
        row.last_run_at = datetime.utcnow()
        row.last_status = status
        row.last_error = error[:500] if error else None
        self.session.flush()
