from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AutomationSettingsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    internal_enabled: Optional[bool] = None
    card_due_days: Optional[int] = Field(default=None, ge=1, le=10)
    dollar_upper: Optional[Decimal] = Field(default=None, gt=0)
    dollar_lower: Optional[Decimal] = Field(default=None, gt=0)
    investment_drop_pct: Optional[float] = Field(default=None, ge=0.5, le=50)
    spending_spike_pct: Optional[float] = Field(default=None, ge=5, le=100)
    monthly_report_enabled: Optional[bool] = None
    market_refresh_enabled: Optional[bool] = None
    config: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_band(self) -> "AutomationSettingsIn":
        if (
            self.dollar_upper is not None
            and self.dollar_lower is not None
            and self.dollar_lower > self.dollar_upper
        ):
            raise ValueError("dollar_lower must not exceed dollar_upper")
        return self


class PushSubscriptionKeys(BaseModel):
    p256dh: str = Field(..., min_length=1, max_length=255)
    auth: str = Field(..., min_length=1, max_length=255)


class PushSubscriptionIn(BaseModel):
    endpoint: str = Field(..., min_length=1)
    keys: PushSubscriptionKeys


class MonthlyReportEmailIn(BaseModel):
    month: Optional[str] = None
    to: Optional[str] = Field(
        default=None, max_length=255, pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
    )
