from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from http.client import HTTPException
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from outcome import Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    bid: Decimal  # quote per 1 base
    fetched_at: datetime


class FxRateService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def usd_brl_bid(self) -> Outcome[FxQuote]:
        url = self.settings.fx_quote_url
        req = Request(url, headers={"Accept": "application/json"})
        fetched_at = datetime.now(timezone.utc)
        try:
            with urlopen(req, timeout=self.settings.fx_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            logger.warning(f"fx_quote: status={exc.code} url={url}")
            return Outcome.degrade(f"FX provider returned HTTP {exc.code}")
        except (URLError, TimeoutError, OSError, HTTPException, ValueError) as exc:
            logger.warning(f"fx_quote: unavailable error={exc}")
            return Outcome.degrade("FX provider unreachable")

        quote = parse_awesomeapi_payload(payload, fetched_at)
        if quote is None:
            return Outcome.degrade("Unexpected FX provider response")
        return Outcome.success(quote)


def parse_awesomeapi_payload(payload: object, fetched_at: datetime) -> Optional[FxQuote]:
    try:
        raw_bid = payload["USDBRL"]["bid"]  # type: ignore[index]
        bid = Decimal(str(raw_bid))
    except (KeyError, TypeError, InvalidOperation):
        return None
    if not bid.is_finite() or bid <= 0:
        return None
    return FxQuote(
        provider="awesomeapi",
        base="USD",
        quote="BRL",
        bid=bid,
        fetched_at=fetched_at,
    )
