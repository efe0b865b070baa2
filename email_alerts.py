from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from http.client import HTTPException
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
BREVO_URL = "https://api.brevo.com/v3/smtp/email"
_FROM_PATTERN = re.compile(r"^(.*)<([^>]+)>$")


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class EmailResult:
    ok: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None


def parse_sender(raw: str) -> tuple[str, str]:
    value = raw.strip()
    match = _FROM_PATTERN.match(value)
    if not match:
        return "Finsight", value
    return match.group(1).strip() or "Finsight", match.group(2).strip()


class EmailSender:
    """Sends through the preferred provider and falls back to the other one."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _post(self, provider: str, url: str, headers: dict[str, str], body: dict) -> EmailResult:
        req = Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json", **headers},
        )
        try:
            with urlopen(req, timeout=self.settings.email_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8") or "{}")
        except HTTPError as exc:
            return EmailResult(False, provider, error=f"{provider} returned HTTP {exc.code}")
        except (URLError, TimeoutError, OSError, HTTPException, ValueError) as exc:
            return EmailResult(False, provider, error=f"{provider} unreachable: {exc}")
        if not isinstance(payload, dict):
            payload = {}
        message_id = payload.get("id") or payload.get("messageId")
        return EmailResult(True, provider, message_id=message_id)

    def send_via_resend(self, message: EmailMessage) -> EmailResult:
        if not self.settings.resend_api_key:
            return EmailResult(False, "none", error="Resend API key not configured")
        return self._post(
            "resend",
            RESEND_URL,
            {"Authorization": f"Bearer {self.settings.resend_api_key}"},
            {
                "from": self.settings.email_from,
                "to": [message.to],
                "subject": message.subject,
                "html": message.html,
                "text": message.text,
            },
        )

    def send_via_brevo(self, message: EmailMessage) -> EmailResult:
        if not self.settings.brevo_api_key:
            return EmailResult(False, "none", error="Brevo API key not configured")
        name, address = parse_sender(self.settings.email_from)
        return self._post(
            "brevo",
            BREVO_URL,
            {"api-key": self.settings.brevo_api_key},
            {
                "sender": {"name": name, "email": address},
                "to": [{"email": message.to}],
                "subject": message.subject,
                "htmlContent": message.html,
                "textContent": message.text,
            },
        )

    def send(self, message: EmailMessage) -> EmailResult:
        order: list[Callable[[EmailMessage], EmailResult]] = [
            self.send_via_resend,
            self.send_via_brevo,
        ]
        if self.settings.email_provider == "brevo":
            order.reverse()

        first = order[0](message)
        if first.ok:
            return first
        fallback = order[1](message)
        if fallback.ok:
            logger.info(f"email_send: fallback_provider={fallback.provider}")
            return fallback
        logger.warning(f"email_send: failed error={first.error}")
        return first
