"""
Web Push delivery.

One message per active subscription through pywebpush. A failing subscription
never blocks the others. Undecodable keys and 404/410 responses deactivate it.
"""
import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pywebpush import WebPushException, webpush
from requests import RequestException
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from models import PushSubscription

logger = logging.getLogger(__name__)

PUSH_TIMEOUT_SECS = 6
GONE_STATUSES = (404, 410)
P256DH_BYTES = 65
AUTH_BYTES = 16


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def subscription_keys_valid(p256dh: str, auth: str) -> bool:
    """Uncompressed P-256 public key and 16-byte auth secret, base64url."""
    try:
        public_key = _b64url_decode(p256dh)
        secret = _b64url_decode(auth)
    except ValueError:
        return False
    return len(public_key) == P256DH_BYTES and public_key[0] == 4 and len(secret) == AUTH_BYTES


@dataclass(frozen=True)
class PushPayload:
    title: str
    body: str
    url: str = "/dashboard"
    tag: str = "finsight-alert"


@dataclass
class PushResult:
    sent: int = 0
    failed: int = 0
    message: Optional[str] = None


class PushSender:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        return bool(self.settings.vapid_private_key and self.settings.vapid_public_key)

    def _private_key(self) -> str:
        raw_key = self.settings.vapid_private_key
        if "\\n" in raw_key:
            raw_key = raw_key.replace("\\n", "\n")
        if "BEGIN" in raw_key:
            lines = [
                line.strip()
                for line in raw_key.strip().splitlines()
                if line.strip() and not line.strip().startswith("-----")
            ]
            raw_key = "".join(lines)
        return raw_key

    def _deliver(self, subscription: PushSubscription, data: str) -> bool:
        if not subscription_keys_valid(subscription.p256dh, subscription.auth):
            subscription.active = False
            subscription.last_failure_at = datetime.utcnow()
            subscription.failure_reason = "invalid subscription keys"
            logger.warning(f"push_send: subscription_id={subscription.id} invalid_keys")
            return False
        try:
            webpush(
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
                },
                data=data,
                vapid_private_key=self._private_key(),
                vapid_claims={"sub": self.settings.vapid_subject},
                ttl=60,
                timeout=PUSH_TIMEOUT_SECS,
            )
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else 0
            subscription.active = status_code not in GONE_STATUSES
            subscription.last_failure_at = datetime.utcnow()
            subscription.failure_reason = str(exc)[:500]
            logger.warning(
                f"push_send: subscription_id={subscription.id} status={status_code}"
            )
            return False
        except RequestException as exc:
            subscription.last_failure_at = datetime.utcnow()
            subscription.failure_reason = str(exc)[:500]
            logger.warning(f"push_send: subscription_id={subscription.id} error={exc}")
            return False
        except Exception as exc:
            subscription.last_failure_at = datetime.utcnow()
            subscription.failure_reason = str(exc)[:500] or exc.__class__.__name__
            logger.exception(f"push_send: subscription_id={subscription.id} status=error")
            return False

        subscription.last_success_at = datetime.utcnow()
        subscription.last_failure_at = None
        subscription.failure_reason = None
        return True

    def send_to_user(self, user_id: int, payload: PushPayload) -> PushResult:
        if not self.configured:
            return PushResult(message="VAPID keys not configured")

        subscriptions = self.session.scalars(
            select(PushSubscription).where(
                PushSubscription.user_id == user_id,
                PushSubscription.active.is_(True),
            ).order_by(PushSubscription.id)
        ).all()
        if not subscriptions:
            return PushResult(message="no active subscriptions")

        data = json.dumps(
            {
                "title": payload.title,
                "body": payload.body,
                "icon": "/favicon.ico",
                "badge": "/favicon.ico",
                "data": {"url": payload.url, "tag": payload.tag},
            },
            ensure_ascii=False,
        )
        result = PushResult()
        for subscription in subscriptions:
            if self._deliver(subscription, data):
                result.sent += 1
            else:
                result.failed += 1
        self.session.flush()
        return result
