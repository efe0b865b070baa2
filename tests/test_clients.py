import base64
from datetime import datetime, timezone
from decimal import Decimal
from http.client import IncompleteRead
from types import SimpleNamespace
from urllib.error import URLError

import email_alerts
import fx_rates
import llm
import push
from email_alerts import EmailMessage, EmailSender, parse_sender
from fakes import FakeResponse, make_settings
from fx_rates import FxRateService, parse_awesomeapi_payload
from llm import LanguageModelClient, parse_model_lines
from models import PushSubscription
from push import PushPayload, PushSender, subscription_keys_valid
from pywebpush import WebPushException
from text_utils import dedupe_lines, format_brl, normalize_text

MESSAGE = EmailMessage(to="ana@example.com", subject="Hi", html="<p>Hi</p>", text="Hi")
P256DH = base64.urlsafe_b64encode(b"\x04" + bytes(range(64))).decode().rstrip("=")
AUTH = base64.urlsafe_b64encode(bytes(16)).decode().rstrip("=")


def test_text_helpers() -> None:
    assert normalize_text("  Farmácia   SÃO João ") == "farmacia sao joao"
    assert format_brl(123456) == "R$ 1.234,56"
    assert format_brl(-5) == "-R$ 0,05"
    assert dedupe_lines(["A  b", "a b", "", "c"], limit=5) == ["A b", "c"]


def test_model_lines_are_cleaned_and_capped() -> None:
    text = "1. Cook more at home\n- ok\n* Review subscriptions monthly\nCook more at home\n\nThird useful tip here"
    assert parse_model_lines(text, 2) == ["Cook more at home", "Review subscriptions monthly"]
    assert parse_model_lines("", 3) == []


def test_language_model_degrades_without_key() -> None:
    client = LanguageModelClient(make_settings(llm_api_key=""))
    outcome = client.complete_lines("system", "prompt", 3)
    assert not outcome.ok
    assert outcome.degraded == "language model key not configured"
    assert outcome.value_or([]) == []


def test_language_model_parses_completion(monkeypatch) -> None:
    payload = {"choices": [{"message": {"content": "- Pay the card early\n- Keep an emergency fund"}}]}
    monkeypatch.setattr(llm, "urlopen", lambda req, timeout: FakeResponse(payload))
    client = LanguageModelClient(make_settings(llm_api_key="sk-test"))

    outcome = client.complete_lines("system", "prompt", 3)

    assert outcome.ok
    assert outcome.value == ["Pay the card early", "Keep an emergency fund"]


def test_language_model_unreachable(monkeypatch) -> None:
    def boom(req, timeout):
        raise URLError("down")

    monkeypatch.setattr(llm, "urlopen", boom)
    outcome = LanguageModelClient(make_settings(llm_api_key="sk-test")).complete("s", "p")
    assert outcome.degraded == "language model unreachable"


def test_fx_payload_parsing() -> None:
    now = datetime.now(timezone.utc)
    quote = parse_awesomeapi_payload({"USDBRL": {"bid": "5.4321"}}, now)
    assert quote.bid == Decimal("5.4321")
    assert quote.provider == "awesomeapi"
    assert parse_awesomeapi_payload({"USDBRL": {"bid": "0"}}, now) is None
    assert parse_awesomeapi_payload({"USDBRL": {"bid": "abc"}}, now) is None
    assert parse_awesomeapi_payload({}, now) is None
    assert parse_awesomeapi_payload(None, now) is None


def test_fx_service_outcomes(monkeypatch) -> None:
    monkeypatch.setattr(
        fx_rates, "urlopen", lambda req, timeout: FakeResponse({"USDBRL": {"bid": "5.10"}})
    )
    assert FxRateService(make_settings()).usd_brl_bid().value.bid == Decimal("5.10")

    monkeypatch.setattr(fx_rates, "urlopen", lambda req, timeout: FakeResponse({"oops": 1}))
    assert FxRateService(make_settings()).usd_brl_bid().degraded == "Unexpected FX provider response"


def test_email_falls_back_to_secondary_provider(monkeypatch) -> None:
    calls = []

    def fake_urlopen(req, timeout):
        calls.append(req.full_url)
        return FakeResponse({"messageId": "m-1"})

    monkeypatch.setattr(email_alerts, "urlopen", fake_urlopen)
    sender = EmailSender(make_settings(email_provider="resend", resend_api_key="", brevo_api_key="k"))

    result = sender.send(MESSAGE)

    assert result.ok
    assert result.provider == "brevo"
    assert result.message_id == "m-1"
    assert calls == [email_alerts.BREVO_URL]


def test_email_without_providers_reports_primary_error() -> None:
    sender = EmailSender(make_settings(email_provider="brevo", resend_api_key="", brevo_api_key=""))
    result = sender.send(MESSAGE)
    assert not result.ok
    assert result.error == "Brevo API key not configured"


def test_sender_parsing() -> None:
    assert parse_sender("Finsight <alerts@finsight.local>") == ("Finsight", "alerts@finsight.local")
    assert parse_sender("alerts@finsight.local") == ("Finsight", "alerts@finsight.local")


def test_push_requires_vapid_keys(session) -> None:
    sender = PushSender(session, make_settings(vapid_public_key="", vapid_private_key=""))
    assert sender.send_to_user(1, PushPayload("t", "b")).message == "VAPID keys not configured"

    configured = PushSender(session, make_settings(vapid_public_key="pub", vapid_private_key="priv"))
    assert configured.send_to_user(1, PushPayload("t", "b")).message == "no active subscriptions"


def test_gone_subscription_is_deactivated(session, monkeypatch) -> None:
    gone = PushSubscription(user_id=1, endpoint="https://push/gone", p256dh=P256DH, auth=AUTH)
    alive = PushSubscription(user_id=1, endpoint="https://push/alive", p256dh=P256DH, auth=AUTH)
    session.add_all([gone, alive])
    session.flush()

    def fake_webpush(subscription_info, **kwargs):
        if subscription_info["endpoint"].endswith("gone"):
            raise WebPushException("gone", response=SimpleNamespace(status_code=410))

    monkeypatch.setattr(push, "webpush", fake_webpush)
    sender = PushSender(session, make_settings(vapid_public_key="pub", vapid_private_key="priv"))

    result = sender.send_to_user(1, PushPayload("Title", "Body"))

    assert (result.sent, result.failed) == (1, 1)
    assert gone.active is False
    assert gone.failure_reason
    assert alive.active is True
    assert alive.last_success_at is not None


def test_language_model_degrades_on_undecodable_body(monkeypatch) -> None:
    monkeypatch.setattr(llm, "urlopen", lambda req, timeout: FakeResponse(body=b"\xff\xfe{}"))
    client = LanguageModelClient(make_settings(llm_api_key="sk-test"))

    outcome = client.complete_lines("system", "prompt", 3)

    assert not outcome.ok
    assert outcome.degraded == "language model unreachable"
    assert outcome.value_or([]) == []


def test_language_model_degrades_on_truncated_body(monkeypatch) -> None:
    monkeypatch.setattr(
        llm, "urlopen", lambda req, timeout: FakeResponse(error=IncompleteRead(b"{\"cho", 40))
    )
    outcome = LanguageModelClient(make_settings(llm_api_key="sk-test")).complete("s", "p")
    assert outcome.degraded == "language model unreachable"


def test_fx_service_degrades_on_bad_body(monkeypatch) -> None:
    monkeypatch.setattr(fx_rates, "urlopen", lambda req, timeout: FakeResponse(body=b"\x80\x81"))
    assert FxRateService(make_settings()).usd_brl_bid().degraded == "FX provider unreachable"

    monkeypatch.setattr(
        fx_rates, "urlopen", lambda req, timeout: FakeResponse(error=IncompleteRead(b"{", 10))
    )
    assert FxRateService(make_settings()).usd_brl_bid().degraded == "FX provider unreachable"


def test_email_bad_body_falls_back(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        if req.full_url == email_alerts.RESEND_URL:
            return FakeResponse(body=b"\xff")
        return FakeResponse(["unexpected", "shape"])

    monkeypatch.setattr(email_alerts, "urlopen", fake_urlopen)
    sender = EmailSender(make_settings(email_provider="resend", resend_api_key="r", brevo_api_key="b"))

    result = sender.send(MESSAGE)

    assert result.ok
    assert result.provider == "brevo"
    assert result.message_id is None


def test_subscription_key_shape() -> None:
    assert subscription_keys_valid(P256DH, AUTH)
    assert not subscription_keys_valid("not-a-key", AUTH)
    assert not subscription_keys_valid(P256DH, "short")
    assert not subscription_keys_valid("ünïcode", AUTH)


def test_broken_subscription_does_not_block_the_others(session, monkeypatch) -> None:
    broken = PushSubscription(user_id=1, endpoint="https://push/broken", p256dh="not-a-key", auth=AUTH)
    flaky = PushSubscription(user_id=1, endpoint="https://push/flaky", p256dh=P256DH, auth=AUTH)
    good = PushSubscription(user_id=1, endpoint="https://push/good", p256dh=P256DH, auth=AUTH)
    session.add_all([broken, flaky, good])
    session.flush()
    endpoints = []

    def fake_webpush(subscription_info, **kwargs):
        endpoints.append(subscription_info["endpoint"])
        if subscription_info["endpoint"].endswith("flaky"):
            raise RuntimeError("encoder exploded")

    monkeypatch.setattr(push, "webpush", fake_webpush)
    sender = PushSender(session, make_settings(vapid_public_key="pub", vapid_private_key="priv"))

    result = sender.send_to_user(1, PushPayload("Title", "Body"))

    assert (result.sent, result.failed) == (1, 2)
    assert endpoints == ["https://push/flaky", "https://push/good"]
    assert broken.active is False
    assert broken.failure_reason == "invalid subscription keys"
    assert flaky.active is True
    assert flaky.failure_reason == "encoder exploded"
    assert good.last_success_at is not None
