from __future__ import annotations

from datetime import datetime, timezone

from twilio.request_validator import RequestValidator

from reminders_web.config import Settings
from reminders_web.webhook_security import (
    sign_voice_callback,
    verify_twilio_status_signature,
    verify_voice_status_signature,
)

CALLBACK_URL = "https://reminders.example.com/api/v1/reminders/webhooks/sms-status"
FORM = {"MessageSid": "SM123", "MessageStatus": "delivered"}
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "webhook_signature_mode": "enforce",
        "twilio_auth_token": "twilio-token-001",
        "voice_webhook_secret": "voice-secret-001",
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def test_twilio_signature_accepts_valid_request() -> None:
    signature = RequestValidator("twilio-token-001").compute_signature(CALLBACK_URL, FORM)

    result = verify_twilio_status_signature(
        settings=_settings(),
        url=CALLBACK_URL,
        form_data=FORM,
        headers={"x-twilio-signature": signature},
    )

    assert result.verified
    assert result.reason is None


def test_twilio_signature_rejects_tampered_form() -> None:
    signature = RequestValidator("twilio-token-001").compute_signature(CALLBACK_URL, FORM)

    result = verify_twilio_status_signature(
        settings=_settings(),
        url=CALLBACK_URL,
        form_data={**FORM, "MessageStatus": "failed"},
        headers={"X-Twilio-Signature": signature},
    )

    assert not result.verified
    assert result.reason == "signature_mismatch"


def test_twilio_signature_reports_missing_header_and_token() -> None:
    missing_header = verify_twilio_status_signature(settings=_settings(), url=CALLBACK_URL, form_data=FORM, headers={})
    missing_token = verify_twilio_status_signature(
        settings=_settings(twilio_auth_token=""),
        url=CALLBACK_URL,
        form_data=FORM,
        headers={"X-Twilio-Signature": "abc"},
    )

    assert missing_header.reason == "signature_missing"
    assert missing_token.reason == "twilio_auth_token_missing"


def test_signature_checks_are_skipped_when_mode_is_off() -> None:
    settings = _settings(webhook_signature_mode="off")

    assert verify_twilio_status_signature(settings=settings, url=CALLBACK_URL, form_data=FORM, headers={}).verified
    assert verify_voice_status_signature(settings=settings, body=b"{}", headers={}).verified


def test_voice_signature_accepts_valid_and_prefixed_signatures() -> None:
    body = b'{"call_id":"call-9","event":"completed"}'
    timestamp = int(NOW.timestamp())
    signature = sign_voice_callback("voice-secret-001", body, timestamp)

    plain = verify_voice_status_signature(
        settings=_settings(),
        body=body,
        headers={"X-Webhook-Timestamp": str(timestamp), "X-Webhook-Signature": signature},
        now=NOW,
    )
    prefixed = verify_voice_status_signature(
        settings=_settings(),
        body=body,
        headers={"x-webhook-timestamp": str(timestamp), "x-webhook-signature": f"sha256={signature.upper()}"},
        now=NOW,
    )

    assert plain.verified
    assert prefixed.verified


def test_voice_signature_rejects_stale_timestamp() -> None:
    body = b"{}"
    timestamp = int(NOW.timestamp()) - 301

    result = verify_voice_status_signature(
        settings=_settings(),
        body=body,
        headers={
            "X-Webhook-Timestamp": str(timestamp),
            "X-Webhook-Signature": sign_voice_callback("voice-secret-001", body, timestamp),
        },
        now=NOW,
    )

    assert result.reason == "timestamp_out_of_window"


def test_voice_signature_failure_reasons() -> None:
    timestamp = str(int(NOW.timestamp()))

    def check(headers: dict[str, str], **overrides: object) -> str | None:
        return verify_voice_status_signature(
            settings=_settings(**overrides), body=b"{}", headers=headers, now=NOW
        ).reason

    assert check({}, voice_webhook_secret="") == "webhook_secret_missing"
    assert check({"X-Webhook-Signature": "abc"}) == "timestamp_missing"
    assert check({"X-Webhook-Timestamp": timestamp}) == "signature_missing"
    assert check({"X-Webhook-Timestamp": "soon", "X-Webhook-Signature": "abc"}) == "timestamp_invalid"
    assert check({"X-Webhook-Timestamp": timestamp, "X-Webhook-Signature": "abc"}) == "signature_mismatch"
