from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from twilio.request_validator import RequestValidator

from .config import Settings


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _header(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _normalize_signature(value: str) -> str:
    normalized = value.strip()
    if normalized.startswith("sha256="):
        normalized = normalized.removeprefix("sha256=").strip()
    return normalized.lower()


def verify_twilio_status_signature(
    *,
    settings: Settings,
    url: str,
    form_data: Mapping[str, str],
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    """Check ``X-Twilio-Signature`` on an SMS status callback."""
    if settings.webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    auth_token = settings.twilio_auth_token.strip()
    if not auth_token:
        return WebhookSignatureVerification(verified=False, reason="twilio_auth_token_missing")

    provided = _header(headers, "X-Twilio-Signature")
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(form_data), provided):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)


def sign_voice_callback(secret: str, body: bytes, timestamp: int) -> str:
    signing_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signing_payload, hashlib.sha256).hexdigest()


def verify_voice_status_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> WebhookSignatureVerification:
    """Check the HMAC-sha256 ``X-Webhook-Signature`` sent by the voice service.

    The signed payload is ``"{timestamp}." + body`` with the timestamp taken from
    ``X-Webhook-Timestamp`` (unix seconds).
    """
    if settings.webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.voice_webhook_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_missing")

    timestamp_text = _header(headers, "X-Webhook-Timestamp")
    signature_text = _header(headers, "X-Webhook-Signature")
    if not timestamp_text:
        return WebhookSignatureVerification(verified=False, reason="timestamp_missing")
    if not signature_text:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    try:
        timestamp = int(timestamp_text)
    except ValueError:
        return WebhookSignatureVerification(verified=False, reason="timestamp_invalid")

    current_epoch = int((now or datetime.now(timezone.utc)).timestamp())
    if abs(current_epoch - timestamp) > max(0, settings.webhook_signature_max_age_seconds):
        return WebhookSignatureVerification(verified=False, reason="timestamp_out_of_window")

    expected = sign_voice_callback(secret, body, timestamp)
    if not hmac.compare_digest(_normalize_signature(signature_text), expected):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
