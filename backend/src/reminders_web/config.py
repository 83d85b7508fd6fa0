from __future__ import annotations

import os
from dataclasses import dataclass


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Payment Reminders Engine"
    api_prefix: str = "/api/v1"
    store_backend: str = "inmemory"
    database_url: str = ""
    cron_secret: str = "dev-cron-secret"
    runtime_secret_guard_mode: str = "warn"
    # Sync settings.
    remote_source_type: str = "stub"
    remote_api_base_url: str = ""
    remote_api_token: str = ""
    sync_page_size: int = 200
    sync_interval_seconds: int = 3600
    # Dispatch settings.
    dispatch_interval_seconds: int = 300
    dispatch_max_workers: int = 4
    call_timeout_seconds: float = 30.0
    smart_mode_sms_min_days_before: int = 5
    # Minutes a queued or in-progress reminder may wait for its status callback.
    callback_timeout_minutes: int = 10
    pre_send_check_mode: str = "on"
    sms_sender_type: str = "stub"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_status_callback_url: str = ""
    voice_sender_type: str = "stub"
    voice_api_base_url: str = ""
    voice_api_key: str = ""
    business_name: str = "Accounts Receivable"
    support_phone: str = ""
    # Delivery callback settings.
    webhook_signature_mode: str = "log_only"
    webhook_signature_max_age_seconds: int = 300
    voice_webhook_secret: str = ""


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDERS_APP_NAME", "Payment Reminders Engine"),
        api_prefix=os.getenv("REMINDERS_API_PREFIX", "/api/v1"),
        store_backend=os.getenv("REMINDERS_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        cron_secret=os.getenv("CRON_SECRET", "dev-cron-secret"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        remote_source_type=_normalize_mode(
            os.getenv("REMOTE_SOURCE_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        remote_api_base_url=os.getenv("REMOTE_API_BASE_URL", ""),
        remote_api_token=os.getenv("REMOTE_API_TOKEN", ""),
        sync_page_size=max(1, _as_int(os.getenv("SYNC_PAGE_SIZE"), 200)),
        sync_interval_seconds=max(60, _as_int(os.getenv("SYNC_INTERVAL_SECONDS"), 3600)),
        dispatch_interval_seconds=max(10, _as_int(os.getenv("DISPATCH_INTERVAL_SECONDS"), 300)),
        dispatch_max_workers=max(1, _as_int(os.getenv("DISPATCH_MAX_WORKERS"), 4)),
        call_timeout_seconds=max(1.0, _as_float(os.getenv("CALL_TIMEOUT_SECONDS"), 30.0)),
        smart_mode_sms_min_days_before=_as_int(os.getenv("SMART_MODE_SMS_MIN_DAYS_BEFORE"), 5),
        callback_timeout_minutes=max(1, _as_int(os.getenv("CALLBACK_TIMEOUT_MINUTES"), 10)),
        pre_send_check_mode=_normalize_mode(
            os.getenv("PRE_SEND_CHECK_MODE"),
            default="on",
            allowed={"on", "off"},
        ),
        sms_sender_type=_normalize_mode(
            os.getenv("SMS_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "twilio"},
        ),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
        twilio_status_callback_url=os.getenv("TWILIO_STATUS_CALLBACK_URL", ""),
        voice_sender_type=_normalize_mode(
            os.getenv("VOICE_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        voice_api_base_url=os.getenv("VOICE_API_BASE_URL", ""),
        voice_api_key=os.getenv("VOICE_API_KEY", ""),
        business_name=os.getenv("REMINDERS_BUSINESS_NAME", "Accounts Receivable"),
        support_phone=os.getenv("REMINDERS_SUPPORT_PHONE", ""),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        webhook_signature_max_age_seconds=_as_int(os.getenv("WEBHOOK_SIGNATURE_MAX_AGE_SECONDS"), 300),
        voice_webhook_secret=os.getenv("VOICE_WEBHOOK_SECRET", ""),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.cron_secret,
        defaults={"dev-cron-secret", "change-me-in-production"},
    ):
        issues.append("CRON_SECRET is empty or uses a development placeholder")
    if settings.store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDERS_STORE_BACKEND=postgres")
    if settings.sms_sender_type == "twilio" and not (
        settings.twilio_account_sid.strip()
        and settings.twilio_auth_token.strip()
        and settings.twilio_from_number.strip()
    ):
        issues.append(
            "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER are required when SMS_SENDER_TYPE=twilio"
        )
    if settings.voice_sender_type == "http" and not (
        settings.voice_api_base_url.strip() and settings.voice_api_key.strip()
    ):
        issues.append("VOICE_API_BASE_URL and VOICE_API_KEY are required when VOICE_SENDER_TYPE=http")
    if settings.remote_source_type == "http" and not settings.remote_api_base_url.strip():
        issues.append("REMOTE_API_BASE_URL is required when REMOTE_SOURCE_TYPE=http")
    if settings.webhook_signature_mode == "enforce":
        if not settings.twilio_auth_token.strip():
            issues.append("TWILIO_AUTH_TOKEN is required when WEBHOOK_SIGNATURE_MODE=enforce")
        if not settings.voice_webhook_secret.strip():
            issues.append("VOICE_WEBHOOK_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce")
    return tuple(issues)
