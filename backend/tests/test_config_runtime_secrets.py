from __future__ import annotations

import os

from reminders_web.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_stub_providers() -> None:
    previous = {
        "SMS_SENDER_TYPE": _set_env("SMS_SENDER_TYPE", None),
        "VOICE_SENDER_TYPE": _set_env("VOICE_SENDER_TYPE", None),
        "REMOTE_SOURCE_TYPE": _set_env("REMOTE_SOURCE_TYPE", None),
        "WEBHOOK_SIGNATURE_MODE": _set_env("WEBHOOK_SIGNATURE_MODE", None),
        "PRE_SEND_CHECK_MODE": _set_env("PRE_SEND_CHECK_MODE", None),
    }
    try:
        settings = get_settings()
        assert settings.pre_send_check_mode == "on"
        assert settings.callback_timeout_minutes == 10
        assert settings.sms_sender_type == "stub"
        assert settings.voice_sender_type == "stub"
        assert settings.remote_source_type == "stub"
        assert settings.webhook_signature_mode == "log_only"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_unknown_modes_fall_back_to_defaults() -> None:
    previous = {
        "SMS_SENDER_TYPE": _set_env("SMS_SENDER_TYPE", "carrier-pigeon"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "sometimes"),
    }
    try:
        settings = get_settings()
        assert settings.sms_sender_type == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_numeric_settings_are_clamped() -> None:
    previous = {
        "SYNC_PAGE_SIZE": _set_env("SYNC_PAGE_SIZE", "0"),
        "DISPATCH_MAX_WORKERS": _set_env("DISPATCH_MAX_WORKERS", "not-a-number"),
        "CALL_TIMEOUT_SECONDS": _set_env("CALL_TIMEOUT_SECONDS", "0.1"),
        "CALLBACK_TIMEOUT_MINUTES": _set_env("CALLBACK_TIMEOUT_MINUTES", "0"),
    }
    try:
        settings = get_settings()
        assert settings.sync_page_size == 1
        assert settings.dispatch_max_workers == 4
        assert settings.call_timeout_seconds == 1.0
        assert settings.callback_timeout_minutes == 1
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_placeholder_cron_secret_is_reported() -> None:
    issues = runtime_secret_issues(Settings(cron_secret="dev-cron-secret"))

    assert any("CRON_SECRET" in issue for issue in issues)


def test_stub_providers_need_no_provider_secrets() -> None:
    issues = runtime_secret_issues(Settings(cron_secret="prod-cron-secret-001"))

    assert issues == ()


def test_real_providers_require_their_secrets() -> None:
    issues = runtime_secret_issues(
        Settings(
            cron_secret="prod-cron-secret-001",
            store_backend="postgres",
            sms_sender_type="twilio",
            voice_sender_type="http",
            remote_source_type="http",
            webhook_signature_mode="enforce",
        )
    )

    joined = " | ".join(issues)
    assert "DATABASE_URL" in joined
    assert "SMS_SENDER_TYPE=twilio" in joined
    assert "VOICE_SENDER_TYPE=http" in joined
    assert "REMOTE_SOURCE_TYPE=http" in joined
    assert "VOICE_WEBHOOK_SECRET" in joined
