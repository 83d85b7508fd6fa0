from __future__ import annotations

import logging
import os

import pytest

from reminders_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "CRON_SECRET": "prod-cron-secret-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "REMINDERS_STORE_BACKEND": "inmemory",
        "WEBHOOK_SIGNATURE_MODE": "log_only",
        "SMS_SENDER_TYPE": None,
        "VOICE_SENDER_TYPE": None,
        "REMOTE_SOURCE_TYPE": None,
    }


def test_create_app_starts_with_stub_providers() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Payment Reminders Engine"
    finally:
        _restore_env(previous)


def test_create_app_blocks_twilio_without_credentials() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "SMS_SENDER_TYPE": "twilio",
            "TWILIO_ACCOUNT_SID": None,
            "TWILIO_AUTH_TOKEN": None,
            "TWILIO_FROM_NUMBER": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "runtime secret guard blocked startup" in message
        assert "SMS_SENDER_TYPE=twilio" in message
        assert "Remediation" in message
    finally:
        _restore_env(previous)


def test_warn_mode_logs_and_starts(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "CRON_SECRET": None,
        }
    )
    try:
        with caplog.at_level(logging.WARNING, logger="reminders_web.main"):
            app = create_app()
        assert app.title == "Payment Reminders Engine"
        assert any("CRON_SECRET" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)


def test_unsupported_store_backend_fails_startup() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "off",
            "REMINDERS_STORE_BACKEND": "mongodb",
        }
    )
    try:
        with pytest.raises(RuntimeError, match="unsupported REMINDERS_STORE_BACKEND"):
            create_app()
    finally:
        _restore_env(previous)
