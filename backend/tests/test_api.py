from __future__ import annotations

import json
import urllib.parse
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from reminders_web.config import Settings
from reminders_web.engine import ReminderEngine, build_engine
from reminders_web.main import create_app
from reminders_web.models import Channel, ReminderStatus, ReminderType, RemoteContactPerson, RemoteCustomer, RemoteInvoice
from reminders_web.policy import ReminderPolicyConfig
from reminders_web.webhook_security import sign_voice_callback

CRON_HEADERS = {"Authorization": "Bearer cron-secret-001"}
PREFIX = "/api/v1/reminders"


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "cron_secret": "cron-secret-001",
        "runtime_secret_guard_mode": "off",
        "webhook_signature_mode": "off",
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def _client(**overrides: object) -> tuple[TestClient, ReminderEngine]:
    settings = _settings(**overrides)
    engine = build_engine(settings)
    return TestClient(create_app(settings=settings, engine=engine)), engine


def _policy_payload() -> dict:
    return {
        "timezone": "UTC",
        "call_start_time": "09:00:00",
        "call_end_time": "18:00:00",
        "call_days_of_week": [0, 1, 2, 3, 4, 5, 6],
        "max_retry_attempts": 3,
        "retry_delay_hours": 2,
    }


def _seed_source(engine: ReminderEngine, due_date: date) -> None:
    engine.source.put_customers(  # type: ignore[attr-defined]
        "owner-1",
        [
            RemoteCustomer(
                remote_id="C-1",
                display_name="Jane Doe",
                contact_persons=(
                    RemoteContactPerson(contact_person_id="P-1", mobile="+15550100123", is_primary_contact=True),
                ),
            )
        ],
    )
    engine.source.put_invoices(  # type: ignore[attr-defined]
        "owner-1",
        [
            RemoteInvoice(
                remote_id="INV-1",
                invoice_number="INV-1",
                remote_customer_id="C-1",
                total=Decimal("300.00"),
                balance=Decimal("300.00"),
                currency="USD",
                due_date=due_date,
                status="unpaid",
            )
        ],
    )


def _reminder(engine: ReminderEngine, days_before_due: int):
    invoice = engine.cache.find_invoice("owner-1", "INV-1")
    assert invoice is not None
    for record in engine.reminders.list_for_invoice(invoice.invoice_id):
        if record.reminder_type == ReminderType(days_before_due):
            return record
    raise AssertionError(f"no reminder {days_before_due} days before due")


def test_health_reports_store_backend() -> None:
    client, _ = _client()

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store_backend": "inmemory"}


def test_cron_endpoints_require_secret() -> None:
    client, _ = _client()

    missing = client.post(f"{PREFIX}/cron/dispatch")
    wrong = client.post(f"{PREFIX}/cron/dispatch", headers={"Authorization": "Bearer nope"})
    policy = client.get(f"{PREFIX}/owners/owner-1/policy")

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert policy.status_code == 401


def test_policy_round_trip() -> None:
    client, _ = _client()

    missing = client.get(f"{PREFIX}/owners/owner-1/policy", headers=CRON_HEADERS)
    stored = client.put(f"{PREFIX}/owners/owner-1/policy", headers=CRON_HEADERS, json=_policy_payload())
    loaded = client.get(f"{PREFIX}/owners/owner-1/policy", headers=CRON_HEADERS)

    assert missing.status_code == 404
    assert stored.status_code == 200
    assert loaded.json()["call_days_of_week"] == [0, 1, 2, 3, 4, 5, 6]
    assert loaded.json()["reminder_7_days_before"] is True


def test_invalid_policy_is_rejected() -> None:
    client, _ = _client()

    response = client.put(
        f"{PREFIX}/owners/owner-1/policy",
        headers=CRON_HEADERS,
        json={**_policy_payload(), "timezone": "Mars/Olympus"},
    )

    assert response.status_code == 422


def test_sync_then_dispatch_then_delivery_callbacks() -> None:
    client, engine = _client()
    client.put(f"{PREFIX}/owners/owner-1/policy", headers=CRON_HEADERS, json=_policy_payload())
    due_date = datetime.now(timezone.utc).date() + timedelta(days=40)
    _seed_source(engine, due_date)

    sync = client.post(f"{PREFIX}/cron/sync", headers=CRON_HEADERS, json={"owner_ids": ["owner-1"]})
    assert sync.status_code == 200
    summary = sync.json()["items"][0]
    assert summary["customers"]["inserted"] == 1
    assert summary["invoices"]["inserted"] == 1
    assert summary["reminders_created"] == 6

    early = _reminder(engine, 7)
    dispatch = client.post(
        f"{PREFIX}/cron/dispatch",
        headers=CRON_HEADERS,
        json={"now_override": (early.scheduled_at + timedelta(minutes=1)).isoformat()},
    )
    assert dispatch.status_code == 200
    assert dispatch.json()["dispatched"] == 1

    sent = _reminder(engine, 7)
    assert sent.status is ReminderStatus.QUEUED
    assert sent.channel is Channel.SMS
    sms_callback = client.post(
        f"{PREFIX}/webhooks/sms-status",
        content=urllib.parse.urlencode({"MessageSid": sent.external_id, "MessageStatus": "delivered"}),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert sms_callback.status_code == 200
    assert sms_callback.json() == {
        "accepted": True,
        "reminder_id": sent.reminder_id,
        "status": "completed",
        "changed": True,
    }

    due_day = _reminder(engine, 0)
    client.post(
        f"{PREFIX}/cron/dispatch",
        headers=CRON_HEADERS,
        json={"now_override": (due_day.scheduled_at + timedelta(minutes=1)).isoformat()},
    )
    called = _reminder(engine, 0)
    assert called.status is ReminderStatus.IN_PROGRESS
    voice_callback = client.post(
        f"{PREFIX}/webhooks/voice-status",
        content=json.dumps({"call_id": called.external_id, "event": "no-answer"}),
        headers={"Content-Type": "application/json"},
    )
    assert voice_callback.status_code == 200
    assert voice_callback.json()["status"] == "failed"
    assert _reminder(engine, 0).outcome["code"] == "no_answer"  # type: ignore[index]


def test_sync_requires_owner_ids() -> None:
    client, _ = _client()

    response = client.post(f"{PREFIX}/cron/sync", headers=CRON_HEADERS, json={"owner_ids": []})

    assert response.status_code == 422


def test_callback_for_unknown_id_returns_404() -> None:
    client, _ = _client()

    response = client.post(
        f"{PREFIX}/webhooks/sms-status",
        content="MessageSid=SM-missing&MessageStatus=delivered",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 404


def test_sms_callback_requires_sid_and_status() -> None:
    client, _ = _client()

    response = client.post(
        f"{PREFIX}/webhooks/sms-status",
        content="MessageStatus=delivered",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 422


def test_sms_callback_with_undecodable_body_is_bad_request() -> None:
    client, _ = _client()

    response = client.post(
        f"{PREFIX}/webhooks/sms-status",
        content=b"MessageSid=SM1&MessageStatus=\xff\xfe",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 400


def test_voice_callback_rejects_malformed_body() -> None:
    client, _ = _client()

    response = client.post(
        f"{PREFIX}/webhooks/voice-status",
        content=json.dumps({"event": "completed"}),
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 422


def test_enforced_signatures_block_unsigned_callbacks() -> None:
    client, _ = _client(
        webhook_signature_mode="enforce",
        twilio_auth_token="twilio-token-001",
        voice_webhook_secret="voice-secret-001",
    )

    sms = client.post(
        f"{PREFIX}/webhooks/sms-status",
        content="MessageSid=SM1&MessageStatus=delivered",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    voice = client.post(f"{PREFIX}/webhooks/voice-status", content=b'{"call_id":"c","event":"completed"}')

    assert sms.status_code == 403
    assert voice.status_code == 403


def test_enforced_signatures_accept_signed_callbacks() -> None:
    client, _ = _client(
        webhook_signature_mode="enforce",
        twilio_auth_token="twilio-token-001",
        voice_webhook_secret="voice-secret-001",
    )
    url = f"http://testserver{PREFIX}/webhooks/sms-status"
    form = {"MessageSid": "SM1", "MessageStatus": "delivered"}
    sms_signature = RequestValidator("twilio-token-001").compute_signature(url, form)
    body = b'{"call_id":"call-1","event":"completed"}'
    timestamp = int(datetime.now(timezone.utc).timestamp())

    sms = client.post(
        f"{PREFIX}/webhooks/sms-status",
        content=urllib.parse.urlencode(form),
        headers={"Content-Type": "application/x-www-form-urlencoded", "X-Twilio-Signature": sms_signature},
    )
    voice = client.post(
        f"{PREFIX}/webhooks/voice-status",
        content=body,
        headers={
            "X-Webhook-Timestamp": str(timestamp),
            "X-Webhook-Signature": sign_voice_callback("voice-secret-001", body, timestamp),
        },
    )

    # Signatures pass; neither id belongs to a reminder.
    assert sms.status_code == 404
    assert voice.status_code == 404


def test_log_only_mode_accepts_unsigned_callbacks() -> None:
    client, _ = _client(webhook_signature_mode="log_only", twilio_auth_token="twilio-token-001")

    response = client.post(
        f"{PREFIX}/webhooks/sms-status",
        content="MessageSid=SM1&MessageStatus=delivered",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 404


def test_window_status_for_owner() -> None:
    client, engine = _client()
    today = datetime.now(timezone.utc).isoweekday() % 7
    engine.policies.put_config("owner-1", ReminderPolicyConfig(call_days_of_week=[(today + 3) % 7]))

    missing = client.get(f"{PREFIX}/owners/owner-2/window")
    response = client.get(f"{PREFIX}/owners/owner-1/window")

    assert missing.status_code == 404
    assert response.status_code == 200
    data = response.json()
    assert data["timezone"] == "UTC"
    assert data["open"] is False
    assert data["closed_reason"].startswith("calls are not allowed on")
    assert data["next_opening_at"] is not None
