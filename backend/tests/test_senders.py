from __future__ import annotations

import json
import socket
import urllib.error
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests
from twilio.base.exceptions import TwilioRestException

from reminders_web.errors import ErrorKind, SendError
from reminders_web.senders import (
    SMS_CHARACTER_LIMIT,
    HttpVoiceDispatcher,
    SendTimeoutError,
    StubSmsSender,
    TwilioSmsSender,
    VoiceCallContext,
    format_sms_message,
)


def _context(**overrides: object) -> VoiceCallContext:
    values: dict[str, object] = {
        "reminder_id": "rem_001",
        "phone": "+15550100123",
        "customer_name": "Jane Doe",
        "invoice_number": "INV-0001",
        "amount_due": Decimal("250.00"),
        "original_amount": Decimal("400.00"),
        "currency": "USD",
        "due_date": date(2026, 11, 10),
        "days_until_due": -2,
        "company_name": "Acme Billing",
        "support_phone": "+15550100999",
    }
    values.update(overrides)
    return VoiceCallContext(**values)  # type: ignore[arg-type]


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _twilio_sender(client: MagicMock) -> TwilioSmsSender:
    return TwilioSmsSender(
        account_sid="AC123",
        auth_token="token",
        from_number="+15550000000",
        status_callback_url="https://reminders.test/api/v1/reminders/webhooks/sms-status",
        client=client,
    )


def test_sms_message_uses_currency_symbol_and_short_date() -> None:
    message = format_sms_message(
        customer_name="Jane",
        invoice_number="INV-0001",
        amount=Decimal("250"),
        currency="usd",
        due_date=date(2026, 11, 10),
        company_name="Acme",
    )
    assert message == "Hi Jane, reminder: Invoice #INV-0001 for $250.00 is due on Nov 10. - Acme"


def test_sms_message_unknown_currency_falls_back_to_code() -> None:
    message = format_sms_message(
        customer_name="Jane",
        invoice_number="1",
        amount=Decimal("5.5"),
        currency="SEK",
        due_date=date(2026, 1, 2),
        company_name="Acme",
    )
    assert "SEK 5.50" in message


def test_sms_message_truncates_long_names_to_fit_one_segment() -> None:
    message = format_sms_message(
        customer_name="Bartholomew Maximilian Fitzgerald-Worthington the Third",
        invoice_number="INV-2026-000000123",
        amount=Decimal("12345.67"),
        currency="GBP",
        due_date=date(2026, 12, 31),
        company_name="Consolidated Intergalactic Widgets and Sprockets Limited",
    )
    assert len(message) <= SMS_CHARACTER_LIMIT
    assert "Bartholomew Max..." in message
    assert "INV-2026-000000123" in message


def test_stub_sms_sender_records_messages_and_can_fail() -> None:
    sender = StubSmsSender(failing_numbers={"+15550000001"})
    accepted = sender.send_sms("+15550100123", "hello")
    assert accepted.provider_message_id.startswith("stub-sms-")
    assert sender.sent == [("+15550100123", "hello")]
    with pytest.raises(SendError) as exc_info:
        sender.send_sms("+15550000001", "hello")
    assert exc_info.value.retryable


def test_twilio_sender_passes_status_callback() -> None:
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM123")

    accepted = _twilio_sender(client).send_sms("+15550100123", "Reminder")

    assert accepted.provider_message_id == "SM123"
    client.messages.create.assert_called_once_with(
        to="+15550100123",
        from_="+15550000000",
        body="Reminder",
        status_callback="https://reminders.test/api/v1/reminders/webhooks/sms-status",
    )


def test_twilio_invalid_number_is_not_retryable() -> None:
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(400, "/Messages", msg="Invalid 'To' number", code=21211)

    with pytest.raises(SendError) as exc_info:
        _twilio_sender(client).send_sms("+15550100123", "Reminder")

    assert exc_info.value.kind is ErrorKind.DATA
    assert exc_info.value.code == "twilio_21211"
    assert not exc_info.value.retryable
    assert "***0123" in exc_info.value.message
    assert "+15550100123" not in exc_info.value.message


def test_twilio_auth_failure_is_configuration_error() -> None:
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(401, "/Messages", msg="Authenticate", code=20003)

    with pytest.raises(SendError) as exc_info:
        _twilio_sender(client).send_sms("+15550100123", "Reminder")

    assert exc_info.value.kind is ErrorKind.CONFIGURATION


def test_twilio_request_timeout_maps_to_send_timeout() -> None:
    client = MagicMock()
    client.messages.create.side_effect = requests.exceptions.ReadTimeout("read timed out")

    with pytest.raises(SendTimeoutError):
        _twilio_sender(client).send_sms("+15550100123", "Reminder")


@patch("reminders_web.senders.urllib.request.urlopen")
def test_voice_dispatcher_posts_call_context(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"call_id": "call-123", "room_name": "room-abc"})
    dispatcher = HttpVoiceDispatcher(base_url="https://voice.test/", api_key="voice-key")

    accepted = dispatcher.dispatch_call(_context())

    assert accepted.provider_call_id == "call-123"
    assert accepted.session_ref == "room-abc"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://voice.test/v1/calls/dispatch"
    assert request_arg.get_header("Authorization") == "Bearer voice-key"
    body = json.loads(request_arg.data.decode("utf-8"))
    assert body["phone_number"] == "+15550100123"
    assert body["idempotency_key"] == "reminder-rem_001"
    assert body["context"]["amount_due"] == "250.00"
    assert body["context"]["is_overdue"] is True


@patch("reminders_web.senders.urllib.request.urlopen")
def test_voice_dispatcher_missing_call_id_is_transient(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"status": "ok"})
    dispatcher = HttpVoiceDispatcher(base_url="https://voice.test", api_key="voice-key")

    with pytest.raises(SendError) as exc_info:
        dispatcher.dispatch_call(_context())

    assert exc_info.value.kind is ErrorKind.TRANSIENT


@patch("reminders_web.senders.urllib.request.urlopen")
def test_voice_dispatcher_rejected_request_is_data_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://voice.test/v1/calls/dispatch",
        code=422,
        msg="Unprocessable Entity",
        hdrs=None,  # type: ignore[arg-type]
        fp=None,
    )
    dispatcher = HttpVoiceDispatcher(base_url="https://voice.test", api_key="voice-key")

    with pytest.raises(SendError) as exc_info:
        dispatcher.dispatch_call(_context())

    assert exc_info.value.kind is ErrorKind.DATA
    assert exc_info.value.code == "http_422"


@patch("reminders_web.senders.urllib.request.urlopen")
def test_voice_dispatcher_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError(socket.timeout("timed out"))
    dispatcher = HttpVoiceDispatcher(base_url="https://voice.test", api_key="voice-key")

    with pytest.raises(SendTimeoutError):
        dispatcher.dispatch_call(_context())


def test_voice_dispatcher_requires_configuration() -> None:
    with pytest.raises(ValueError):
        HttpVoiceDispatcher(base_url="", api_key="key")
    with pytest.raises(ValueError):
        HttpVoiceDispatcher(base_url="https://voice.test", api_key="  ")
