from __future__ import annotations

import itertools
import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Protocol

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .contacts import mask_phone
from .errors import ErrorKind, SendError

logger = logging.getLogger(__name__)

SMS_CHARACTER_LIMIT = 160
_TRUNCATED_FIELD_LENGTH = 15

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "AUD": "A$",
    "CAD": "C$",
    "NZD": "NZ$",
    "SGD": "S$",
    "ZAR": "R",
    "AED": "د.إ",
    "CHF": "CHF",
}

# Twilio error codes that mean the recipient itself is unusable.
TWILIO_INVALID_RECIPIENT_CODES = frozenset({21211, 21214, 21217, 21401, 21407, 21408, 21610, 21612, 21614})


class SendTimeoutError(SendError):
    """Raised when a provider did not answer in time; delivery state is unknown."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.TRANSIENT, "timeout", message)


@dataclass(frozen=True)
class SmsAcceptance:
    provider_message_id: str
    accepted_at: datetime


@dataclass(frozen=True)
class VoiceCallContext:
    reminder_id: str
    phone: str
    customer_name: str
    invoice_number: str
    amount_due: Decimal
    original_amount: Decimal
    currency: str
    due_date: date
    days_until_due: int
    company_name: str
    support_phone: str = ""

    @property
    def is_overdue(self) -> bool:
        return self.days_until_due < 0


@dataclass(frozen=True)
class VoiceAcceptance:
    provider_call_id: str
    session_ref: str | None
    accepted_at: datetime


class SmsSender(Protocol):
    def send_sms(self, phone: str, message: str) -> SmsAcceptance: ...


class VoiceDispatcher(Protocol):
    def dispatch_call(self, context: VoiceCallContext) -> VoiceAcceptance: ...


def _format_amount(amount: Decimal, currency: str) -> str:
    code = currency.strip().upper()
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{code} {amount:.2f}"
    return f"{symbol}{amount:.2f}"


def _truncate(value: str) -> str:
    if len(value) <= _TRUNCATED_FIELD_LENGTH:
        return value
    return f"{value[:_TRUNCATED_FIELD_LENGTH]}..."


def format_sms_message(
    *,
    customer_name: str,
    invoice_number: str,
    amount: Decimal,
    currency: str,
    due_date: date,
    company_name: str,
) -> str:
    """Render the reminder text, shortening names until it fits in one SMS segment."""

    def build(name: str, company: str) -> str:
        return (
            f"Hi {name}, reminder: Invoice #{invoice_number} for {_format_amount(amount, currency)} "
            f"is due on {due_date.strftime('%b')} {due_date.day}. - {company}"
        )

    message = build(customer_name, company_name)
    if len(message) <= SMS_CHARACTER_LIMIT:
        return message
    message = build(_truncate(customer_name), company_name)
    if len(message) <= SMS_CHARACTER_LIMIT:
        return message
    message = build(_truncate(customer_name), _truncate(company_name))
    if len(message) <= SMS_CHARACTER_LIMIT:
        return message
    return f"{message[: SMS_CHARACTER_LIMIT - 3]}..."


class StubSmsSender:
    def __init__(self, *, failing_numbers: set[str] | None = None) -> None:
        self._failing_numbers = failing_numbers or set()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.sent: list[tuple[str, str]] = []

    def send_sms(self, phone: str, message: str) -> SmsAcceptance:
        if phone in self._failing_numbers:
            raise SendError(ErrorKind.TRANSIENT, "stub_delivery_failed", "Stub sender forced failure for recipient")
        with self._lock:
            self.sent.append((phone, message))
            message_id = f"stub-sms-{next(self._counter):06d}"
        return SmsAcceptance(provider_message_id=message_id, accepted_at=datetime.now(timezone.utc))


class TwilioSmsSender:
    """Sends reminder texts through the Twilio Messages API."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: str = "",
        timeout_seconds: float = 30.0,
        client: Client | None = None,
    ) -> None:
        if not from_number.strip():
            raise ValueError("from_number must not be empty")
        if client is None:
            if not account_sid.strip() or not auth_token.strip():
                raise ValueError("account_sid and auth_token must not be empty")
            client = Client(
                account_sid.strip(),
                auth_token.strip(),
                http_client=TwilioHttpClient(timeout=timeout_seconds),
            )
        self._client = client
        self._from_number = from_number.strip()
        self._status_callback_url = status_callback_url.strip()

    def send_sms(self, phone: str, message: str) -> SmsAcceptance:
        options: dict[str, str] = {"to": phone, "from_": self._from_number, "body": message}
        if self._status_callback_url:
            options["status_callback"] = self._status_callback_url
        try:
            created = self._client.messages.create(**options)
        except TwilioRestException as exc:
            raise _twilio_error(exc, phone) from exc
        except requests.exceptions.Timeout as exc:
            raise SendTimeoutError(f"Twilio request timed out (recipient: {mask_phone(phone)})") from exc
        except requests.exceptions.RequestException as exc:
            raise SendError(
                ErrorKind.TRANSIENT,
                "connection_error",
                f"Twilio connection error: {exc} (recipient: {mask_phone(phone)})",
            ) from exc
        return SmsAcceptance(provider_message_id=created.sid, accepted_at=datetime.now(timezone.utc))


def _twilio_error(exc: TwilioRestException, phone: str) -> SendError:
    code = exc.code if isinstance(exc.code, int) else None
    detail = f"{exc.msg} (recipient: {mask_phone(phone)})"
    if code in TWILIO_INVALID_RECIPIENT_CODES:
        return SendError(ErrorKind.DATA, f"twilio_{code}", detail)
    if exc.status in {401, 403}:
        return SendError(ErrorKind.CONFIGURATION, f"twilio_{code or exc.status}", detail)
    return SendError(ErrorKind.TRANSIENT, f"twilio_{code or exc.status}", detail)


class StubVoiceDispatcher:
    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.calls: list[VoiceCallContext] = []

    def dispatch_call(self, context: VoiceCallContext) -> VoiceAcceptance:
        with self._lock:
            self.calls.append(context)
            sequence = next(self._counter)
        return VoiceAcceptance(
            provider_call_id=f"stub-call-{sequence:06d}",
            session_ref=f"stub-room-{context.reminder_id}",
            accepted_at=datetime.now(timezone.utc),
        )


class HttpVoiceDispatcher:
    """Hands a call to the voice agent service over HTTP."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float = 30.0) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def dispatch_call(self, context: VoiceCallContext) -> VoiceAcceptance:
        body = {
            "phone_number": context.phone,
            "idempotency_key": f"reminder-{context.reminder_id}",
            "context": {
                "customer_name": context.customer_name,
                "invoice_number": context.invoice_number,
                "original_amount": str(context.original_amount),
                "amount_due": str(context.amount_due),
                "currency": context.currency,
                "due_date": context.due_date.isoformat(),
                "days_until_due": context.days_until_due,
                "is_overdue": context.is_overdue,
                "company_name": context.company_name,
                "support_phone": context.support_phone,
            },
        }
        response = self._post(body, phone=context.phone)
        call_id = response.get("call_id")
        if not call_id:
            raise SendError(ErrorKind.TRANSIENT, "missing_call_id", "Voice service response did not include call_id")
        return VoiceAcceptance(
            provider_call_id=str(call_id),
            session_ref=response.get("room_name"),
            accepted_at=datetime.now(timezone.utc),
        )

    def _post(self, body: dict[str, object], *, phone: str) -> dict[str, str]:
        """Send a POST request to the call dispatch endpoint."""
        request = urllib.request.Request(
            f"{self._base_url}/v1/calls/dispatch",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        masked = mask_phone(phone)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            kind = ErrorKind.DATA if exc.code in {400, 422} else ErrorKind.TRANSIENT
            raise SendError(kind, f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason} (recipient: {masked})") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise SendTimeoutError(f"Request timed out: {exc.reason} (recipient: {masked})") from exc
            raise SendError(
                ErrorKind.TRANSIENT,
                "connection_error",
                f"Connection error: {exc.reason} (recipient: {masked})",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise SendTimeoutError(f"Request timed out: {exc} (recipient: {masked})") from exc
