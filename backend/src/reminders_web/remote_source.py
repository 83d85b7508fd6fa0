from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from datetime import date, datetime, timezone
from typing import Any, Callable, Protocol, TypeVar

from .errors import ErrorKind, RemoteSourceError
from .models import RejectedRecord, RemoteContactPerson, RemoteCustomer, RemoteInvoice, RemotePage, as_money

RecordT = TypeVar("RecordT")


class RemoteRecordSource(Protocol):
    def list_customers(
        self, owner_id: str, *, page: int, page_size: int, since: datetime | None = None
    ) -> RemotePage[RemoteCustomer]: ...

    def list_invoices(
        self, owner_id: str, *, page: int, page_size: int, since: datetime | None = None
    ) -> RemotePage[RemoteInvoice]: ...

    def get_invoice(self, owner_id: str, remote_invoice_id: str) -> RemoteInvoice: ...


class TokenProvider(Protocol):
    def get_access_token(self, owner_id: str) -> str: ...


class StaticTokenProvider:
    def __init__(self, token: str) -> None:
        self._token = token

    def get_access_token(self, owner_id: str) -> str:
        _ = owner_id
        return self._token


def _modified_since(value: datetime | None, since: datetime | None) -> bool:
    if since is None or value is None:
        return True
    return value >= since


class StubRemoteRecordSource:
    """In-memory accounting source used for local runs and tests."""

    def __init__(self) -> None:
        self._customers: dict[str, list[RemoteCustomer]] = {}
        self._invoices: dict[str, list[RemoteInvoice]] = {}
        self._failing_pages: set[tuple[str, str, int]] = set()
        self._failing_lookups: set[str] = set()
        self.requests: list[tuple[str, str, int, datetime | None]] = []
        self.lookups: list[tuple[str, str]] = []

    def put_customers(self, owner_id: str, customers: list[RemoteCustomer]) -> None:
        self._customers[owner_id] = list(customers)

    def put_invoices(self, owner_id: str, invoices: list[RemoteInvoice]) -> None:
        self._invoices[owner_id] = list(invoices)

    def fail_page(self, owner_id: str, entity: str, page: int) -> None:
        self._failing_pages.add((owner_id, entity, page))

    def fail_lookups(self, owner_id: str) -> None:
        self._failing_lookups.add(owner_id)

    def _page(
        self, owner_id: str, entity: str, items: list[Any], page: int, page_size: int, since: datetime | None
    ) -> RemotePage[Any]:
        self.requests.append((owner_id, entity, page, since))
        if (owner_id, entity, page) in self._failing_pages:
            raise RemoteSourceError(ErrorKind.TRANSIENT, "stub_page_failed", f"stub failure on {entity} page {page}")
        filtered = [item for item in items if _modified_since(item.last_modified_at, since)]
        start = (page - 1) * page_size
        chunk = filtered[start : start + page_size]
        return RemotePage(records=chunk, has_more_pages=start + page_size < len(filtered))

    def list_customers(
        self, owner_id: str, *, page: int, page_size: int, since: datetime | None = None
    ) -> RemotePage[RemoteCustomer]:
        return self._page(owner_id, "customers", self._customers.get(owner_id, []), page, page_size, since)

    def list_invoices(
        self, owner_id: str, *, page: int, page_size: int, since: datetime | None = None
    ) -> RemotePage[RemoteInvoice]:
        return self._page(owner_id, "invoices", self._invoices.get(owner_id, []), page, page_size, since)

    def get_invoice(self, owner_id: str, remote_invoice_id: str) -> RemoteInvoice:
        self.lookups.append((owner_id, remote_invoice_id))
        if owner_id in self._failing_lookups:
            raise RemoteSourceError(ErrorKind.TRANSIENT, "stub_lookup_failed", f"stub failure on invoice {remote_invoice_id}")
        for invoice in self._invoices.get(owner_id, []):
            if invoice.remote_id == remote_invoice_id:
                return invoice
        raise RemoteSourceError(ErrorKind.DATA, "not_found", f"invoice {remote_invoice_id} not found")


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def parse_customer(payload: dict[str, Any]) -> RemoteCustomer:
    persons = tuple(
        RemoteContactPerson(
            contact_person_id=str(person.get("contact_person_id", "")),
            first_name=str(person.get("first_name") or ""),
            last_name=str(person.get("last_name") or ""),
            email=_optional_str(person.get("email")),
            phone=_optional_str(person.get("phone")),
            mobile=_optional_str(person.get("mobile")),
            is_primary_contact=bool(person.get("is_primary_contact", False)),
        )
        for person in payload.get("contact_persons") or []
    )
    return RemoteCustomer(
        remote_id=str(payload["contact_id"]),
        display_name=str(payload.get("contact_name") or ""),
        company_name=str(payload.get("company_name") or ""),
        email=_optional_str(payload.get("email")),
        phone=_optional_str(payload.get("phone")),
        mobile=_optional_str(payload.get("mobile")),
        contact_persons=persons,
        last_modified_at=_parse_timestamp(payload.get("last_modified_time")),
    )


def parse_invoice(payload: dict[str, Any]) -> RemoteInvoice:
    due_date = payload.get("due_date")
    if not due_date:
        raise ValueError(f"invoice {payload.get('invoice_id')} has no due_date")
    return RemoteInvoice(
        remote_id=str(payload["invoice_id"]),
        invoice_number=str(payload.get("invoice_number") or ""),
        remote_customer_id=_optional_str(payload.get("customer_id")),
        total=as_money(payload.get("total")),
        balance=as_money(payload.get("balance")),
        currency=str(payload.get("currency_code") or "USD").upper(),
        due_date=date.fromisoformat(str(due_date)),
        status=str(payload.get("status") or "unpaid"),
        last_modified_at=_parse_timestamp(payload.get("last_modified_time")),
    )


def _parse_page(
    items: list[dict[str, Any]],
    parser: Callable[[dict[str, Any]], RecordT],
    id_key: str,
    has_more_pages: bool,
) -> RemotePage[RecordT]:
    records: list[RecordT] = []
    rejected: list[RejectedRecord] = []
    for item in items:
        try:
            records.append(parser(item))
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            remote_id = item.get(id_key) if isinstance(item, dict) else None
            rejected.append(RejectedRecord(remote_id=_optional_str(remote_id), message=f"unparseable record: {exc!r}"))
    return RemotePage(records=records, has_more_pages=has_more_pages, rejected=rejected)


class HttpRemoteRecordSource:
    """Reads contacts and invoices from an accounting REST API.

    Records that fail to parse are returned as rejected entries so the orchestrator can
    count them per record instead of losing the whole page.
    """

    def __init__(self, *, base_url: str, token_provider: TokenProvider, timeout_seconds: float = 30.0) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._base_url = stripped_url
        self._token_provider = token_provider
        self._timeout_seconds = timeout_seconds

    def list_customers(
        self, owner_id: str, *, page: int, page_size: int, since: datetime | None = None
    ) -> RemotePage[RemoteCustomer]:
        payload = self._get(owner_id, "contacts", self._page_params(page, page_size, since))
        return _parse_page(_records(payload, "contacts"), parse_customer, "contact_id", _has_more_pages(payload))

    def list_invoices(
        self, owner_id: str, *, page: int, page_size: int, since: datetime | None = None
    ) -> RemotePage[RemoteInvoice]:
        payload = self._get(owner_id, "invoices", self._page_params(page, page_size, since))
        return _parse_page(_records(payload, "invoices"), parse_invoice, "invoice_id", _has_more_pages(payload))

    def get_invoice(self, owner_id: str, remote_invoice_id: str) -> RemoteInvoice:
        payload = self._get(owner_id, f"invoices/{urllib.parse.quote(remote_invoice_id, safe='')}", {})
        record = payload.get("invoice")
        if not isinstance(record, dict):
            raise RemoteSourceError(ErrorKind.DATA, "invalid_response", "response has no invoice object")
        try:
            return parse_invoice(record)
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise RemoteSourceError(ErrorKind.DATA, "invalid_record", f"unparseable invoice: {exc!r}") from exc

    @staticmethod
    def _page_params(page: int, page_size: int, since: datetime | None) -> dict[str, str]:
        params = {"page": str(page), "per_page": str(page_size)}
        if since is not None:
            params["last_modified_time"] = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S%z")
        return params

    def _access_token(self, owner_id: str) -> str:
        try:
            return self._token_provider.get_access_token(owner_id)
        except RemoteSourceError:
            raise
        except Exception as exc:
            raise RemoteSourceError(
                ErrorKind.CONFIGURATION, "token_unavailable", f"could not obtain access token: {exc}"
            ) from exc

    def _get(self, owner_id: str, resource: str, params: dict[str, str]) -> dict[str, Any]:
        url = f"{self._base_url}/{resource}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        request = urllib.request.Request(
            url,
            headers={
                "Authorization": f"Bearer {self._access_token(owner_id)}",
                "Accept": "application/json",
            },
            method="GET",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise RemoteSourceError(ErrorKind.DATA, "not_found", f"HTTP 404: {exc.reason}") from exc
            kind = ErrorKind.CONFIGURATION if exc.code in {401, 403} else ErrorKind.TRANSIENT
            raise RemoteSourceError(kind, f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise RemoteSourceError(ErrorKind.TRANSIENT, "connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise RemoteSourceError(ErrorKind.TRANSIENT, "timeout", f"Request timed out: {exc}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RemoteSourceError(ErrorKind.TRANSIENT, "invalid_response", f"Invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise RemoteSourceError(
                ErrorKind.TRANSIENT, "invalid_response", f"expected a JSON object, got {type(payload).__name__}"
            )
        return payload


def _records(payload: dict[str, Any], key: str) -> list[dict[str, Any]]:
    items = payload.get(key) or []
    if not isinstance(items, list):
        raise RemoteSourceError(ErrorKind.TRANSIENT, "invalid_response", f"'{key}' is not a list")
    return items


def _has_more_pages(payload: dict[str, Any]) -> bool:
    context = payload.get("page_context")
    if not isinstance(context, dict):
        return False
    return bool(context.get("has_more_page", False))
