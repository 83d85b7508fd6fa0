from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone

from .models import RemoteCustomer, RemoteInvoice, as_money


def _canonical_hash(payload: dict[str, object]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def _timestamp_marker(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def customer_content_hash(
    customer: RemoteCustomer,
    *,
    resolved_phone: str | None,
    resolved_email: str | None,
) -> str:
    return _canonical_hash(
        {
            "display_name": customer.display_name,
            "company_name": customer.company_name,
            "phone": resolved_phone,
            "email": resolved_email,
            "contact_persons": [person.as_payload() for person in customer.contact_persons],
            "last_modified_at": _timestamp_marker(customer.last_modified_at),
        }
    )


def invoice_content_hash(invoice: RemoteInvoice) -> str:
    return _canonical_hash(
        {
            "invoice_number": invoice.invoice_number,
            "remote_customer_id": invoice.remote_customer_id,
            "total": str(as_money(invoice.total)),
            "balance": str(as_money(invoice.balance)),
            "currency": invoice.currency.upper(),
            "due_date": invoice.due_date.isoformat(),
            "status": invoice.status.strip().lower(),
            "last_modified_at": _timestamp_marker(invoice.last_modified_at),
        }
    )


@dataclass(frozen=True)
class InvoiceChanges:
    due_date_changed: bool = False
    amount_changed: bool = False
    status_changed: bool = False

    @property
    def any(self) -> bool:
        return self.due_date_changed or self.amount_changed or self.status_changed
