from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from reminders_web.hashing import InvoiceChanges, customer_content_hash, invoice_content_hash
from reminders_web.models import RemoteContactPerson, RemoteCustomer, RemoteInvoice


def _invoice(**overrides: object) -> RemoteInvoice:
    values: dict[str, object] = {
        "remote_id": "INV-1",
        "invoice_number": "INV-0001",
        "remote_customer_id": "C-1",
        "total": Decimal("100.00"),
        "balance": Decimal("100.00"),
        "currency": "usd",
        "due_date": date(2026, 11, 1),
        "status": "unpaid",
        "last_modified_at": datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return RemoteInvoice(**values)  # type: ignore[arg-type]


def test_invoice_hash_is_stable_and_hex() -> None:
    first = invoice_content_hash(_invoice())
    second = invoice_content_hash(_invoice())
    assert first == second
    assert len(first) == 64
    int(first, 16)


def test_invoice_hash_normalizes_amount_and_currency_representation() -> None:
    assert invoice_content_hash(_invoice(total=Decimal("100"), currency="USD")) == invoice_content_hash(_invoice())


def test_invoice_hash_changes_with_tracked_fields() -> None:
    baseline = invoice_content_hash(_invoice())
    assert invoice_content_hash(_invoice(balance=Decimal("40.00"))) != baseline
    assert invoice_content_hash(_invoice(due_date=date(2026, 11, 2))) != baseline
    assert invoice_content_hash(_invoice(status="paid")) != baseline


def test_customer_hash_tracks_resolved_contact_fields() -> None:
    customer = RemoteCustomer(
        remote_id="C-1",
        display_name="Acme",
        contact_persons=(RemoteContactPerson(contact_person_id="P-1", mobile="+15550000001"),),
    )
    with_phone = customer_content_hash(customer, resolved_phone="+15550000001", resolved_email=None)
    without_phone = customer_content_hash(customer, resolved_phone=None, resolved_email=None)
    assert with_phone != without_phone
    assert with_phone == customer_content_hash(customer, resolved_phone="+15550000001", resolved_email=None)


def test_invoice_changes_any() -> None:
    assert not InvoiceChanges().any
    assert InvoiceChanges(status_changed=True).any
