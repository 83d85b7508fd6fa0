from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from reminders_web.cache_store import (
    CacheRepository,
    CustomerSnapshot,
    InMemoryCacheRepository,
    InvoiceSnapshot,
    SqlAlchemyCacheRepository,
    UpsertOutcome,
)
from reminders_web.models import InvoiceStatus

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def cache(request: pytest.FixtureRequest, tmp_path: Path) -> CacheRepository:
    if request.param == "sqlite":
        return SqlAlchemyCacheRepository(f"sqlite:///{tmp_path / 'cache.db'}")
    return InMemoryCacheRepository()


def _customer(remote_id: str = "C-1", *, phone: str | None = "+15550100123", content_hash: str = "c1") -> CustomerSnapshot:
    return CustomerSnapshot(
        remote_customer_id=remote_id,
        display_name="Acme Corp",
        company_name="Acme",
        primary_phone=phone,
        primary_email="ap@acme.test",
        primary_contact_person_id=None,
        contact_persons_json="[]",
        remote_last_modified_at=None,
        content_hash=content_hash,
    )


def _invoice(
    remote_id: str = "INV-1",
    *,
    remote_customer_id: str | None = "C-1",
    due_date: date = date(2026, 11, 1),
    status: InvoiceStatus = InvoiceStatus.UNPAID,
    balance: str = "100.00",
    content_hash: str = "i1",
) -> InvoiceSnapshot:
    return InvoiceSnapshot(
        remote_invoice_id=remote_id,
        remote_customer_id=remote_customer_id,
        invoice_number=f"#{remote_id}",
        total=Decimal("100.00"),
        balance=Decimal(balance),
        currency="USD",
        due_date=due_date,
        status=status,
        remote_last_modified_at=None,
        content_hash=content_hash,
    )


def test_customer_upsert_reports_insert_unchanged_and_update(cache: CacheRepository) -> None:
    inserted = cache.upsert_customer("owner-1", _customer(), now=NOW)
    assert inserted.outcome is UpsertOutcome.INSERTED

    unchanged = cache.upsert_customer("owner-1", _customer(), now=NOW)
    assert unchanged.outcome is UpsertOutcome.UNCHANGED
    assert unchanged.customer.customer_id == inserted.customer.customer_id

    updated = cache.upsert_customer("owner-1", _customer(phone="+15550100999", content_hash="c2"), now=NOW)
    assert updated.outcome is UpsertOutcome.UPDATED
    assert updated.customer.primary_phone == "+15550100999"
    assert cache.get_customer(inserted.customer.customer_id).primary_phone == "+15550100999"  # type: ignore[union-attr]


def test_remote_ids_are_scoped_per_owner(cache: CacheRepository) -> None:
    first = cache.upsert_customer("owner-1", _customer(), now=NOW)
    second = cache.upsert_customer("owner-2", _customer(), now=NOW)
    assert second.outcome is UpsertOutcome.INSERTED
    assert first.customer.customer_id != second.customer.customer_id


def test_invoice_update_reports_field_changes(cache: CacheRepository) -> None:
    cache.upsert_invoice("owner-1", _invoice(), now=NOW)
    result = cache.upsert_invoice(
        "owner-1",
        _invoice(due_date=date(2026, 11, 5), status=InvoiceStatus.PAID, balance="0.00", content_hash="i2"),
        now=NOW,
    )
    assert result.outcome is UpsertOutcome.UPDATED
    assert result.changes.due_date_changed
    assert result.changes.status_changed
    assert result.changes.amount_changed
    assert result.invoice.balance == Decimal("0.00")


def test_invoice_links_once_customer_is_cached(cache: CacheRepository) -> None:
    cache.upsert_invoice("owner-1", _invoice(), now=NOW)
    assert not cache.link_invoice_to_customer("owner-1", "INV-1")
    assert [invoice.remote_invoice_id for invoice in cache.list_unlinked_invoices("owner-1")] == ["INV-1"]

    customer = cache.upsert_customer("owner-1", _customer(), now=NOW).customer
    assert cache.link_invoice_to_customer("owner-1", "INV-1")
    linked = cache.find_invoice("owner-1", "INV-1")
    assert linked is not None
    assert linked.customer_id == customer.customer_id
    assert cache.list_unlinked_invoices("owner-1") == []


def test_changing_remote_customer_clears_the_link(cache: CacheRepository) -> None:
    cache.upsert_customer("owner-1", _customer(), now=NOW)
    cache.upsert_invoice("owner-1", _invoice(), now=NOW)
    cache.link_invoice_to_customer("owner-1", "INV-1")

    result = cache.upsert_invoice("owner-1", _invoice(remote_customer_id="C-2", content_hash="i2"), now=NOW)
    assert result.invoice.customer_id is None
    assert result.invoice.remote_customer_id == "C-2"


def test_awaiting_reminders_excludes_scheduled_and_uncollectible(cache: CacheRepository) -> None:
    first = cache.upsert_invoice("owner-1", _invoice("INV-1", due_date=date(2026, 11, 3)), now=NOW).invoice
    cache.upsert_invoice("owner-1", _invoice("INV-2", due_date=date(2026, 11, 1)), now=NOW)
    cache.upsert_invoice("owner-1", _invoice("INV-3", status=InvoiceStatus.VOID), now=NOW)

    awaiting = cache.list_invoices_awaiting_reminders("owner-1")
    assert [invoice.remote_invoice_id for invoice in awaiting] == ["INV-2", "INV-1"]

    cache.mark_reminders_created(first.invoice_id)
    assert [invoice.remote_invoice_id for invoice in cache.list_invoices_awaiting_reminders("owner-1")] == ["INV-2"]


def test_sync_state_tracks_full_and_incremental_runs(cache: CacheRepository) -> None:
    assert cache.get_sync_state("owner-1").last_sync_at is None

    cache.record_sync("owner-1", synced_at=NOW, full=True, customers_synced=True)
    later = datetime(2026, 10, 17, 13, 0, tzinfo=timezone.utc)
    state = cache.record_sync("owner-1", synced_at=later, full=False, customers_synced=False)

    assert state.last_full_sync_at == NOW
    assert state.last_incremental_sync_at == later
    assert state.last_customer_sync_at == NOW
    assert cache.get_sync_state("owner-1").last_sync_at == later
