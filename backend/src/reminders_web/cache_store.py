from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from .hashing import InvoiceChanges
from .models import InvoiceStatus, as_money
from .tables import CustomerCacheRow, InvoiceCacheRow, SyncStateRow, create_session_factory


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return None if value is None else _coerce_utc(value)


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class CustomerSnapshot:
    """Resolved view of a remote customer, ready to be cached."""

    remote_customer_id: str
    display_name: str
    company_name: str
    primary_phone: str | None
    primary_email: str | None
    primary_contact_person_id: str | None
    contact_persons_json: str
    remote_last_modified_at: datetime | None
    content_hash: str


@dataclass(frozen=True)
class InvoiceSnapshot:
    remote_invoice_id: str
    remote_customer_id: str | None
    invoice_number: str
    total: Decimal
    balance: Decimal
    currency: str
    due_date: date
    status: InvoiceStatus
    remote_last_modified_at: datetime | None
    content_hash: str


@dataclass(frozen=True)
class CachedCustomer:
    customer_id: str
    owner_id: str
    remote_customer_id: str
    display_name: str
    company_name: str
    primary_phone: str | None
    primary_email: str | None
    primary_contact_person_id: str | None
    contact_persons_json: str
    remote_last_modified_at: datetime | None
    local_last_synced_at: datetime
    content_hash: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class CachedInvoice:
    invoice_id: str
    owner_id: str
    remote_invoice_id: str
    customer_id: str | None
    remote_customer_id: str | None
    invoice_number: str
    total: Decimal
    balance: Decimal
    currency: str
    due_date: date
    status: InvoiceStatus
    content_hash: str
    reminders_created: bool
    remote_last_modified_at: datetime | None
    local_last_synced_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class CustomerUpsertResult:
    outcome: UpsertOutcome
    customer: CachedCustomer


@dataclass(frozen=True)
class InvoiceUpsertResult:
    outcome: UpsertOutcome
    invoice: CachedInvoice
    changes: InvoiceChanges = InvoiceChanges()


@dataclass(frozen=True)
class SyncState:
    owner_id: str
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    last_customer_sync_at: datetime | None = None

    @property
    def last_sync_at(self) -> datetime | None:
        candidates = [value for value in (self.last_full_sync_at, self.last_incremental_sync_at) if value]
        return max(candidates) if candidates else None


def _detect_changes(previous: CachedInvoice, snapshot: InvoiceSnapshot) -> InvoiceChanges:
    return InvoiceChanges(
        due_date_changed=previous.due_date != snapshot.due_date,
        amount_changed=(
            as_money(previous.total) != as_money(snapshot.total)
            or as_money(previous.balance) != as_money(snapshot.balance)
        ),
        status_changed=previous.status != snapshot.status,
    )


class CacheRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_customer(
        self, owner_id: str, snapshot: CustomerSnapshot, *, now: datetime | None = None
    ) -> CustomerUpsertResult: ...

    def upsert_invoice(
        self, owner_id: str, snapshot: InvoiceSnapshot, *, now: datetime | None = None
    ) -> InvoiceUpsertResult: ...

    def find_customer(self, owner_id: str, remote_customer_id: str) -> CachedCustomer | None: ...

    def find_invoice(self, owner_id: str, remote_invoice_id: str) -> CachedInvoice | None: ...

    def get_customer(self, customer_id: str) -> CachedCustomer | None: ...

    def get_invoice(self, invoice_id: str) -> CachedInvoice | None: ...

    def link_invoice_to_customer(self, owner_id: str, remote_invoice_id: str) -> bool: ...

    def list_unlinked_invoices(self, owner_id: str) -> list[CachedInvoice]: ...

    def list_invoices_awaiting_reminders(self, owner_id: str) -> list[CachedInvoice]: ...

    def mark_reminders_created(self, invoice_id: str) -> None: ...

    def get_sync_state(self, owner_id: str) -> SyncState: ...

    def record_sync(
        self, owner_id: str, *, synced_at: datetime, full: bool, customers_synced: bool
    ) -> SyncState: ...


class InMemoryCacheRepository:
    def __init__(self) -> None:
        self._customers: dict[str, CachedCustomer] = {}
        self._customer_ids: dict[tuple[str, str], str] = {}
        self._invoices: dict[str, CachedInvoice] = {}
        self._invoice_ids: dict[tuple[str, str], str] = {}
        self._sync_state: dict[str, SyncState] = {}

    def reset(self) -> None:
        self._customers.clear()
        self._customer_ids.clear()
        self._invoices.clear()
        self._invoice_ids.clear()
        self._sync_state.clear()

    def upsert_customer(
        self, owner_id: str, snapshot: CustomerSnapshot, *, now: datetime | None = None
    ) -> CustomerUpsertResult:
        current_time = _coerce_utc(now or _now_utc())
        key = (owner_id, snapshot.remote_customer_id)
        existing_id = self._customer_ids.get(key)
        if existing_id is None:
            customer = CachedCustomer(
                customer_id=f"cus_{secrets.token_hex(8)}",
                owner_id=owner_id,
                remote_customer_id=snapshot.remote_customer_id,
                display_name=snapshot.display_name,
                company_name=snapshot.company_name,
                primary_phone=snapshot.primary_phone,
                primary_email=snapshot.primary_email,
                primary_contact_person_id=snapshot.primary_contact_person_id,
                contact_persons_json=snapshot.contact_persons_json,
                remote_last_modified_at=_coerce_optional_utc(snapshot.remote_last_modified_at),
                local_last_synced_at=current_time,
                content_hash=snapshot.content_hash,
                created_at=current_time,
                updated_at=current_time,
            )
            self._customers[customer.customer_id] = customer
            self._customer_ids[key] = customer.customer_id
            return CustomerUpsertResult(outcome=UpsertOutcome.INSERTED, customer=customer)

        existing = self._customers[existing_id]
        if existing.content_hash == snapshot.content_hash:
            touched = replace(existing, local_last_synced_at=current_time)
            self._customers[existing_id] = touched
            return CustomerUpsertResult(outcome=UpsertOutcome.UNCHANGED, customer=touched)

        updated = replace(
            existing,
            display_name=snapshot.display_name,
            company_name=snapshot.company_name,
            primary_phone=snapshot.primary_phone,
            primary_email=snapshot.primary_email,
            primary_contact_person_id=snapshot.primary_contact_person_id,
            contact_persons_json=snapshot.contact_persons_json,
            remote_last_modified_at=_coerce_optional_utc(snapshot.remote_last_modified_at),
            local_last_synced_at=current_time,
            content_hash=snapshot.content_hash,
            updated_at=current_time,
        )
        self._customers[existing_id] = updated
        return CustomerUpsertResult(outcome=UpsertOutcome.UPDATED, customer=updated)

    def upsert_invoice(
        self, owner_id: str, snapshot: InvoiceSnapshot, *, now: datetime | None = None
    ) -> InvoiceUpsertResult:
        current_time = _coerce_utc(now or _now_utc())
        key = (owner_id, snapshot.remote_invoice_id)
        existing_id = self._invoice_ids.get(key)
        if existing_id is None:
            invoice = CachedInvoice(
                invoice_id=f"inv_{secrets.token_hex(8)}",
                owner_id=owner_id,
                remote_invoice_id=snapshot.remote_invoice_id,
                customer_id=None,
                remote_customer_id=snapshot.remote_customer_id,
                invoice_number=snapshot.invoice_number,
                total=as_money(snapshot.total),
                balance=as_money(snapshot.balance),
                currency=snapshot.currency,
                due_date=snapshot.due_date,
                status=snapshot.status,
                content_hash=snapshot.content_hash,
                reminders_created=False,
                remote_last_modified_at=_coerce_optional_utc(snapshot.remote_last_modified_at),
                local_last_synced_at=current_time,
                created_at=current_time,
                updated_at=current_time,
            )
            self._invoices[invoice.invoice_id] = invoice
            self._invoice_ids[key] = invoice.invoice_id
            return InvoiceUpsertResult(outcome=UpsertOutcome.INSERTED, invoice=invoice)

        existing = self._invoices[existing_id]
        if existing.content_hash == snapshot.content_hash:
            touched = replace(existing, local_last_synced_at=current_time)
            self._invoices[existing_id] = touched
            return InvoiceUpsertResult(outcome=UpsertOutcome.UNCHANGED, invoice=touched)

        changes = _detect_changes(existing, snapshot)
        customer_id = existing.customer_id
        if existing.remote_customer_id != snapshot.remote_customer_id:
            customer_id = None
        updated = replace(
            existing,
            customer_id=customer_id,
            remote_customer_id=snapshot.remote_customer_id,
            invoice_number=snapshot.invoice_number,
            total=as_money(snapshot.total),
            balance=as_money(snapshot.balance),
            currency=snapshot.currency,
            due_date=snapshot.due_date,
            status=snapshot.status,
            content_hash=snapshot.content_hash,
            remote_last_modified_at=_coerce_optional_utc(snapshot.remote_last_modified_at),
            local_last_synced_at=current_time,
            updated_at=current_time,
        )
        self._invoices[existing_id] = updated
        return InvoiceUpsertResult(outcome=UpsertOutcome.UPDATED, invoice=updated, changes=changes)

    def find_customer(self, owner_id: str, remote_customer_id: str) -> CachedCustomer | None:
        customer_id = self._customer_ids.get((owner_id, remote_customer_id))
        return None if customer_id is None else self._customers[customer_id]

    def find_invoice(self, owner_id: str, remote_invoice_id: str) -> CachedInvoice | None:
        invoice_id = self._invoice_ids.get((owner_id, remote_invoice_id))
        return None if invoice_id is None else self._invoices[invoice_id]

    def get_customer(self, customer_id: str) -> CachedCustomer | None:
        return self._customers.get(customer_id)

    def get_invoice(self, invoice_id: str) -> CachedInvoice | None:
        return self._invoices.get(invoice_id)

    def link_invoice_to_customer(self, owner_id: str, remote_invoice_id: str) -> bool:
        invoice = self.find_invoice(owner_id, remote_invoice_id)
        if invoice is None or not invoice.remote_customer_id:
            return False
        customer = self.find_customer(owner_id, invoice.remote_customer_id)
        if customer is None:
            return False
        if invoice.customer_id != customer.customer_id:
            self._invoices[invoice.invoice_id] = replace(invoice, customer_id=customer.customer_id)
        return True

    def list_unlinked_invoices(self, owner_id: str) -> list[CachedInvoice]:
        return [
            invoice
            for invoice in self._invoices.values()
            if invoice.owner_id == owner_id and invoice.customer_id is None and invoice.remote_customer_id
        ]

    def list_invoices_awaiting_reminders(self, owner_id: str) -> list[CachedInvoice]:
        items = [
            invoice
            for invoice in self._invoices.values()
            if invoice.owner_id == owner_id and not invoice.reminders_created and invoice.status.collectible
        ]
        return sorted(items, key=lambda invoice: (invoice.due_date, invoice.invoice_id))

    def mark_reminders_created(self, invoice_id: str) -> None:
        invoice = self._invoices.get(invoice_id)
        if invoice is None or invoice.reminders_created:
            return
        self._invoices[invoice_id] = replace(invoice, reminders_created=True, updated_at=_now_utc())

    def get_sync_state(self, owner_id: str) -> SyncState:
        return self._sync_state.get(owner_id) or SyncState(owner_id=owner_id)

    def record_sync(
        self, owner_id: str, *, synced_at: datetime, full: bool, customers_synced: bool
    ) -> SyncState:
        state = self.get_sync_state(owner_id)
        normalized = _coerce_utc(synced_at)
        if full:
            state = replace(state, last_full_sync_at=normalized)
        else:
            state = replace(state, last_incremental_sync_at=normalized)
        if customers_synced:
            state = replace(state, last_customer_sync_at=normalized)
        self._sync_state[owner_id] = state
        return state


def _customer_from_row(row: CustomerCacheRow) -> CachedCustomer:
    return CachedCustomer(
        customer_id=row.customer_id,
        owner_id=row.owner_id,
        remote_customer_id=row.remote_customer_id,
        display_name=row.display_name,
        company_name=row.company_name,
        primary_phone=row.primary_phone,
        primary_email=row.primary_email,
        primary_contact_person_id=row.primary_contact_person_id,
        contact_persons_json=row.contact_persons_json,
        remote_last_modified_at=_coerce_optional_utc(row.remote_last_modified_at),
        local_last_synced_at=_coerce_utc(row.local_last_synced_at),
        content_hash=row.content_hash,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _invoice_from_row(row: InvoiceCacheRow) -> CachedInvoice:
    return CachedInvoice(
        invoice_id=row.invoice_id,
        owner_id=row.owner_id,
        remote_invoice_id=row.remote_invoice_id,
        customer_id=row.customer_id,
        remote_customer_id=row.remote_customer_id,
        invoice_number=row.invoice_number,
        total=as_money(row.total),
        balance=as_money(row.balance),
        currency=row.currency,
        due_date=row.due_date,
        status=InvoiceStatus(row.status),
        content_hash=row.content_hash,
        reminders_created=row.reminders_created,
        remote_last_modified_at=_coerce_optional_utc(row.remote_last_modified_at),
        local_last_synced_at=_coerce_utc(row.local_last_synced_at),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _sync_state_from_row(row: SyncStateRow) -> SyncState:
    return SyncState(
        owner_id=row.owner_id,
        last_full_sync_at=_coerce_optional_utc(row.last_full_sync_at),
        last_incremental_sync_at=_coerce_optional_utc(row.last_incremental_sync_at),
        last_customer_sync_at=_coerce_optional_utc(row.last_customer_sync_at),
    )


class SqlAlchemyCacheRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url, backend_label="REMINDERS_STORE_BACKEND")

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(SyncStateRow).delete()
                session.query(InvoiceCacheRow).delete()
                session.query(CustomerCacheRow).delete()

    def _customer_row(self, session: Session, owner_id: str, remote_customer_id: str) -> CustomerCacheRow | None:
        query = (
            select(CustomerCacheRow)
            .where(CustomerCacheRow.owner_id == owner_id)
            .where(CustomerCacheRow.remote_customer_id == remote_customer_id)
        )
        return session.execute(query).scalars().first()

    def _invoice_row(self, session: Session, owner_id: str, remote_invoice_id: str) -> InvoiceCacheRow | None:
        query = (
            select(InvoiceCacheRow)
            .where(InvoiceCacheRow.owner_id == owner_id)
            .where(InvoiceCacheRow.remote_invoice_id == remote_invoice_id)
        )
        return session.execute(query).scalars().first()

    def upsert_customer(
        self, owner_id: str, snapshot: CustomerSnapshot, *, now: datetime | None = None
    ) -> CustomerUpsertResult:
        current_time = _coerce_utc(now or _now_utc())
        with self._session() as session:
            with session.begin():
                row = self._customer_row(session, owner_id, snapshot.remote_customer_id)
                if row is None:
                    row = CustomerCacheRow(
                        customer_id=f"cus_{secrets.token_hex(8)}",
                        owner_id=owner_id,
                        remote_customer_id=snapshot.remote_customer_id,
                        display_name=snapshot.display_name,
                        company_name=snapshot.company_name,
                        primary_phone=snapshot.primary_phone,
                        primary_email=snapshot.primary_email,
                        primary_contact_person_id=snapshot.primary_contact_person_id,
                        contact_persons_json=snapshot.contact_persons_json,
                        remote_last_modified_at=_coerce_optional_utc(snapshot.remote_last_modified_at),
                        local_last_synced_at=current_time,
                        content_hash=snapshot.content_hash,
                        created_at=current_time,
                        updated_at=current_time,
                    )
                    session.add(row)
                    outcome = UpsertOutcome.INSERTED
                elif row.content_hash == snapshot.content_hash:
                    row.local_last_synced_at = current_time
                    outcome = UpsertOutcome.UNCHANGED
                else:
                    row.display_name = snapshot.display_name
                    row.company_name = snapshot.company_name
                    row.primary_phone = snapshot.primary_phone
                    row.primary_email = snapshot.primary_email
                    row.primary_contact_person_id = snapshot.primary_contact_person_id
                    row.contact_persons_json = snapshot.contact_persons_json
                    row.remote_last_modified_at = _coerce_optional_utc(snapshot.remote_last_modified_at)
                    row.local_last_synced_at = current_time
                    row.content_hash = snapshot.content_hash
                    row.updated_at = current_time
                    outcome = UpsertOutcome.UPDATED
                session.flush()
                return CustomerUpsertResult(outcome=outcome, customer=_customer_from_row(row))

    def upsert_invoice(
        self, owner_id: str, snapshot: InvoiceSnapshot, *, now: datetime | None = None
    ) -> InvoiceUpsertResult:
        current_time = _coerce_utc(now or _now_utc())
        with self._session() as session:
            with session.begin():
                row = self._invoice_row(session, owner_id, snapshot.remote_invoice_id)
                changes = InvoiceChanges()
                if row is None:
                    row = InvoiceCacheRow(
                        invoice_id=f"inv_{secrets.token_hex(8)}",
                        owner_id=owner_id,
                        remote_invoice_id=snapshot.remote_invoice_id,
                        customer_id=None,
                        remote_customer_id=snapshot.remote_customer_id,
                        invoice_number=snapshot.invoice_number,
                        total=as_money(snapshot.total),
                        balance=as_money(snapshot.balance),
                        currency=snapshot.currency,
                        due_date=snapshot.due_date,
                        status=snapshot.status.value,
                        content_hash=snapshot.content_hash,
                        reminders_created=False,
                        remote_last_modified_at=_coerce_optional_utc(snapshot.remote_last_modified_at),
                        local_last_synced_at=current_time,
                        created_at=current_time,
                        updated_at=current_time,
                    )
                    session.add(row)
                    outcome = UpsertOutcome.INSERTED
                elif row.content_hash == snapshot.content_hash:
                    row.local_last_synced_at = current_time
                    outcome = UpsertOutcome.UNCHANGED
                else:
                    changes = _detect_changes(_invoice_from_row(row), snapshot)
                    if row.remote_customer_id != snapshot.remote_customer_id:
                        row.customer_id = None
                    row.remote_customer_id = snapshot.remote_customer_id
                    row.invoice_number = snapshot.invoice_number
                    row.total = as_money(snapshot.total)
                    row.balance = as_money(snapshot.balance)
                    row.currency = snapshot.currency
                    row.due_date = snapshot.due_date
                    row.status = snapshot.status.value
                    row.content_hash = snapshot.content_hash
                    row.remote_last_modified_at = _coerce_optional_utc(snapshot.remote_last_modified_at)
                    row.local_last_synced_at = current_time
                    row.updated_at = current_time
                    outcome = UpsertOutcome.UPDATED
                session.flush()
                return InvoiceUpsertResult(outcome=outcome, invoice=_invoice_from_row(row), changes=changes)

    def find_customer(self, owner_id: str, remote_customer_id: str) -> CachedCustomer | None:
        with self._session() as session:
            row = self._customer_row(session, owner_id, remote_customer_id)
            return None if row is None else _customer_from_row(row)

    def find_invoice(self, owner_id: str, remote_invoice_id: str) -> CachedInvoice | None:
        with self._session() as session:
            row = self._invoice_row(session, owner_id, remote_invoice_id)
            return None if row is None else _invoice_from_row(row)

    def get_customer(self, customer_id: str) -> CachedCustomer | None:
        with self._session() as session:
            row = session.get(CustomerCacheRow, customer_id)
            return None if row is None else _customer_from_row(row)

    def get_invoice(self, invoice_id: str) -> CachedInvoice | None:
        with self._session() as session:
            row = session.get(InvoiceCacheRow, invoice_id)
            return None if row is None else _invoice_from_row(row)

    def link_invoice_to_customer(self, owner_id: str, remote_invoice_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                invoice = self._invoice_row(session, owner_id, remote_invoice_id)
                if invoice is None or not invoice.remote_customer_id:
                    return False
                customer = self._customer_row(session, owner_id, invoice.remote_customer_id)
                if customer is None:
                    return False
                invoice.customer_id = customer.customer_id
                return True

    def list_unlinked_invoices(self, owner_id: str) -> list[CachedInvoice]:
        with self._session() as session:
            query = (
                select(InvoiceCacheRow)
                .where(InvoiceCacheRow.owner_id == owner_id)
                .where(InvoiceCacheRow.customer_id.is_(None))
                .where(InvoiceCacheRow.remote_customer_id.is_not(None))
            )
            return [_invoice_from_row(row) for row in session.execute(query).scalars().all()]

    def list_invoices_awaiting_reminders(self, owner_id: str) -> list[CachedInvoice]:
        collectible = [status.value for status in InvoiceStatus if status.collectible]
        with self._session() as session:
            query = (
                select(InvoiceCacheRow)
                .where(InvoiceCacheRow.owner_id == owner_id)
                .where(InvoiceCacheRow.reminders_created.is_(False))
                .where(InvoiceCacheRow.status.in_(collectible))
                .order_by(InvoiceCacheRow.due_date.asc(), InvoiceCacheRow.invoice_id.asc())
            )
            return [_invoice_from_row(row) for row in session.execute(query).scalars().all()]

    def mark_reminders_created(self, invoice_id: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(InvoiceCacheRow, invoice_id)
                if row is None or row.reminders_created:
                    return
                row.reminders_created = True
                row.updated_at = _now_utc()

    def get_sync_state(self, owner_id: str) -> SyncState:
        with self._session() as session:
            row = session.get(SyncStateRow, owner_id)
            return SyncState(owner_id=owner_id) if row is None else _sync_state_from_row(row)

    def record_sync(
        self, owner_id: str, *, synced_at: datetime, full: bool, customers_synced: bool
    ) -> SyncState:
        normalized = _coerce_utc(synced_at)
        with self._session() as session:
            with session.begin():
                row = session.get(SyncStateRow, owner_id)
                if row is None:
                    row = SyncStateRow(owner_id=owner_id, updated_at=normalized)
                    session.add(row)
                if full:
                    row.last_full_sync_at = normalized
                else:
                    row.last_incremental_sync_at = normalized
                if customers_synced:
                    row.last_customer_sync_at = normalized
                row.updated_at = _now_utc()
                session.flush()
                return _sync_state_from_row(row)


def create_cache_repository(*, backend: str, database_url: str) -> CacheRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyCacheRepository(database_url)
    return InMemoryCacheRepository()
