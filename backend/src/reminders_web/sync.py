from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, TypeVar

from .cache_store import CacheRepository, CustomerSnapshot, InvoiceSnapshot, UpsertOutcome
from .contacts import primary_contact_person_id, resolve_email, resolve_phone
from .errors import ReminderEngineError, RemoteSourceError
from .hashing import customer_content_hash, invoice_content_hash
from .models import (
    EntitySyncCounts,
    InvoiceStatus,
    OwnerSyncSummary,
    RemoteCustomer,
    RemoteInvoice,
    RemotePage,
    SyncErrorItem,
    as_money,
)
from .policy import PolicyConfigStore
from .remote_source import RemoteRecordSource
from .reminder_store import ReminderRepository
from .schedule import ReminderScheduler

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 200
MAX_PAGES = 1000
NOT_COLLECTIBLE_REASON = "invoice_not_collectible"

RecordT = TypeVar("RecordT")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def customer_snapshot(record: RemoteCustomer) -> CustomerSnapshot:
    phone = resolve_phone(record)
    email = resolve_email(record)
    persons = [person.as_payload() for person in record.contact_persons]
    return CustomerSnapshot(
        remote_customer_id=record.remote_id,
        display_name=record.display_name,
        company_name=record.company_name,
        primary_phone=phone,
        primary_email=email,
        primary_contact_person_id=primary_contact_person_id(record),
        contact_persons_json=json.dumps(persons, sort_keys=True, separators=(",", ":")),
        remote_last_modified_at=record.last_modified_at,
        content_hash=customer_content_hash(record, resolved_phone=phone, resolved_email=email),
    )


def invoice_snapshot(record: RemoteInvoice) -> InvoiceSnapshot:
    return InvoiceSnapshot(
        remote_invoice_id=record.remote_id,
        remote_customer_id=record.remote_customer_id,
        invoice_number=record.invoice_number,
        total=as_money(record.total),
        balance=as_money(record.balance),
        currency=record.currency.upper(),
        due_date=record.due_date,
        status=InvoiceStatus.from_remote(record.status),
        remote_last_modified_at=record.last_modified_at,
        content_hash=invoice_content_hash(record),
    )


@dataclass
class _InvoicePassStats:
    linked: int = 0
    cancelled: int = 0


class SyncOrchestrator:
    """Mirrors one owner's remote customers and invoices into the local cache.

    Each record is upserted in its own transaction, so an interrupted run leaves everything
    it already processed committed and the next run picks up the rest.
    """

    def __init__(
        self,
        *,
        source: RemoteRecordSource,
        cache: CacheRepository,
        reminders: ReminderRepository,
        policies: PolicyConfigStore,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._source = source
        self._cache = cache
        self._reminders = reminders
        self._policies = policies
        self._page_size = page_size
        self._scheduler = ReminderScheduler(reminders=reminders, cache=cache)

    def _paginate(
        self,
        entity: str,
        fetch: Callable[[int], RemotePage[RecordT]],
        handle: Callable[[RecordT], UpsertOutcome],
        remote_id_of: Callable[[RecordT], str],
    ) -> EntitySyncCounts:
        counts = EntitySyncCounts()
        page = 1
        while page <= MAX_PAGES:
            try:
                result = fetch(page)
            except RemoteSourceError as exc:
                if page == 1:
                    raise
                logger.warning("%s sync aborted at page %s: %s", entity, page, exc.message)
                counts.errors.append(
                    SyncErrorItem(entity="page", page=page, kind=exc.kind.value, message=exc.message)
                )
                counts.aborted = True
                break

            counts.fetched += len(result.records) + len(result.rejected)
            for rejected in result.rejected:
                counts.errors.append(
                    SyncErrorItem(entity=entity, remote_id=rejected.remote_id, kind="data", message=rejected.message)
                )
            for record in result.records:
                try:
                    outcome = handle(record)
                except Exception as exc:
                    logger.warning("failed to sync %s %s: %s", entity, remote_id_of(record), exc)
                    counts.errors.append(
                        SyncErrorItem(
                            entity=entity,
                            remote_id=remote_id_of(record),
                            kind=exc.kind.value if isinstance(exc, ReminderEngineError) else "data",
                            message=str(exc),
                        )
                    )
                    continue
                if outcome is UpsertOutcome.INSERTED:
                    counts.inserted += 1
                elif outcome is UpsertOutcome.UPDATED:
                    counts.updated += 1
                else:
                    counts.unchanged += 1

            counts.pages_completed += 1
            if not result.has_more_pages:
                break
            page += 1
        return counts

    def sync_customers(
        self, owner_id: str, *, since: datetime | None = None, now: datetime | None = None
    ) -> EntitySyncCounts:
        current_time = now or _now_utc()

        def handle(record: RemoteCustomer) -> UpsertOutcome:
            snapshot = customer_snapshot(record)
            result = self._cache.upsert_customer(owner_id, snapshot, now=current_time)
            if result.outcome is not UpsertOutcome.UNCHANGED and snapshot.primary_phone is None:
                logger.info("customer %s has no usable phone number", record.remote_id)
            return result.outcome

        counts = self._paginate(
            "customer",
            lambda page: self._source.list_customers(owner_id, page=page, page_size=self._page_size, since=since),
            handle,
            lambda record: record.remote_id,
        )
        logger.info(
            "customer sync for %s: fetched=%s inserted=%s updated=%s unchanged=%s errors=%s",
            owner_id,
            counts.fetched,
            counts.inserted,
            counts.updated,
            counts.unchanged,
            len(counts.errors),
        )
        return counts

    def sync_invoices(
        self, owner_id: str, *, since: datetime | None = None, now: datetime | None = None
    ) -> EntitySyncCounts:
        counts, _ = self._sync_invoices(owner_id, since=since, now=now or _now_utc())
        return counts

    def _sync_invoices(
        self, owner_id: str, *, since: datetime | None, now: datetime
    ) -> tuple[EntitySyncCounts, _InvoicePassStats]:
        stats = _InvoicePassStats()

        def handle(record: RemoteInvoice) -> UpsertOutcome:
            result = self._cache.upsert_invoice(owner_id, invoice_snapshot(record), now=now)
            invoice = result.invoice
            if invoice.customer_id is None and invoice.remote_customer_id:
                if self._cache.link_invoice_to_customer(owner_id, invoice.remote_invoice_id):
                    stats.linked += 1
                else:
                    logger.warning(
                        "invoice %s references customer %s which is not cached yet",
                        invoice.invoice_number,
                        invoice.remote_customer_id,
                    )
            if result.changes.status_changed and not invoice.status.collectible:
                cancelled = self._reminders.skip_pending_for_invoice(
                    invoice.invoice_id, reason=NOT_COLLECTIBLE_REASON, now=now
                )
                stats.cancelled += cancelled
                if cancelled:
                    logger.info(
                        "invoice %s is %s; skipped %s pending reminders",
                        invoice.invoice_number,
                        invoice.status.value,
                        cancelled,
                    )
            if result.changes.due_date_changed and invoice.reminders_created:
                logger.warning(
                    "invoice %s due date changed to %s; existing reminders are kept as scheduled",
                    invoice.invoice_number,
                    invoice.due_date.isoformat(),
                )
            return result.outcome

        counts = self._paginate(
            "invoice",
            lambda page: self._source.list_invoices(owner_id, page=page, page_size=self._page_size, since=since),
            handle,
            lambda record: record.remote_id,
        )
        logger.info(
            "invoice sync for %s: fetched=%s inserted=%s updated=%s unchanged=%s errors=%s",
            owner_id,
            counts.fetched,
            counts.inserted,
            counts.updated,
            counts.unchanged,
            len(counts.errors),
        )
        return counts, stats

    def _relink_invoices(self, owner_id: str) -> int:
        linked = 0
        for invoice in self._cache.list_unlinked_invoices(owner_id):
            if self._cache.link_invoice_to_customer(owner_id, invoice.remote_invoice_id):
                linked += 1
        return linked

    def _schedule_reminders(self, owner_id: str, summary: OwnerSyncSummary, *, now: datetime) -> None:
        config = self._policies.get_config(owner_id)
        if config is None:
            summary.policy_missing = True
            logger.warning("owner %s has no reminder policy; reminders not scheduled", owner_id)
            return
        for invoice in self._cache.list_invoices_awaiting_reminders(owner_id):
            try:
                result = self._scheduler.schedule_invoice(invoice, config, now=now)
            except Exception as exc:
                logger.warning("failed to schedule reminders for invoice %s: %s", invoice.invoice_number, exc)
                summary.invoices.errors.append(
                    SyncErrorItem(
                        entity="reminders",
                        remote_id=invoice.remote_invoice_id,
                        kind="data",
                        message=str(exc),
                    )
                )
                continue
            summary.reminders_created += len(result.inserted)

    def sync_owner(self, owner_id: str, *, full: bool = False, now: datetime | None = None) -> OwnerSyncSummary:
        """Customers first, then invoices, then reminder scheduling for invoices that need it."""
        started_at = now or _now_utc()
        since = None if full else self._cache.get_sync_state(owner_id).last_sync_at
        summary = OwnerSyncSummary(
            owner_id=owner_id,
            customers=EntitySyncCounts(),
            invoices=EntitySyncCounts(),
            incremental=since is not None,
        )
        try:
            summary.customers = self.sync_customers(owner_id, since=since, now=started_at)
            summary.invoices, stats = self._sync_invoices(owner_id, since=since, now=started_at)
        except RemoteSourceError as exc:
            logger.error("sync for %s could not reach the remote source: %s", owner_id, exc.message)
            summary.error = SyncErrorItem(entity="page", page=1, kind=exc.kind.value, message=exc.message)
            return summary

        summary.invoices_linked = stats.linked + self._relink_invoices(owner_id)
        summary.reminders_cancelled = stats.cancelled
        self._schedule_reminders(owner_id, summary, now=started_at)

        unsynced = _unsynced_records(summary)
        if unsynced:
            # The watermark stays put so the next incremental pass fetches these records again.
            logger.warning(
                "sync state for %s not advanced; %s records were not stored", owner_id, unsynced
            )
        else:
            self._cache.record_sync(owner_id, synced_at=started_at, full=since is None, customers_synced=True)
        return summary

    def sync_owners(self, owner_ids: list[str], *, full: bool = False, now: datetime | None = None) -> list[OwnerSyncSummary]:
        summaries: list[OwnerSyncSummary] = []
        for owner_id in owner_ids:
            try:
                summaries.append(self.sync_owner(owner_id, full=full, now=now))
            except Exception as exc:
                logger.exception("sync for owner %s failed", owner_id)
                summaries.append(
                    OwnerSyncSummary(
                        owner_id=owner_id,
                        customers=EntitySyncCounts(),
                        invoices=EntitySyncCounts(),
                        error=SyncErrorItem(
                            entity="owner",
                            kind=exc.kind.value if isinstance(exc, ReminderEngineError) else "unexpected",
                            message=str(exc),
                        ),
                    )
                )
        return summaries


def _unsynced_records(summary: OwnerSyncSummary) -> int:
    """Count page and record failures; reminder scheduling errors are retried from the cache."""
    return sum(
        1
        for item in (*summary.customers.errors, *summary.invoices.errors)
        if item.entity in {"customer", "invoice", "page"}
    )
