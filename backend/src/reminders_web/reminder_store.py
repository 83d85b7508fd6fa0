from __future__ import annotations

import json
import logging
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import CachedRecordNotFoundError
from .models import Channel, PlannedReminder, ReminderStatus, ReminderType
from .tables import ReminderRow, create_session_factory

logger = logging.getLogger(__name__)

# Sent to a provider and waiting for its status callback.
_IN_FLIGHT = (ReminderStatus.QUEUED, ReminderStatus.IN_PROGRESS)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    invoice_id: str
    owner_id: str
    reminder_type: ReminderType
    scheduled_at: datetime
    status: ReminderStatus
    attempt_count: int
    last_attempt_at: datetime | None
    channel: Channel | None
    external_id: str | None
    session_ref: str | None
    outcome: dict[str, object] | None
    created_at: datetime
    updated_at: datetime


class ReminderRepository(Protocol):
    def reset(self) -> None: ...

    def insert_missing(
        self, *, owner_id: str, invoice_id: str, planned: Iterable[PlannedReminder]
    ) -> list[ReminderRecord]: ...

    def get(self, reminder_id: str) -> ReminderRecord | None: ...

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]: ...

    def list_due(self, owner_id: str, *, now: datetime) -> list[ReminderRecord]: ...

    def list_due_owner_ids(self, *, now: datetime) -> list[str]: ...

    def list_in_flight_before(self, cutoff: datetime) -> list[ReminderRecord]: ...

    def find_by_external_id(self, external_id: str) -> ReminderRecord | None: ...

    def save(self, record: ReminderRecord) -> ReminderRecord: ...

    def skip_pending_for_invoice(self, invoice_id: str, *, reason: str, now: datetime) -> int: ...


class InMemoryReminderRepository:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._reminders: dict[str, ReminderRecord] = {}
        self._ids_by_invoice: dict[str, list[str]] = {}

    def reset(self) -> None:
        with self._lock:
            self._reminders.clear()
            self._ids_by_invoice.clear()

    def insert_missing(
        self, *, owner_id: str, invoice_id: str, planned: Iterable[PlannedReminder]
    ) -> list[ReminderRecord]:
        with self._lock:
            present = {record.reminder_type for record in self.list_for_invoice(invoice_id)}
            inserted: list[ReminderRecord] = []
            for item in sorted(planned):
                if item.reminder_type in present:
                    continue
                now = _now_utc()
                record = ReminderRecord(
                    reminder_id=f"rem_{secrets.token_hex(8)}",
                    invoice_id=invoice_id,
                    owner_id=owner_id,
                    reminder_type=item.reminder_type,
                    scheduled_at=_coerce_utc(item.scheduled_at),
                    status=ReminderStatus.PENDING,
                    attempt_count=0,
                    last_attempt_at=None,
                    channel=None,
                    external_id=None,
                    session_ref=None,
                    outcome=None,
                    created_at=now,
                    updated_at=now,
                )
                self._reminders[record.reminder_id] = record
                self._ids_by_invoice.setdefault(invoice_id, []).append(record.reminder_id)
                present.add(item.reminder_type)
                inserted.append(record)
            return inserted

    def get(self, reminder_id: str) -> ReminderRecord | None:
        return self._reminders.get(reminder_id)

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._lock:
            return [self._reminders[value] for value in self._ids_by_invoice.get(invoice_id, [])]

    def list_due(self, owner_id: str, *, now: datetime) -> list[ReminderRecord]:
        cutoff = _coerce_utc(now)
        with self._lock:
            due = [
                record
                for record in self._reminders.values()
                if record.owner_id == owner_id
                and record.status is ReminderStatus.PENDING
                and record.scheduled_at <= cutoff
            ]
        return sorted(due, key=lambda record: (record.scheduled_at, record.reminder_id))

    def list_due_owner_ids(self, *, now: datetime) -> list[str]:
        cutoff = _coerce_utc(now)
        with self._lock:
            owners = {
                record.owner_id
                for record in self._reminders.values()
                if record.status is ReminderStatus.PENDING and record.scheduled_at <= cutoff
            }
        return sorted(owners)

    def list_in_flight_before(self, cutoff: datetime) -> list[ReminderRecord]:
        limit = _coerce_utc(cutoff)
        with self._lock:
            stale = [
                record
                for record in self._reminders.values()
                if record.status in _IN_FLIGHT
                and record.last_attempt_at is not None
                and record.last_attempt_at < limit
            ]
        return sorted(stale, key=lambda record: (record.last_attempt_at, record.reminder_id))

    def find_by_external_id(self, external_id: str) -> ReminderRecord | None:
        with self._lock:
            for record in self._reminders.values():
                if record.external_id == external_id:
                    return record
        return None

    def save(self, record: ReminderRecord) -> ReminderRecord:
        with self._lock:
            if record.reminder_id not in self._reminders:
                raise CachedRecordNotFoundError(record.reminder_id)
            saved = replace(record, updated_at=_now_utc())
            self._reminders[record.reminder_id] = saved
            return saved

    def skip_pending_for_invoice(self, invoice_id: str, *, reason: str, now: datetime) -> int:
        skipped = 0
        with self._lock:
            for reminder_id in self._ids_by_invoice.get(invoice_id, []):
                record = self._reminders[reminder_id]
                if record.status is not ReminderStatus.PENDING:
                    continue
                self._reminders[reminder_id] = replace(
                    record,
                    status=ReminderStatus.SKIPPED,
                    outcome={"reason": reason, "recorded_at": _coerce_utc(now).isoformat()},
                    updated_at=_now_utc(),
                )
                skipped += 1
        return skipped


def _record_from_row(row: ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        invoice_id=row.invoice_id,
        owner_id=row.owner_id,
        reminder_type=ReminderType.parse(row.reminder_type),
        scheduled_at=_coerce_utc(row.scheduled_at),
        status=ReminderStatus(row.status),
        attempt_count=row.attempt_count,
        last_attempt_at=None if row.last_attempt_at is None else _coerce_utc(row.last_attempt_at),
        channel=None if row.channel is None else Channel(row.channel),
        external_id=row.external_id,
        session_ref=row.session_ref,
        outcome=None if row.outcome_json is None else json.loads(row.outcome_json),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _dump_outcome(outcome: dict[str, object] | None) -> str | None:
    if outcome is None:
        return None
    return json.dumps(outcome, sort_keys=True, separators=(",", ":"))


class SqlAlchemyReminderRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url, backend_label="REMINDERS_STORE_BACKEND")

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(ReminderRow).delete()

    def insert_missing(
        self, *, owner_id: str, invoice_id: str, planned: Iterable[PlannedReminder]
    ) -> list[ReminderRecord]:
        present = {record.reminder_type for record in self.list_for_invoice(invoice_id)}
        inserted: list[ReminderRecord] = []
        for item in sorted(planned):
            if item.reminder_type in present:
                continue
            now = _now_utc()
            row = ReminderRow(
                reminder_id=f"rem_{secrets.token_hex(8)}",
                invoice_id=invoice_id,
                owner_id=owner_id,
                reminder_type=item.reminder_type.label,
                scheduled_at=_coerce_utc(item.scheduled_at),
                status=ReminderStatus.PENDING.value,
                attempt_count=0,
                last_attempt_at=None,
                channel=None,
                external_id=None,
                session_ref=None,
                outcome_json=None,
                created_at=now,
                updated_at=now,
            )
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(row)
            except IntegrityError:
                # Another run inserted the same (invoice, type) first.
                logger.info(
                    "reminder %s already exists for invoice %s",
                    item.reminder_type.label,
                    invoice_id,
                )
                continue
            present.add(item.reminder_type)
            inserted.append(_record_from_row(row))
        return inserted

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(ReminderRow, reminder_id)
            return None if row is None else _record_from_row(row)

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._session() as session:
            query = (
                select(ReminderRow)
                .where(ReminderRow.invoice_id == invoice_id)
                .order_by(ReminderRow.scheduled_at.asc())
            )
            return [_record_from_row(row) for row in session.execute(query).scalars().all()]

    def list_due(self, owner_id: str, *, now: datetime) -> list[ReminderRecord]:
        with self._session() as session:
            query = (
                select(ReminderRow)
                .where(ReminderRow.owner_id == owner_id)
                .where(ReminderRow.status == ReminderStatus.PENDING.value)
                .where(ReminderRow.scheduled_at <= _coerce_utc(now))
                .order_by(ReminderRow.scheduled_at.asc(), ReminderRow.reminder_id.asc())
            )
            return [_record_from_row(row) for row in session.execute(query).scalars().all()]

    def list_due_owner_ids(self, *, now: datetime) -> list[str]:
        with self._session() as session:
            query = (
                select(ReminderRow.owner_id)
                .where(ReminderRow.status == ReminderStatus.PENDING.value)
                .where(ReminderRow.scheduled_at <= _coerce_utc(now))
                .distinct()
                .order_by(ReminderRow.owner_id.asc())
            )
            return list(session.execute(query).scalars().all())

    def list_in_flight_before(self, cutoff: datetime) -> list[ReminderRecord]:
        with self._session() as session:
            query = (
                select(ReminderRow)
                .where(ReminderRow.status.in_([status.value for status in _IN_FLIGHT]))
                .where(ReminderRow.last_attempt_at < _coerce_utc(cutoff))
                .order_by(ReminderRow.last_attempt_at.asc(), ReminderRow.reminder_id.asc())
            )
            return [_record_from_row(row) for row in session.execute(query).scalars().all()]

    def find_by_external_id(self, external_id: str) -> ReminderRecord | None:
        with self._session() as session:
            query = select(ReminderRow).where(ReminderRow.external_id == external_id)
            row = session.execute(query).scalars().first()
            return None if row is None else _record_from_row(row)

    def save(self, record: ReminderRecord) -> ReminderRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(ReminderRow, record.reminder_id)
                if row is None:
                    raise CachedRecordNotFoundError(record.reminder_id)
                row.scheduled_at = _coerce_utc(record.scheduled_at)
                row.status = record.status.value
                row.attempt_count = record.attempt_count
                row.last_attempt_at = None if record.last_attempt_at is None else _coerce_utc(record.last_attempt_at)
                row.channel = None if record.channel is None else record.channel.value
                row.external_id = record.external_id
                row.session_ref = record.session_ref
                row.outcome_json = _dump_outcome(record.outcome)
                row.updated_at = _now_utc()
                session.flush()
                return _record_from_row(row)

    def skip_pending_for_invoice(self, invoice_id: str, *, reason: str, now: datetime) -> int:
        outcome = _dump_outcome({"reason": reason, "recorded_at": _coerce_utc(now).isoformat()})
        with self._session() as session:
            with session.begin():
                query = (
                    select(ReminderRow)
                    .where(ReminderRow.invoice_id == invoice_id)
                    .where(ReminderRow.status == ReminderStatus.PENDING.value)
                )
                rows = session.execute(query).scalars().all()
                for row in rows:
                    row.status = ReminderStatus.SKIPPED.value
                    row.outcome_json = outcome
                    row.updated_at = _now_utc()
                return len(rows)


def create_reminder_repository(*, backend: str, database_url: str) -> ReminderRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRepository(database_url)
    return InMemoryReminderRepository()
