from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from .cache_store import CacheRepository, CachedInvoice
from .models import PlannedReminder, ReminderType
from .policy import ReminderPolicyConfig
from .reminder_store import ReminderRecord, ReminderRepository

logger = logging.getLogger(__name__)


def scheduled_instant(due_date: date, reminder_type: ReminderType, config: ReminderPolicyConfig) -> datetime:
    """Owner-local start of the call window on the reminder's day, expressed in UTC."""
    local_day = due_date - timedelta(days=reminder_type.days_before_due)
    local_instant = datetime.combine(local_day, config.call_start_time, tzinfo=config.zone)
    return local_instant.astimezone(timezone.utc)


def build_reminder_schedule(due_date: date, config: ReminderPolicyConfig) -> frozenset[PlannedReminder]:
    return frozenset(
        PlannedReminder(
            scheduled_at=scheduled_instant(due_date, reminder_type, config),
            reminder_type=reminder_type,
        )
        for reminder_type in config.enabled_reminder_types()
    )


def _start_of_local_day(now: datetime, config: ReminderPolicyConfig) -> datetime:
    local_now = now.astimezone(config.zone)
    local_midnight = datetime.combine(local_now.date(), time.min, tzinfo=config.zone)
    return local_midnight.astimezone(timezone.utc)


@dataclass(frozen=True)
class ScheduleResult:
    invoice_id: str
    planned: int
    inserted: list[ReminderRecord]
    already_present: int
    in_past: int


class ReminderScheduler:
    """Inserts the policy's reminders that an invoice does not have yet."""

    def __init__(self, *, reminders: ReminderRepository, cache: CacheRepository) -> None:
        self._reminders = reminders
        self._cache = cache

    def schedule_invoice(
        self,
        invoice: CachedInvoice,
        config: ReminderPolicyConfig,
        *,
        now: datetime | None = None,
    ) -> ScheduleResult:
        current_time = now or datetime.now(timezone.utc)
        desired = build_reminder_schedule(invoice.due_date, config)
        existing_types = {record.reminder_type for record in self._reminders.list_for_invoice(invoice.invoice_id)}
        missing = [item for item in desired if item.reminder_type not in existing_types]

        earliest = _start_of_local_day(current_time, config)
        upcoming = [item for item in missing if item.scheduled_at >= earliest]

        inserted = self._reminders.insert_missing(
            owner_id=invoice.owner_id,
            invoice_id=invoice.invoice_id,
            planned=upcoming,
        )
        if inserted:
            self._cache.mark_reminders_created(invoice.invoice_id)
            logger.info(
                "scheduled %s reminders for invoice %s (%s)",
                len(inserted),
                invoice.invoice_number,
                ", ".join(record.reminder_type.label for record in inserted),
            )
        return ScheduleResult(
            invoice_id=invoice.invoice_id,
            planned=len(desired),
            inserted=inserted,
            already_present=len(desired) - len(missing),
            in_past=len(missing) - len(upcoming),
        )
