from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .models import Channel, ReminderStatus
from .reminder_store import ReminderRecord, ReminderRepository

logger = logging.getLogger(__name__)

SMS_STATUS_MAP: dict[str, ReminderStatus] = {
    "accepted": ReminderStatus.IN_PROGRESS,
    "queued": ReminderStatus.IN_PROGRESS,
    "sending": ReminderStatus.IN_PROGRESS,
    "scheduled": ReminderStatus.IN_PROGRESS,
    "sent": ReminderStatus.COMPLETED,
    "delivered": ReminderStatus.COMPLETED,
    "failed": ReminderStatus.FAILED,
    "undelivered": ReminderStatus.FAILED,
}

VOICE_STATUS_MAP: dict[str, ReminderStatus] = {
    "initiated": ReminderStatus.IN_PROGRESS,
    "ringing": ReminderStatus.IN_PROGRESS,
    "answered": ReminderStatus.IN_PROGRESS,
    "in_progress": ReminderStatus.IN_PROGRESS,
    "completed": ReminderStatus.COMPLETED,
    "answered_complete": ReminderStatus.COMPLETED,
    "failed": ReminderStatus.FAILED,
    "no_answer": ReminderStatus.FAILED,
    "busy": ReminderStatus.FAILED,
    "canceled": ReminderStatus.FAILED,
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_event(value: str) -> str:
    return value.strip().lower().replace("-", "_").replace(" ", "_")


def map_provider_status(channel: Channel, event: str) -> ReminderStatus | None:
    vocabulary = SMS_STATUS_MAP if channel is Channel.SMS else VOICE_STATUS_MAP
    normalized = _normalize_event(event)
    if normalized == "cancelled":
        normalized = "canceled"
    return vocabulary.get(normalized)


@dataclass(frozen=True)
class ReconcileOutcome:
    accepted: bool
    reminder: ReminderRecord | None = None
    changed: bool = False
    reason: str | None = None

    @classmethod
    def dropped(cls, reason: str) -> ReconcileOutcome:
        return cls(accepted=False, reason=reason)


class DeliveryReconciler:
    """Applies provider status callbacks to the reminder they belong to."""

    def __init__(self, *, reminders: ReminderRepository) -> None:
        self._reminders = reminders

    def apply(
        self,
        channel: Channel,
        external_id: str,
        event: str,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> ReconcileOutcome:
        reported_at = now or _now_utc()
        reminder = self._reminders.find_by_external_id(external_id)
        if reminder is None:
            logger.warning("%s status %s for unknown id %s dropped", channel.value, event, external_id)
            return ReconcileOutcome.dropped("unknown_external_id")

        target = map_provider_status(channel, event)
        if target is None:
            logger.warning("unrecognized %s status %s for reminder %s", channel.value, event, reminder.reminder_id)
            return ReconcileOutcome(accepted=True, reminder=reminder, reason="unrecognized_status")

        if reminder.status.is_terminal and not target.is_terminal:
            logger.info(
                "ignoring %s for reminder %s already %s", event, reminder.reminder_id, reminder.status.value
            )
            return ReconcileOutcome(accepted=True, reminder=reminder, reason="stale_status")

        if reminder.status is target:
            if target.is_terminal:
                reminder = self._reminders.save(replace(reminder, last_attempt_at=reported_at))
            return ReconcileOutcome(accepted=True, reminder=reminder)

        outcome = reminder.outcome
        if target is ReminderStatus.FAILED:
            outcome = {
                "code": error_code or _normalize_event(event),
                "message": error_message or f"provider reported {event}",
                "reported_at": reported_at.isoformat(),
            }
        updated = self._reminders.save(
            replace(reminder, status=target, last_attempt_at=reported_at, outcome=outcome)
        )
        logger.info(
            "reminder %s %s -> %s via %s callback",
            reminder.reminder_id,
            reminder.status.value,
            target.value,
            channel.value,
        )
        return ReconcileOutcome(accepted=True, reminder=updated, changed=True)
