from __future__ import annotations

from .models import Channel, ReminderType

DEFAULT_SMS_MIN_DAYS_BEFORE = 5


def select_channel(
    reminder_type: ReminderType,
    *,
    smart_mode: bool,
    manual_channel: Channel,
    sms_min_days_before: int = DEFAULT_SMS_MIN_DAYS_BEFORE,
) -> Channel:
    """Pick SMS for early reminders and voice as the due date nears or passes.

    With smart mode off the owner's manual channel always wins. Reminders on or after the
    due date are always voice, whatever the threshold.
    """
    if not smart_mode:
        return manual_channel
    days = reminder_type.days_before_due
    if days > 0 and days >= sms_min_days_before:
        return Channel.SMS
    return Channel.VOICE
