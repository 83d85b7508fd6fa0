from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .policy import ReminderPolicyConfig

_DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def _local_weekday(value: datetime) -> int:
    # 0 = Sunday ... 6 = Saturday
    return value.isoweekday() % 7


def _as_aware(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_within_call_window(config: ReminderPolicyConfig, at: datetime | None = None) -> bool:
    local = _as_aware(at).astimezone(config.zone)
    if _local_weekday(local) not in config.call_days_of_week:
        return False
    local_time = local.timetz().replace(tzinfo=None)
    return config.call_start_time <= local_time < config.call_end_time


def window_closed_reason(config: ReminderPolicyConfig, at: datetime | None = None) -> str | None:
    local = _as_aware(at).astimezone(config.zone)
    weekday = _local_weekday(local)
    if weekday not in config.call_days_of_week:
        return f"calls are not allowed on {_DAY_NAMES[weekday]}"
    local_time = local.timetz().replace(tzinfo=None)
    if not config.call_start_time <= local_time < config.call_end_time:
        return (
            f"local time {local_time.strftime('%H:%M:%S')} is outside the call window "
            f"({config.call_start_time.strftime('%H:%M:%S')} - {config.call_end_time.strftime('%H:%M:%S')})"
        )
    return None


def next_window_opening(config: ReminderPolicyConfig, at: datetime | None = None) -> datetime:
    """Next instant, in UTC, at which the window is open. Returns ``at`` itself when already open."""
    current = _as_aware(at)
    if is_within_call_window(config, current):
        return current.astimezone(timezone.utc)
    local = current.astimezone(config.zone)
    for offset in range(0, 8):
        day = local.date() + timedelta(days=offset)
        opening = datetime.combine(day, config.call_start_time, tzinfo=config.zone)
        if opening <= local:
            continue
        if _local_weekday(opening) in config.call_days_of_week:
            return opening.astimezone(timezone.utc)
    raise ValueError("call window never opens; check call_days_of_week")
