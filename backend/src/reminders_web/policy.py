from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from .errors import PolicyConfigMissingError
from .models import CUSTOM_OFFSET_LIMIT, Channel, ReminderType
from .tables import PolicyConfigRow, create_session_factory

# Flag name -> days before due (negative once overdue).
STANDARD_OFFSET_FLAGS: dict[str, int] = {
    "reminder_30_days_before": 30,
    "reminder_15_days_before": 15,
    "reminder_7_days_before": 7,
    "reminder_5_days_before": 5,
    "reminder_3_days_before": 3,
    "reminder_1_day_before": 1,
    "reminder_on_due_date": 0,
    "reminder_1_day_overdue": -1,
    "reminder_3_days_overdue": -3,
    "reminder_7_days_overdue": -7,
}

SUNDAY = 0
SATURDAY = 6


class ReminderPolicyConfig(BaseModel):
    """Per-owner reminder policy, authored outside the engine and read here only."""

    reminder_30_days_before: bool = False
    reminder_15_days_before: bool = False
    reminder_7_days_before: bool = True
    reminder_5_days_before: bool = False
    reminder_3_days_before: bool = True
    reminder_1_day_before: bool = True
    reminder_on_due_date: bool = True
    reminder_1_day_overdue: bool = True
    reminder_3_days_overdue: bool = True
    reminder_7_days_overdue: bool = False
    custom_reminder_days: list[int] = Field(default_factory=list)
    timezone: str = "UTC"
    call_start_time: time = time(9, 0)
    call_end_time: time = time(18, 0)
    # 0 = Sunday ... 6 = Saturday.
    call_days_of_week: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    max_retry_attempts: int = Field(default=3, ge=0, le=10)
    retry_delay_hours: int = Field(default=2, ge=1, le=48)
    smart_mode: bool = True
    manual_channel: Channel = Channel.VOICE

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown IANA timezone: {value}") from exc
        return normalized

    @field_validator("custom_reminder_days")
    @classmethod
    def _validate_custom_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if day == 0 or abs(day) > CUSTOM_OFFSET_LIMIT:
                raise ValueError(
                    f"custom reminder days must be between -{CUSTOM_OFFSET_LIMIT} and {CUSTOM_OFFSET_LIMIT}, excluding 0"
                )
        return sorted(set(value), reverse=True)

    @field_validator("call_days_of_week")
    @classmethod
    def _validate_days(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("at least one call day must be selected")
        for day in value:
            if day < SUNDAY or day > SATURDAY:
                raise ValueError("call days must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def _validate_window(self) -> "ReminderPolicyConfig":
        if self.call_start_time >= self.call_end_time:
            raise ValueError("call_start_time must be before call_end_time")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def enabled_reminder_types(self) -> list[ReminderType]:
        types = [
            ReminderType(days)
            for flag, days in STANDARD_OFFSET_FLAGS.items()
            if getattr(self, flag)
        ]
        types.extend(ReminderType(days, custom=True) for days in self.custom_reminder_days)
        return types


class PolicyConfigStore(Protocol):
    def reset(self) -> None: ...

    def put_config(self, owner_id: str, config: ReminderPolicyConfig) -> None: ...

    def get_config(self, owner_id: str) -> ReminderPolicyConfig | None: ...


def require_config(store: PolicyConfigStore, owner_id: str) -> ReminderPolicyConfig:
    config = store.get_config(owner_id)
    if config is None:
        raise PolicyConfigMissingError(owner_id)
    return config


class InMemoryPolicyConfigStore:
    def __init__(self, configs: dict[str, ReminderPolicyConfig] | None = None) -> None:
        self._configs: dict[str, ReminderPolicyConfig] = dict(configs or {})

    def reset(self) -> None:
        self._configs.clear()

    def put_config(self, owner_id: str, config: ReminderPolicyConfig) -> None:
        self._configs[owner_id] = config

    def get_config(self, owner_id: str) -> ReminderPolicyConfig | None:
        return self._configs.get(owner_id)


class SqlAlchemyPolicyConfigStore:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url, backend_label="REMINDERS_STORE_BACKEND")

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(PolicyConfigRow).delete()

    def put_config(self, owner_id: str, config: ReminderPolicyConfig) -> None:
        payload = config.model_dump_json()
        with self._session() as session:
            with session.begin():
                row = session.get(PolicyConfigRow, owner_id)
                if row is None:
                    session.add(
                        PolicyConfigRow(
                            owner_id=owner_id,
                            config_json=payload,
                            updated_at=datetime.now(timezone.utc),
                        )
                    )
                else:
                    row.config_json = payload
                    row.updated_at = datetime.now(timezone.utc)

    def get_config(self, owner_id: str) -> ReminderPolicyConfig | None:
        with self._session() as session:
            row = session.get(PolicyConfigRow, owner_id)
            if row is None:
                return None
            return ReminderPolicyConfig.model_validate_json(row.config_json)


def create_policy_config_store(*, backend: str, database_url: str) -> PolicyConfigStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyPolicyConfigStore(database_url)
    return InMemoryPolicyConfigStore()
