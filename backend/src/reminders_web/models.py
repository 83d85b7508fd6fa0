from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field, field_validator

CENTS = Decimal("0.01")


def as_money(value: float | int | str | Decimal | None) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class ReminderStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in {ReminderStatus.COMPLETED, ReminderStatus.FAILED, ReminderStatus.SKIPPED}


class Channel(str, Enum):
    SMS = "sms"
    VOICE = "voice"


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    VOID = "void"

    @property
    def collectible(self) -> bool:
        return self in {InvoiceStatus.UNPAID, InvoiceStatus.PARTIALLY_PAID}

    @classmethod
    def from_remote(cls, value: str | None) -> InvoiceStatus:
        normalized = (value or "").strip().lower()
        if normalized == "paid":
            return cls.PAID
        if normalized in {"void", "voided"}:
            return cls.VOID
        if normalized in {"partially_paid", "partial"}:
            return cls.PARTIALLY_PAID
        return cls.UNPAID


STANDARD_REMINDER_DAYS: tuple[int, ...] = (30, 15, 7, 5, 3, 1, 0, -1, -3, -7)
CUSTOM_OFFSET_LIMIT = 30

_LABEL_PATTERN = re.compile(r"^(?P<custom>custom_)?(?:(?P<days>\d+)_days?_(?P<side>before|overdue)|on_due_date)$")


@dataclass(frozen=True, order=True)
class ReminderType:
    """One slot of an invoice's reminder schedule.

    ``days_before_due`` is positive before the due date, zero on it and negative once overdue.
    Standard slots are limited to ``STANDARD_REMINDER_DAYS``; custom slots to +/- 30 days.
    """

    days_before_due: int
    custom: bool = False

    def __post_init__(self) -> None:
        if self.custom:
            if abs(self.days_before_due) > CUSTOM_OFFSET_LIMIT:
                raise ValueError(f"custom reminder offset out of range: {self.days_before_due}")
        elif self.days_before_due not in STANDARD_REMINDER_DAYS:
            raise ValueError(f"not a standard reminder offset: {self.days_before_due}")

    @property
    def label(self) -> str:
        days = self.days_before_due
        if days == 0:
            base = "on_due_date"
        elif self.custom:
            side = "before" if days > 0 else "overdue"
            base = f"{abs(days)}_days_{side}"
        else:
            unit = "day" if abs(days) == 1 else "days"
            side = "before" if days > 0 else "overdue"
            base = f"{abs(days)}_{unit}_{side}"
        return f"custom_{base}" if self.custom else base

    @property
    def is_overdue(self) -> bool:
        return self.days_before_due < 0

    @classmethod
    def parse(cls, label: str) -> ReminderType:
        match = _LABEL_PATTERN.match(label.strip())
        if match is None:
            raise ValueError(f"unknown reminder type: {label}")
        custom = match.group("custom") is not None
        if match.group("days") is None:
            return cls(0, custom=custom)
        days = int(match.group("days"))
        if match.group("side") == "overdue":
            days = -days
        parsed = cls(days, custom=custom)
        if parsed.label != label.strip():
            raise ValueError(f"unknown reminder type: {label}")
        return parsed

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class RemoteContactPerson:
    contact_person_id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    is_primary_contact: bool = False

    def as_payload(self) -> dict[str, object]:
        return {
            "contact_person_id": self.contact_person_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "mobile": self.mobile,
            "is_primary_contact": self.is_primary_contact,
        }


@dataclass(frozen=True)
class RemoteCustomer:
    remote_id: str
    display_name: str
    company_name: str = ""
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    contact_persons: tuple[RemoteContactPerson, ...] = ()
    last_modified_at: datetime | None = None


@dataclass(frozen=True)
class RemoteInvoice:
    remote_id: str
    invoice_number: str
    remote_customer_id: str | None
    total: Decimal
    balance: Decimal
    currency: str
    due_date: date
    status: str
    last_modified_at: datetime | None = None


RecordT = TypeVar("RecordT")


@dataclass(frozen=True)
class RejectedRecord:
    remote_id: str | None
    message: str


@dataclass(frozen=True)
class RemotePage(Generic[RecordT]):
    records: list[RecordT] = field(default_factory=list)
    has_more_pages: bool = False
    # Records the source returned but could not be parsed.
    rejected: list[RejectedRecord] = field(default_factory=list)


@dataclass(frozen=True, order=True)
class PlannedReminder:
    scheduled_at: datetime
    reminder_type: ReminderType


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class SyncErrorItem(BaseModel):
    entity: Literal["customer", "invoice", "page", "reminders", "owner"]
    remote_id: str | None = None
    page: int | None = None
    kind: str
    message: str


class EntitySyncCounts(BaseModel):
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: list[SyncErrorItem] = Field(default_factory=list)
    pages_completed: int = 0
    aborted: bool = False


class OwnerSyncSummary(BaseModel):
    owner_id: str
    customers: EntitySyncCounts
    invoices: EntitySyncCounts
    invoices_linked: int = 0
    reminders_created: int = 0
    reminders_cancelled: int = 0
    policy_missing: bool = False
    incremental: bool = False
    error: SyncErrorItem | None = None


class SyncRunRequest(BaseModel):
    owner_ids: list[str] = Field(min_length=1)
    full: bool = False

    @field_validator("owner_ids")
    @classmethod
    def _strip_owner_ids(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item.strip()]
        if not cleaned:
            raise ValueError("owner_ids must contain at least one non-empty id")
        return cleaned


class SyncRunResponse(BaseModel):
    items: list[OwnerSyncSummary]


class DispatchRunRequest(BaseModel):
    owner_ids: list[str] | None = None
    now_override: datetime | None = None


class OwnerDispatchSummary(BaseModel):
    owner_id: str
    evaluated: int = 0
    dispatched: int = 0
    deferred: int = 0
    retried: int = 0
    timed_out: int = 0
    skipped: int = 0
    failed: int = 0
    errors: int = 0
    skip_reasons: dict[str, int] = Field(default_factory=dict)
    config_missing: bool = False


class DispatchRunResponse(BaseModel):
    run_at: datetime
    owners: list[OwnerDispatchSummary]
    owners_skipped: list[str] = Field(default_factory=list)
    evaluated: int = 0
    dispatched: int = 0
    deferred: int = 0
    skipped: int = 0
    failed: int = 0
    # In-flight reminders failed because no status callback arrived in time.
    expired: int = 0


class VoiceStatusCallback(BaseModel):
    call_id: str = Field(min_length=1)
    event: str = Field(min_length=1)
    error_code: str | None = None
    error_message: str | None = None


class CallbackResponse(BaseModel):
    accepted: bool
    reminder_id: str | None = None
    status: ReminderStatus | None = None
    changed: bool = False


class WindowStatusResponse(BaseModel):
    owner_id: str
    timezone: str
    open: bool
    closed_reason: str | None = None
    next_opening_at: datetime | None = None
