from __future__ import annotations

from decimal import Decimal

import pytest

from reminders_web.models import InvoiceStatus, ReminderStatus, ReminderType, as_money


@pytest.mark.parametrize(
    ("reminder_type", "label"),
    [
        (ReminderType(7), "7_days_before"),
        (ReminderType(1), "1_day_before"),
        (ReminderType(0), "on_due_date"),
        (ReminderType(-1), "1_day_overdue"),
        (ReminderType(-3), "3_days_overdue"),
        (ReminderType(10, custom=True), "custom_10_days_before"),
        (ReminderType(-1, custom=True), "custom_1_days_overdue"),
    ],
)
def test_reminder_type_labels_round_trip(reminder_type: ReminderType, label: str) -> None:
    assert reminder_type.label == label
    assert ReminderType.parse(label) == reminder_type


def test_reminder_type_rejects_out_of_range_offsets() -> None:
    with pytest.raises(ValueError):
        ReminderType(2)
    with pytest.raises(ValueError):
        ReminderType(31, custom=True)
    with pytest.raises(ValueError):
        ReminderType.parse("2_days_before")
    with pytest.raises(ValueError):
        ReminderType.parse("tomorrow")


def test_overdue_flag() -> None:
    assert ReminderType(-7).is_overdue
    assert not ReminderType(0).is_overdue


def test_terminal_statuses() -> None:
    assert ReminderStatus.COMPLETED.is_terminal
    assert ReminderStatus.SKIPPED.is_terminal
    assert not ReminderStatus.QUEUED.is_terminal
    assert not ReminderStatus.PENDING.is_terminal


def test_invoice_status_from_remote() -> None:
    assert InvoiceStatus.from_remote("Paid") is InvoiceStatus.PAID
    assert InvoiceStatus.from_remote("voided") is InvoiceStatus.VOID
    assert InvoiceStatus.from_remote("partially_paid").collectible
    assert InvoiceStatus.from_remote("overdue") is InvoiceStatus.UNPAID
    assert not InvoiceStatus.VOID.collectible


def test_as_money_rounds_half_up() -> None:
    assert as_money("10.005") == Decimal("10.01")
    assert as_money(None) == Decimal("0.00")
