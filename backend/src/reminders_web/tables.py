from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


class ReminderEngineBase(DeclarativeBase):
    pass


class CustomerCacheRow(ReminderEngineBase):
    __tablename__ = "customers_cache"
    __table_args__ = (UniqueConstraint("owner_id", "remote_customer_id", name="uq_customers_cache_owner_remote"),)

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    remote_customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    company_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    primary_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    primary_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    primary_contact_person_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    contact_persons_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    remote_last_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    local_last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class InvoiceCacheRow(ReminderEngineBase):
    __tablename__ = "invoices_cache"
    __table_args__ = (UniqueConstraint("owner_id", "remote_invoice_id", name="uq_invoices_cache_owner_remote"),)

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    remote_invoice_id: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("customers_cache.customer_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    remote_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(128), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    reminders_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    remote_last_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    local_last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReminderRow(ReminderEngineBase):
    __tablename__ = "payment_reminders"
    __table_args__ = (UniqueConstraint("invoice_id", "reminder_type", name="uq_payment_reminders_invoice_type"),)

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("invoices_cache.invoice_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    reminder_type: Mapped[str] = mapped_column(String(64), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    channel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    session_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    outcome_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PolicyConfigRow(ReminderEngineBase):
    __tablename__ = "reminder_policy_configs"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    config_json: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncStateRow(ReminderEngineBase):
    __tablename__ = "sync_state"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    last_full_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_incremental_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_customer_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def create_session_factory(database_url: str, *, backend_label: str) -> sessionmaker:
    if not database_url:
        raise RuntimeError(f"DATABASE_URL is required for {backend_label}=postgres")
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    if database_url.startswith("sqlite"):
        ReminderEngineBase.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False, future=True)
