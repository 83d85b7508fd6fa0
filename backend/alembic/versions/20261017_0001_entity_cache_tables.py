"""Create customer and invoice cache tables plus per-owner sync state."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "customers_cache",
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("remote_customer_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("company_name", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("primary_phone", sa.String(length=64), nullable=True),
        sa.Column("primary_email", sa.String(length=256), nullable=True),
        sa.Column("primary_contact_person_id", sa.String(length=128), nullable=True),
        sa.Column("contact_persons_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("remote_last_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("local_last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("customer_id"),
        sa.UniqueConstraint("owner_id", "remote_customer_id", name="uq_customers_cache_owner_remote"),
    )
    op.create_index("ix_customers_cache_owner_id", "customers_cache", ["owner_id"], unique=False)

    op.create_table(
        "invoices_cache",
        sa.Column("invoice_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("remote_invoice_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=True),
        sa.Column("remote_customer_id", sa.String(length=128), nullable=True),
        sa.Column("invoice_number", sa.String(length=128), nullable=False),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("balance", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("reminders_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("remote_last_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("local_last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers_cache.customer_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("invoice_id"),
        sa.UniqueConstraint("owner_id", "remote_invoice_id", name="uq_invoices_cache_owner_remote"),
    )
    op.create_index("ix_invoices_cache_owner_id", "invoices_cache", ["owner_id"], unique=False)
    op.create_index("ix_invoices_cache_customer_id", "invoices_cache", ["customer_id"], unique=False)
    op.create_index("ix_invoices_cache_due_date", "invoices_cache", ["due_date"], unique=False)

    op.create_table(
        "sync_state",
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("last_full_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_incremental_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_customer_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )


def downgrade() -> None:
    op.drop_table("sync_state")

    op.drop_index("ix_invoices_cache_due_date", table_name="invoices_cache")
    op.drop_index("ix_invoices_cache_customer_id", table_name="invoices_cache")
    op.drop_index("ix_invoices_cache_owner_id", table_name="invoices_cache")
    op.drop_table("invoices_cache")

    op.drop_index("ix_customers_cache_owner_id", table_name="customers_cache")
    op.drop_table("customers_cache")
