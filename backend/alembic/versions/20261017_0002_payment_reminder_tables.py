"""Create payment reminder and reminder policy tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("reminder_type", sa.String(length=64), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=True),
        sa.Column("external_id", sa.String(length=256), nullable=True),
        sa.Column("session_ref", sa.String(length=256), nullable=True),
        sa.Column("outcome_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices_cache.invoice_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("reminder_id"),
        sa.UniqueConstraint("invoice_id", "reminder_type", name="uq_payment_reminders_invoice_type"),
    )
    op.create_index("ix_payment_reminders_invoice_id", "payment_reminders", ["invoice_id"], unique=False)
    op.create_index("ix_payment_reminders_owner_id", "payment_reminders", ["owner_id"], unique=False)
    op.create_index("ix_payment_reminders_scheduled_at", "payment_reminders", ["scheduled_at"], unique=False)
    op.create_index("ix_payment_reminders_status", "payment_reminders", ["status"], unique=False)
    op.create_index("ix_payment_reminders_external_id", "payment_reminders", ["external_id"], unique=False)

    op.create_table(
        "reminder_policy_configs",
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("config_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )


def downgrade() -> None:
    op.drop_table("reminder_policy_configs")

    op.drop_index("ix_payment_reminders_external_id", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_status", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_scheduled_at", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_owner_id", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_invoice_id", table_name="payment_reminders")
    op.drop_table("payment_reminders")
