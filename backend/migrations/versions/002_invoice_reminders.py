"""Track payment reminders on invoices.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "invoices",
        sa.Column("reminder_count", sa.Integer, nullable=False, server_default="0"),
    )
    op.add_column(
        "invoices",
        sa.Column("last_reminder_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_invoices_overdue_reminders",
        "invoices",
        ["reminder_count", "last_reminder_at"],
        postgresql_where=sa.text("status = 'OVERDUE'"),
    )


def downgrade() -> None:
    op.drop_index("idx_invoices_overdue_reminders", table_name="invoices")
    op.drop_column("invoices", "last_reminder_at")
    op.drop_column("invoices", "reminder_count")
