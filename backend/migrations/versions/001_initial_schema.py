"""Initial invoicing schema: credentials, customers, invoices, payments, webhooks, audit

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- API credentials ---
    op.create_table(
        "api_credentials",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("key_prefix", sa.String(16), nullable=False),
        sa.Column("secret", sa.String(128), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("key_hash", name="uq_api_credentials_key_hash"),
    )

    # --- Organizations ---
    op.create_table(
        "organizations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("org_number", sa.String(20), nullable=False),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("country", sa.String(2), nullable=False, server_default="NO"),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("bank_account", sa.String(34), nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("org_number", name="uq_organizations_org_number"),
    )
    op.create_index(
        "idx_organizations_default", "organizations", ["is_default"],
        unique=True, postgresql_where=sa.text("is_default"),
    )

    # --- Customers ---
    op.execute("CREATE SEQUENCE customer_number_seq START WITH 10001")
    op.create_table(
        "customers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("customer_number", sa.Integer, nullable=False, server_default=sa.text("nextval('customer_number_seq')")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("org_number", sa.String(20), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("country", sa.String(2), nullable=False, server_default="NO"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("customer_number", name="uq_customers_customer_number"),
        sa.UniqueConstraint("email", name="uq_customers_email"),
    )
    op.execute("CREATE INDEX idx_customers_email_lower ON customers (lower(email))")

    # --- Invoice number counters ---
    op.create_table(
        "invoice_number_sequences",
        sa.Column("year", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("last_value", sa.Integer, nullable=False, server_default="0"),
    )

    # --- Invoices ---
    op.create_table(
        "invoices",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("invoice_number", sa.String(20), nullable=False),
        sa.Column("kid", sa.String(25), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("vat_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="NOK"),
        sa.Column("source", sa.String(255), nullable=True),
        sa.Column("source_order_id", sa.String(255), nullable=True),
        sa.Column("customer_id", UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("organization_id", UUID(as_uuid=True), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("api_credential_id", UUID(as_uuid=True), sa.ForeignKey("api_credentials.id"), nullable=True),
        sa.Column("issue_date", sa.Date, nullable=False),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("callback_url", sa.Text, nullable=True),
        sa.Column("internal_reference", sa.String(255), nullable=True),
        sa.Column("preferred_payment_method", sa.String(50), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("pdf_url", sa.Text, nullable=True),
        sa.Column("credit_note_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column("credited_invoice_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        sa.UniqueConstraint("kid", name="uq_invoices_kid"),
        sa.UniqueConstraint("source", "source_order_id", name="uq_invoices_source_order"),
        sa.CheckConstraint("total_amount = subtotal + vat_amount", name="ck_invoices_totals"),
    )
    op.create_index("idx_invoices_source_order_id", "invoices", ["source_order_id"])
    op.create_index("idx_invoices_status_due", "invoices", ["status", "due_date"])
    op.create_index("idx_invoices_created", "invoices", [sa.text("created_at DESC")])

    op.create_table(
        "invoice_lines",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("invoice_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer, nullable=False, server_default="1"),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("vat_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("vat_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("product_code", sa.String(100), nullable=True),
        sa.Column("unit", sa.String(20), nullable=True),
    )
    op.create_index("idx_invoice_lines_invoice", "invoice_lines", ["invoice_id", "position"])

    op.create_table(
        "invoice_attachments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("invoice_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_url", sa.Text, nullable=False),
        sa.Column("mime_type", sa.String(100), nullable=True),
    )
    op.create_index("idx_invoice_attachments_invoice", "invoice_attachments", ["invoice_id"])

    # --- Payments (append-only) ---
    op.create_table(
        "payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("invoice_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("method", sa.String(50), nullable=False),
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column("provider_ref", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="COMPLETED"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])

    # --- Email log ---
    op.create_table(
        "email_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("invoice_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True),
        sa.Column("recipient", sa.String(320), nullable=False),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False, server_default="SMTP"),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_email_logs_invoice", "email_logs", ["invoice_id", "created_at"])

    # --- Webhooks ---
    op.create_table(
        "webhook_endpoints",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("source", sa.String(255), nullable=False),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("secret", sa.String(128), nullable=False),
        sa.Column("events", ARRAY(sa.String(50)), nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_webhook_endpoints_source", "webhook_endpoints", ["source"])

    op.create_table(
        "outgoing_webhooks",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("event_id", UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("target_url", sa.Text, nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("invoice_id", UUID(as_uuid=True), nullable=True),
        sa.Column("endpoint_id", UUID(as_uuid=True), sa.ForeignKey("webhook_endpoints.id"), nullable=True),
        sa.Column("api_credential_id", UUID(as_uuid=True), sa.ForeignKey("api_credentials.id"), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("event_id", name="uq_outgoing_webhooks_event_id"),
    )
    op.create_index(
        "idx_outgoing_webhooks_retry", "outgoing_webhooks", ["status", "updated_at"],
        postgresql_where=sa.text("status <> 'SENT'"),
    )
    op.create_index("idx_outgoing_webhooks_invoice", "outgoing_webhooks", ["invoice_id"])

    # --- Audit events (partitioned by month) ---
    op.execute("""
        CREATE TABLE audit_events (
            id UUID DEFAULT gen_random_uuid(),
            action VARCHAR(100) NOT NULL,
            resource_type VARCHAR(100) NOT NULL,
            resource_id UUID,
            invoice_id UUID,
            api_credential_id UUID,
            details JSONB,
            correlation_id VARCHAR(255),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (id, created_at)
        ) PARTITION BY RANGE (created_at)
    """)

    # Current month + next 2; the scheduler keeps creating ahead
    op.execute("""
        CREATE TABLE audit_events_2026_10 PARTITION OF audit_events
            FOR VALUES FROM ('2026-10-01') TO ('2026-11-01')
    """)
    op.execute("""
        CREATE TABLE audit_events_2026_11 PARTITION OF audit_events
            FOR VALUES FROM ('2026-11-01') TO ('2026-12-01')
    """)
    op.execute("""
        CREATE TABLE audit_events_2026_12 PARTITION OF audit_events
            FOR VALUES FROM ('2026-12-01') TO ('2027-01-01')
    """)

    op.execute("CREATE INDEX idx_audit_events_invoice ON audit_events(invoice_id, created_at)")
    op.execute("CREATE INDEX idx_audit_events_action ON audit_events(action)")
    op.execute("CREATE INDEX idx_audit_events_resource ON audit_events(resource_type, resource_id)")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS audit_events CASCADE")
    op.drop_table("outgoing_webhooks")
    op.drop_table("webhook_endpoints")
    op.drop_table("email_logs")
    op.drop_table("payments")
    op.drop_table("invoice_attachments")
    op.drop_table("invoice_lines")
    op.drop_table("invoices")
    op.drop_table("invoice_number_sequences")
    op.drop_table("customers")
    op.execute("DROP SEQUENCE IF EXISTS customer_number_seq")
    op.drop_table("organizations")
    op.drop_table("api_credentials")
