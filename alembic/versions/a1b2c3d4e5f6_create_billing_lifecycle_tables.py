"""Create billing lifecycle tables.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "tenant_subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("plan_name", sa.String(120), nullable=False),
        sa.Column("plan_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column(
            "billing_interval",
            sa.Enum("weekly", "monthly", "yearly", name="billinginterval"),
            nullable=True,
        ),
        sa.Column(
            "status",
            sa.Enum("active", "suspended", "cancelled", name="subscriptionstatus"),
            nullable=True,
        ),
        sa.Column("customer_id", sa.String(120), nullable=True),
        sa.Column("payment_provider", sa.String(40), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspension_reason", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_tenant_subscriptions_tenant_id", "tenant_subscriptions", ["tenant_id"]
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("invoice_number", sa.String(80), nullable=True),
        sa.Column(
            "kind", sa.Enum("subscription", "overage", name="invoicekind"), nullable=True
        ),
        sa.Column(
            "status",
            sa.Enum("open", "paid", "uncollectible", "void", name="invoicestatus"),
            nullable=True,
        ),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=True),
        sa.Column("tax_total", sa.Numeric(12, 2), nullable=True),
        sa.Column("total", sa.Numeric(12, 2), nullable=True),
        sa.Column("amount_paid", sa.Numeric(12, 2), nullable=True),
        sa.Column("amount_due", sa.Numeric(12, 2), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_id", sa.String(120), nullable=True),
        sa.Column("payment_provider", sa.String(40), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_invoices_tenant_id", "invoices", ["tenant_id"])
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"])

    op.create_table(
        "overage_billings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("resource_type", sa.String(80), nullable=False),
        sa.Column("quota_limit", sa.Numeric(14, 3), nullable=True),
        sa.Column("actual_usage", sa.Numeric(14, 3), nullable=True),
        sa.Column("overage_amount", sa.Numeric(14, 3), nullable=True),
        sa.Column("unit_price", sa.Numeric(12, 4), nullable=True),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status", sa.Enum("pending", "billed", name="overagestatus"), nullable=True
        ),
        sa.Column("invoice_id", sa.Uuid(), sa.ForeignKey("invoices.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_overage_billings_tenant_id", "overage_billings", ["tenant_id"])
    op.create_index(
        "ix_overage_billings_subscription_status",
        "overage_billings",
        ["subscription_id", "status"],
    )

    op.create_table(
        "invoice_lines",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("invoice_id", sa.Uuid(), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column(
            "overage_id", sa.Uuid(), sa.ForeignKey("overage_billings.id"), nullable=True
        ),
        sa.Column(
            "line_type",
            sa.Enum("subscription", "overage", name="invoicelinetype"),
            nullable=True,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=True),
        sa.Column("unit_price", sa.Numeric(12, 4), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
    )

    op.create_table(
        "billing_cycles",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("cycle_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cycle_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "scheduled",
                "in_progress",
                "succeeded",
                "awaiting_retry",
                "exhausted",
                name="billingcyclestatus",
            ),
            nullable=True,
        ),
        sa.Column("invoice_id", sa.Uuid(), sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column("payment_id", sa.String(120), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column(
            "failure_kind",
            sa.Enum("payment", "data_integrity", name="failurekind"),
            nullable=True,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "subscription_id", "cycle_start", name="uq_billing_cycles_subscription_start"
        ),
    )
    op.create_index("ix_billing_cycles_tenant_id", "billing_cycles", ["tenant_id"])
    op.create_index(
        "ix_billing_cycles_subscription_id", "billing_cycles", ["subscription_id"]
    )
    op.create_index(
        "ix_billing_cycles_status_cycle_end", "billing_cycles", ["status", "cycle_end"]
    )
    op.create_index(
        "ix_billing_cycles_status_next_retry", "billing_cycles", ["status", "next_retry_at"]
    )

    op.create_table(
        "scheduled_notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "notification_type",
            sa.Enum(
                "upcoming_payment",
                "payment_failed",
                "payment_succeeded",
                "invoice_generated",
                "subscription_cancelled",
                "billing_escalation",
                name="billingnotificationtype",
            ),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("billing_cycle_id", sa.Uuid(), nullable=True),
        sa.Column("invoice_id", sa.Uuid(), nullable=True),
        sa.Column("payment_id", sa.String(120), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent", sa.Boolean(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_scheduled_notifications_tenant_id", "scheduled_notifications", ["tenant_id"]
    )
    op.create_index(
        "ix_scheduled_notifications_sent_scheduled_for",
        "scheduled_notifications",
        ["sent", "scheduled_for"],
    )


def downgrade() -> None:
    op.drop_table("scheduled_notifications")
    op.drop_table("billing_cycles")
    op.drop_table("invoice_lines")
    op.drop_table("overage_billings")
    op.drop_table("invoices")
    op.drop_table("tenant_subscriptions")
    for name in (
        "billingnotificationtype",
        "failurekind",
        "billingcyclestatus",
        "invoicelinetype",
        "overagestatus",
        "invoicestatus",
        "invoicekind",
        "subscriptionstatus",
        "billinginterval",
    ):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
