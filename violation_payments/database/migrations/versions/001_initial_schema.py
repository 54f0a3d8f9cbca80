"""Initial violation payments schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "violations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("ovr_number", sa.String(length=20), nullable=False),
        sa.Column("citation_number", sa.String(length=20), nullable=True),
        sa.Column("driver_name", sa.String(length=100), nullable=False),
        sa.Column("plate_number", sa.String(length=15), nullable=True),
        sa.Column("base_fine", sa.Numeric(10, 2), nullable=False),
        sa.Column("additional_penalties", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_fine", sa.Numeric(10, 2), nullable=False),
        sa.Column("late_penalty_applied", sa.Boolean(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("payment_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=30), nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_reference", sa.String(length=100), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("base_fine >= 0", name="non_negative_base_fine"),
        sa.CheckConstraint("additional_penalties >= 0", name="non_negative_penalties"),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'disputed', 'dismissed', 'overdue', 'cancelled')",
            name="valid_violation_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("citation_number"),
    )
    op.create_index(op.f("ix_violations_ovr_number"), "violations", ["ovr_number"], unique=True)
    op.create_index(op.f("ix_violations_driver_name"), "violations", ["driver_name"], unique=False)
    op.create_index(op.f("ix_violations_status"), "violations", ["status"], unique=False)
    op.create_index(op.f("ix_violations_created_at"), "violations", ["created_at"], unique=False)
    op.create_index(
        "idx_violations_status_created", "violations", ["status", "created_at"], unique=False
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("payment_number", sa.String(length=50), nullable=False),
        sa.Column("violation_id", sa.Uuid(), nullable=False),
        sa.Column("ovr_number", sa.String(length=20), nullable=False),
        sa.Column("citation_number", sa.String(length=20), nullable=True),
        sa.Column("payer_name", sa.String(length=100), nullable=False),
        sa.Column("payer_email", sa.String(length=255), nullable=False),
        sa.Column("payer_phone", sa.String(length=20), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("gateway", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(length=100), nullable=True),
        sa.Column("gateway_reference", sa.String(length=100), nullable=True),
        sa.Column("gateway_response", JSON_TYPE, nullable=True),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("receipt_number", sa.String(length=20), nullable=True),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled', 'refunded')",
            name="valid_payment_status",
        ),
        sa.CheckConstraint("length(currency) = 3", name="valid_currency"),
        sa.ForeignKeyConstraint(["violation_id"], ["violations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("receipt_number"),
    )
    op.create_index(
        op.f("ix_payments_payment_number"), "payments", ["payment_number"], unique=True
    )
    op.create_index(op.f("ix_payments_violation_id"), "payments", ["violation_id"], unique=False)
    op.create_index(op.f("ix_payments_status"), "payments", ["status"], unique=False)
    op.create_index(
        op.f("ix_payments_gateway_transaction_id"),
        "payments",
        ["gateway_transaction_id"],
        unique=False,
    )
    op.create_index(op.f("ix_payments_initiated_at"), "payments", ["initiated_at"], unique=False)
    op.create_index(
        "idx_payments_violation_status", "payments", ["violation_id", "status"], unique=False
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", JSON_TYPE, nullable=False),
        sa.Column("correlation_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_payment_events_payment_id"), "payment_events", ["payment_id"], unique=False
    )
    op.create_index(
        op.f("ix_payment_events_event_type"), "payment_events", ["event_type"], unique=False
    )
    op.create_index(
        op.f("ix_payment_events_correlation_id"),
        "payment_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_events_created_at"), "payment_events", ["created_at"], unique=False
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("payment_events")
    op.drop_table("payments")
    op.drop_table("violations")
