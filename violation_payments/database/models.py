"""SQLAlchemy database models for violation payment reconciliation."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(10, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ViolationStatus(str, Enum):
    """Violation lifecycle states."""

    PENDING = "pending"
    PAID = "paid"
    DISPUTED = "disputed"
    DISMISSED = "dismissed"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Statuses a payment may still be initiated against
PAYABLE_VIOLATION_STATUSES = frozenset({ViolationStatus.PENDING, ViolationStatus.OVERDUE})


class PaymentStatus(str, Enum):
    """
    Payment lifecycle states.

    State machine:
    PENDING → PROCESSING → COMPLETED → REFUNDED
                         ↘ FAILED
                         ↘ CANCELLED
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Violation(Base):
    """
    Traffic violation records table.

    Only the payment state machine moves a row to ``paid``; every UPDATE is
    guarded by the ``version`` counter so concurrent writers cannot both win.
    """

    __tablename__ = "violations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ovr_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    citation_number: Mapped[str | None] = mapped_column(String(20), unique=True, nullable=True)
    driver_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    plate_number: Mapped[str | None] = mapped_column(String(15), nullable=True)

    base_fine: Mapped[Decimal] = mapped_column(Money, nullable=False)
    additional_penalties: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )
    total_fine: Mapped[Decimal] = mapped_column(Money, nullable=False)
    late_penalty_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ViolationStatus.PENDING.value, index=True
    )

    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("base_fine >= 0", name="non_negative_base_fine"),
        CheckConstraint("additional_penalties >= 0", name="non_negative_penalties"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'disputed', 'dismissed', 'overdue', 'cancelled')",
            name="valid_violation_status",
        ),
        Index("idx_violations_status_created", "status", "created_at"),
    )

    @property
    def is_paid(self) -> bool:
        return self.status == ViolationStatus.PAID.value

    @property
    def is_payable(self) -> bool:
        return self.status in {s.value for s in PAYABLE_VIOLATION_STATUSES}

    def __repr__(self) -> str:
        """String representation of Violation."""
        return (
            f"<Violation(id={self.id}, ovr={self.ovr_number}, "
            f"total={self.total_fine}, status={self.status})>"
        )


class Payment(Base):
    """
    Payment attempts table.

    One row per attempt; a violation may accumulate several failed attempts
    before one completes. ``amount`` is the fine snapshot taken when the row
    was created and is never rewritten.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True
    )
    violation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("violations.id"), nullable=False, index=True
    )
    ovr_number: Mapped[str] = mapped_column(String(20), nullable=False)
    citation_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    payer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    payer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    payer_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PHP")
    gateway: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )

    gateway_transaction_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True, index=True
    )
    gateway_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    receipt_number: Mapped[str | None] = mapped_column(String(20), unique=True, nullable=True)
    refund_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payments_violation_status", "violation_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, number={self.payment_number}, "
            f"amount={self.amount}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every transition and gateway call for a payment. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )
