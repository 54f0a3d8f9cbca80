"""
Payment state machine.

Every status change on a payment goes through ``PaymentStateMachine`` so
that illegal transitions are rejected and each one leaves an audit event.

    PENDING → PROCESSING → COMPLETED → REFUNDED
        ↘          ↘ FAILED
         CANCELLED  ↘ CANCELLED

``complete`` is the only place a violation becomes ``paid``; it changes the
payment and the violation together inside the caller's transaction.
"""
import secrets
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Mapping, Optional

import structlog

from violation_payments.core.errors import (
    ConcurrencyConflictError,
    InvalidRequestError,
    InvalidTransitionError,
    InvariantViolationError,
)
from violation_payments.core.fines import quantize_money
from violation_payments.database.models import (
    Payment,
    PaymentStatus,
    Violation,
    ViolationStatus,
    utcnow,
)
from violation_payments.database.repository import ReconciliationRepository
from violation_payments.integrations.base import GatewayKind, GatewayPayment, Payer

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


# Draws per number before giving up; the monthly space is 10^5 payments and 10^4 receipts
MAX_NUMBER_DRAWS = 10


def generate_payment_number(now: datetime) -> str:
    """``PAY`` + year and month + five random digits, e.g. ``PAY20240312345``."""
    return f"PAY{now:%Y%m}{secrets.randbelow(100000):05d}"


def generate_receipt_number(now: datetime) -> str:
    """``RCP`` + year and month + four random digits."""
    return f"RCP{now:%Y%m}{secrets.randbelow(10000):04d}"


class PaymentStateMachine:
    """
    Owns the payment lifecycle for one unit of work.

    Args:
        repository: Repository bound to the caller's session
        correlation_id: Id stamped on every event written by this instance
        clock: Source of the current time
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        correlation_id: uuid.UUID,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.correlation_id = correlation_id
        self.clock = clock

    async def _transition(
        self,
        payment: Payment,
        target: PaymentStatus,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        current = PaymentStatus(payment.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)

        payment.status = target.value
        await self.repository.update_payment(payment)
        await self.record(
            payment,
            f"payment.{target.value}",
            {"from": current.value, "to": target.value, **(event_data or {})},
        )

        logger.info(
            "payment_transitioned",
            payment_id=str(payment.id),
            payment_number=payment.payment_number,
            from_status=current.value,
            to_status=target.value,
        )

    async def _unique_number(
        self,
        generate: Callable[[datetime], str],
        now: datetime,
        in_use: Callable[[str], Awaitable[bool]],
    ) -> str:
        """
        Draw payment or receipt numbers until one is not yet assigned.

        Two writers drawing the same unused number at once still collide on
        the unique constraint; the orchestrator reports that as a conflict.
        """
        for _ in range(MAX_NUMBER_DRAWS):
            number = generate(now)
            if not await in_use(number):
                return number
            logger.warning("number_collision", number=number)

        logger.error("number_space_exhausted", prefix=number[:3], period=f"{now:%Y%m}")
        raise ConcurrencyConflictError("Could not allocate a unique number. Please retry.")

    async def record(self, payment: Payment, event_type: str, event_data: Dict[str, Any]) -> None:
        await self.repository.record_event(
            payment.id,
            event_type,
            event_data,
            self.correlation_id,
            created_at=self.clock(),
        )

    async def open(
        self,
        violation: Violation,
        payer: Payer,
        gateway: GatewayKind,
        amount: Decimal,
        currency: str = "PHP",
    ) -> Payment:
        """Create a ``pending`` payment carrying a snapshot of the amount owed."""
        now = self.clock()
        payment_number = await self._unique_number(
            generate_payment_number, now, self.repository.payment_number_in_use
        )
        payment = Payment(
            id=uuid.uuid4(),
            payment_number=payment_number,
            violation_id=violation.id,
            ovr_number=violation.ovr_number,
            citation_number=violation.citation_number,
            payer_name=payer.name,
            payer_email=payer.email,
            payer_phone=payer.phone,
            amount=quantize_money(amount),
            currency=currency,
            gateway=gateway.value,
            status=PaymentStatus.PENDING.value,
            initiated_at=now,
            updated_at=now,
        )
        await self.repository.create_payment(payment)
        await self.record(
            payment,
            "payment.created",
            {
                "violation_id": str(violation.id),
                "amount": str(payment.amount),
                "currency": currency,
                "gateway": gateway.value,
                "status": PaymentStatus.PENDING.value,
            },
        )

        logger.info(
            "payment_opened",
            payment_id=str(payment.id),
            payment_number=payment.payment_number,
            violation_id=str(violation.id),
            amount=str(payment.amount),
            gateway=gateway.value,
        )
        return payment

    async def start_processing(self, payment: Payment) -> None:
        payment.processed_at = self.clock()
        await self._transition(payment, PaymentStatus.PROCESSING)

    async def attach_gateway_payment(self, payment: Payment, result: GatewayPayment) -> None:
        """Store the provider's identifiers for a charge that was just opened."""
        payment.gateway_transaction_id = result.transaction_id
        payment.gateway_reference = result.reference
        payment.gateway_response = dict(result.response)
        await self.repository.update_payment(payment)
        await self.record(
            payment,
            "gateway.payment_created",
            {
                "transaction_id": result.transaction_id,
                "reference": result.reference,
                "status": result.status.value,
            },
        )

    async def complete(
        self,
        payment: Payment,
        violation: Violation,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Mark the payment ``completed`` and the violation ``paid`` together.

        Raises:
            InvalidTransitionError: If the payment is not ``processing``
            InvariantViolationError: If the violation is already paid
        """
        if violation.is_paid:
            raise InvariantViolationError(
                str(violation.id), str(payment.id), violation.payment_reference
            )

        now = self.clock()
        receipt_number = await self._unique_number(
            generate_receipt_number, now, self.repository.receipt_number_in_use
        )
        payment.completed_at = now
        payment.receipt_number = receipt_number
        if gateway_response:
            payment.gateway_response = {**(payment.gateway_response or {}), **gateway_response}
        await self._transition(
            payment,
            PaymentStatus.COMPLETED,
            {"receipt_number": payment.receipt_number},
        )

        previous_status = violation.status
        violation.status = ViolationStatus.PAID.value
        violation.payment_method = payment.gateway
        violation.payment_date = now
        violation.payment_reference = (
            payment.gateway_reference or payment.gateway_transaction_id or payment.payment_number
        )
        await self.repository.update_violation(violation)

        logger.info(
            "violation_settled",
            violation_id=str(violation.id),
            payment_id=str(payment.id),
            previous_status=previous_status,
            payment_reference=violation.payment_reference,
            receipt_number=payment.receipt_number,
        )

    async def fail(self, payment: Payment, code: str, message: str) -> None:
        """Mark the payment ``failed``; the violation is left as it is."""
        payment.error_code = code
        payment.error_message = message
        payment.failed_at = self.clock()
        await self._transition(
            payment, PaymentStatus.FAILED, {"error_code": code, "error_message": message}
        )

    async def cancel(self, payment: Payment, reason: Optional[str] = None) -> None:
        await self._transition(payment, PaymentStatus.CANCELLED, {"reason": reason})

    async def refund(self, payment: Payment, amount: Decimal, reason: str) -> None:
        """
        Record a refund of a completed payment.

        The violation keeps its ``paid`` status; reopening it is an
        administrative decision outside this lifecycle.
        """
        amount = quantize_money(amount)
        if amount <= 0 or amount > payment.amount:
            raise InvalidRequestError("Refund amount must be positive and at most the amount paid")

        payment.refund_amount = amount
        payment.refund_reason = reason
        payment.refunded_at = self.clock()
        await self._transition(
            payment,
            PaymentStatus.REFUNDED,
            {"refund_amount": str(amount), "reason": reason},
        )
