"""
Reconciliation orchestrator.

``initiate`` flow:
1. Pick the gateway adapter for the requested payment method
2. Transaction A: resolve the violation, lock it, refuse settled or
   closed violations, assess and persist the fine, open the payment and
   move it to ``processing``
3. Call the gateway with no transaction open and no lock held
4. Transaction B: lock payment and violation again and record the outcome;
   a settled charge completes payment and violation together

``confirm`` finishes a redirect-based payment once the payer returns:
verify with the gateway, then complete jointly in one transaction.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from violation_payments.config import Settings, get_settings
from violation_payments.core.errors import (
    AlreadySettledError,
    ConcurrencyConflictError,
    GatewayError,
    GatewayTimeoutError,
    InvalidRequestError,
    InvalidTransitionError,
    InvariantViolationError,
    PaymentNotFoundError,
    UnsupportedGatewayError,
    VerificationMismatchError,
    ViolationNotFoundError,
    ViolationNotPayableError,
)
from violation_payments.core.fines import (
    apply_assessment,
    assess_fine,
    log_client_amount_discrepancy,
    quantize_money,
)
from violation_payments.core.resolver import ResolutionHints, ViolationResolver
from violation_payments.core.state_machine import PaymentStateMachine
from violation_payments.database.models import Payment, PaymentStatus, Violation, utcnow
from violation_payments.database.repository import ReconciliationRepository
from violation_payments.integrations.base import (
    GatewayKind,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayStatus,
    Payer,
    PaymentGateway,
)
from violation_payments.integrations.registry import GatewayRegistry
from violation_payments.monitoring import metrics
from violation_payments.schemas import InitiatePaymentRequest

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Payment states a failure may still be recorded against
_OPEN_PAYMENT_STATES = {PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value}


@dataclass(frozen=True)
class Receipt:
    receipt_number: str
    download_url: str


@dataclass(frozen=True)
class InitiationResult:
    """Outcome of ``initiate``; ``receipt`` is set only when the charge settled synchronously."""

    payment: Payment
    violation: Violation
    redirect_url: Optional[str]
    gateway_transaction_id: Optional[str]
    receipt: Optional[Receipt] = None

    @property
    def completed(self) -> bool:
        return self.payment.status == PaymentStatus.COMPLETED.value


@dataclass(frozen=True)
class ConfirmationResult:
    payment: Payment
    violation: Violation
    receipt: Receipt


class ReconciliationService:
    """
    Settles traffic violations through external payment gateways.

    Args:
        session_factory: Factory for one ``AsyncSession`` per transaction
        gateways: Immutable payment method to adapter mapping
        settings: Application settings (defaults to the cached settings)
        clock: Source of the current time
        resolver: Violation resolver (defaults to the standard strategy order)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        resolver: Optional[ViolationResolver] = None,
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.settings = settings or get_settings()
        self.clock = clock
        self.resolver = resolver or ViolationResolver()

    def _gateway_for(self, kind: GatewayKind) -> PaymentGateway:
        gateway = self.gateways.get(kind)
        if gateway is None:
            logger.warning("unsupported_gateway_requested", gateway=kind.value)
            raise UnsupportedGatewayError(kind.value)
        return gateway

    def _receipt(self, payment: Payment) -> Receipt:
        return Receipt(
            receipt_number=payment.receipt_number,
            download_url=self.settings.receipt_download_url(str(payment.id)),
        )

    async def _call_gateway(
        self, gateway: PaymentGateway, operation: str, call: Awaitable[T]
    ) -> T:
        """Run one gateway call under the configured timeout, recording metrics."""
        timeout = self.settings.gateway_timeout_seconds
        start = time.perf_counter()
        status = "error"
        try:
            result = await asyncio.wait_for(call, timeout=timeout)
            status = "success"
            return result
        except asyncio.TimeoutError as e:
            status = "timeout"
            raise GatewayTimeoutError(
                f"{operation} did not complete within {timeout}s",
                gateway=gateway.kind,
                original_error=e,
            ) from e
        except GatewayTimeoutError:
            status = "timeout"
            raise
        finally:
            metrics.gateway_requests_total.labels(
                gateway=gateway.kind.value, operation=operation, status=status
            ).inc()
            metrics.gateway_request_duration_seconds.labels(
                gateway=gateway.kind.value, operation=operation
            ).observe(time.perf_counter() - start)

    async def initiate(self, request: InitiatePaymentRequest) -> InitiationResult:
        """
        Start paying a violation.

        Other ``processing`` payments on the same violation do not block a
        new attempt, since an abandoned redirect checkout would otherwise
        lock the violation. Two attempts can therefore both be charged; only
        one completes, and the other is failed with ``ALREADY_SETTLED`` and
        logged as ``duplicate_settlement_requires_refund``.

        Returns:
            InitiationResult: Completed payment with receipt, or a
            ``processing`` payment plus the redirect the payer must follow

        Raises:
            UnsupportedGatewayError: No adapter for the payment method
            InvalidRequestError: Neither violation id nor reference supplied
            ViolationNotFoundError: No resolution strategy matched
            AlreadySettledError: The violation is already paid
            ViolationNotPayableError: The violation is disputed or closed
            GatewayError: The provider failed or declined; payment is ``failed``
            ConcurrencyConflictError: Lost a race that did not settle the violation
        """
        correlation_id = uuid.uuid4()
        with structlog.contextvars.bound_contextvars(
            correlation_id=str(correlation_id), operation="initiate"
        ):
            logger.info(
                "payment_initiation_started",
                gateway=request.gateway.value,
                violation_id=request.violation_id,
                ovr_number=request.ovr_number,
            )
            gateway = self._gateway_for(request.gateway)

            payment, violation = await self._open_payment(request, correlation_id)

            gateway_request = GatewayPaymentRequest(
                payment_number=payment.payment_number,
                amount=payment.amount,
                currency=payment.currency,
                description=f"Traffic violation {violation.ovr_number}",
                payer=Payer(
                    name=payment.payer_name,
                    email=payment.payer_email,
                    phone=payment.payer_phone,
                ),
            )

            try:
                result = await self._call_gateway(
                    gateway, "create", gateway.create_payment(gateway_request)
                )
            except GatewayError as e:
                logger.error(
                    "payment_gateway_failed",
                    payment_id=str(payment.id),
                    error_code=e.code,
                    provider_message=e.provider_message,
                )
                await self._mark_failed(payment.id, e.code, e.provider_message, correlation_id)
                metrics.payment_attempts_total.labels(
                    gateway=request.gateway.value, outcome="failed"
                ).inc()
                raise

            return await self._record_creation(payment, result, correlation_id)

    async def _open_payment(
        self, request: InitiatePaymentRequest, correlation_id: uuid.UUID
    ) -> tuple[Payment, Violation]:
        """Transaction A: everything that must be true before money moves."""
        hints = ResolutionHints(
            violation_id=request.violation_id,
            reference=request.ovr_number,
            payer_name=request.payer_name,
        )
        violation_id: Optional[uuid.UUID] = None

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    repository = ReconciliationRepository(session)
                    resolved = await self.resolver.resolve(hints, repository)
                    violation_id = resolved.id

                    violation = await repository.find_violation_by_id(
                        violation_id, for_update=True
                    )
                    if violation is None:
                        raise ViolationNotFoundError([f"ID {violation_id}"])
                    if violation.is_paid:
                        metrics.payment_attempts_total.labels(
                            gateway=request.gateway.value, outcome="already_settled"
                        ).inc()
                        logger.warning(
                            "violation_already_settled",
                            violation_id=str(violation_id),
                            payment_reference=violation.payment_reference,
                        )
                        raise AlreadySettledError(violation.ovr_number)
                    if not violation.is_payable:
                        raise ViolationNotPayableError(violation.status)

                    assessment = assess_fine(
                        violation, self.clock(), rate=self.settings.late_penalty_rate
                    )
                    log_client_amount_discrepancy(violation, assessment, request.amount)
                    if apply_assessment(violation, assessment):
                        await repository.update_violation(violation)
                        metrics.late_penalties_applied_total.inc()

                    machine = PaymentStateMachine(repository, correlation_id, self.clock)
                    payment = await machine.open(
                        violation,
                        Payer(
                            name=request.payer_name,
                            email=request.payer_email,
                            phone=request.payer_phone,
                        ),
                        request.gateway,
                        assessment.amount,
                        currency=self.settings.currency,
                    )
                    await machine.start_processing(payment)
        except (StaleDataError, OperationalError) as e:
            if violation_id is None:
                raise
            raise await self._conflict_error("initiate", violation_id, e) from e
        except IntegrityError as e:
            raise self._number_conflict("initiate", e) from e

        return payment, violation

    async def _record_creation(
        self, opened: Payment, result: GatewayPayment, correlation_id: uuid.UUID
    ) -> InitiationResult:
        """Transaction B: store what the gateway said and settle if it settled."""
        gateway_kind = opened.gateway

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    repository = ReconciliationRepository(session)
                    payment = await repository.find_payment_by_id(opened.id, for_update=True)
                    violation = await repository.find_violation_by_id(
                        opened.violation_id, for_update=True
                    )
                    machine = PaymentStateMachine(repository, correlation_id, self.clock)
                    await machine.attach_gateway_payment(payment, result)

                    if result.status is GatewayStatus.SETTLED:
                        await machine.complete(payment, violation)
                    elif result.status is GatewayStatus.FAILED:
                        await machine.fail(
                            payment, GatewayError.code, "Gateway declined the payment"
                        )
        except InvariantViolationError as e:
            raise await self._settled_elsewhere(
                opened.id, gateway_kind, e, correlation_id, result
            ) from e
        except (StaleDataError, OperationalError) as e:
            conflict = await self._conflict_error("initiate", opened.violation_id, e)
            if isinstance(conflict, AlreadySettledError):
                await self._mark_failed(
                    opened.id,
                    AlreadySettledError.code,
                    "Violation settled by a concurrent payment",
                    correlation_id,
                    result,
                )
            else:
                # Keep the charge confirmable once the conflicting writer is done
                await self._attach_charge(opened.id, result, correlation_id)
            raise conflict from e
        except IntegrityError as e:
            conflict = self._number_conflict("initiate", e)
            logger.error(
                "gateway_outcome_not_recorded",
                payment_id=str(opened.id),
                transaction_id=result.transaction_id,
                gateway_status=result.status.value,
            )
            # The charge may have settled; keep it reachable through confirm
            await self._attach_charge(opened.id, result, correlation_id)
            raise conflict from e

        if result.status is GatewayStatus.FAILED:
            metrics.payment_attempts_total.labels(gateway=gateway_kind, outcome="failed").inc()
            raise GatewayError(
                f"{gateway_kind} returned a failed status", gateway=GatewayKind(gateway_kind)
            )

        if result.status is GatewayStatus.SETTLED:
            metrics.payment_attempts_total.labels(gateway=gateway_kind, outcome="completed").inc()
            metrics.payment_amount.observe(float(payment.amount))
            logger.info(
                "payment_completed",
                payment_id=str(payment.id),
                payment_number=payment.payment_number,
                receipt_number=payment.receipt_number,
            )
            return InitiationResult(
                payment=payment,
                violation=violation,
                redirect_url=result.redirect_url,
                gateway_transaction_id=result.transaction_id,
                receipt=self._receipt(payment),
            )

        metrics.payment_attempts_total.labels(gateway=gateway_kind, outcome="pending").inc()
        logger.info(
            "payment_awaiting_confirmation",
            payment_id=str(payment.id),
            payment_number=payment.payment_number,
            transaction_id=result.transaction_id,
        )
        return InitiationResult(
            payment=payment,
            violation=violation,
            redirect_url=result.redirect_url,
            gateway_transaction_id=result.transaction_id,
        )

    async def confirm(self, payment_id: str, gateway_transaction_id: str) -> ConfirmationResult:
        """
        Finish a payment after the payer returns from the gateway.

        Confirming an already completed payment returns its receipt again
        without contacting the gateway.

        Raises:
            PaymentNotFoundError: Unknown payment id or number
            InvalidTransitionError: Payment is failed, cancelled or refunded
            InvalidRequestError: Transaction id does not match the payment
            VerificationMismatchError: Gateway did not confirm the expected charge
            GatewayError: The provider could not verify the charge; payment is ``failed``
            AlreadySettledError: The violation was settled by another payment
            ConcurrencyConflictError: Lost a race that did not settle the violation
        """
        correlation_id = uuid.uuid4()
        with structlog.contextvars.bound_contextvars(
            correlation_id=str(correlation_id), operation="confirm"
        ):
            logger.info("payment_confirmation_started", payment_id=str(payment_id))

            async with self.session_factory() as session:
                repository = ReconciliationRepository(session)
                payment = await repository.find_payment_by_id(payment_id)
                if payment is None:
                    raise PaymentNotFoundError(str(payment_id))
                violation = await repository.find_violation_by_id(payment.violation_id)

            if payment.status == PaymentStatus.COMPLETED.value:
                logger.info("payment_already_confirmed", payment_id=str(payment.id))
                return ConfirmationResult(payment, violation, self._receipt(payment))
            if payment.status != PaymentStatus.PROCESSING.value:
                raise InvalidTransitionError(payment.status, PaymentStatus.COMPLETED.value)
            if payment.gateway_transaction_id != gateway_transaction_id:
                logger.warning(
                    "gateway_transaction_mismatch",
                    payment_id=str(payment.id),
                    recorded=payment.gateway_transaction_id,
                    supplied=gateway_transaction_id,
                )
                raise InvalidRequestError("Transaction id does not match this payment")

            gateway = self._gateway_for(GatewayKind(payment.gateway))
            try:
                verification = await self._call_gateway(
                    gateway, "verify", gateway.verify_payment(gateway_transaction_id)
                )
            except GatewayError as e:
                logger.error(
                    "payment_verification_failed",
                    payment_id=str(payment.id),
                    error_code=e.code,
                    provider_message=e.provider_message,
                )
                await self._mark_failed(payment.id, e.code, e.provider_message, correlation_id)
                metrics.payment_attempts_total.labels(
                    gateway=payment.gateway, outcome="failed"
                ).inc()
                raise

            if verification.status is not GatewayStatus.SETTLED:
                await self._mark_failed(
                    payment.id,
                    "PAYMENT_FAILED",
                    f"Gateway reported {verification.status.value}",
                    correlation_id,
                )
                metrics.payment_attempts_total.labels(
                    gateway=payment.gateway, outcome="failed"
                ).inc()
                raise VerificationMismatchError()

            if (
                verification.amount is not None
                and quantize_money(verification.amount) != payment.amount
            ):
                logger.error(
                    "gateway_amount_mismatch",
                    payment_id=str(payment.id),
                    expected=str(payment.amount),
                    verified=str(verification.amount),
                )
                await self._mark_failed(
                    payment.id,
                    "AMOUNT_MISMATCH",
                    f"Expected {payment.amount}, gateway reported {verification.amount}",
                    correlation_id,
                )
                metrics.payment_attempts_total.labels(
                    gateway=payment.gateway, outcome="failed"
                ).inc()
                raise VerificationMismatchError("Paid amount does not match the amount due")

            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        repository = ReconciliationRepository(session)
                        payment = await repository.find_payment_by_id(payment.id, for_update=True)
                        violation = await repository.find_violation_by_id(
                            payment.violation_id, for_update=True
                        )
                        if payment.status == PaymentStatus.COMPLETED.value:
                            return ConfirmationResult(payment, violation, self._receipt(payment))

                        machine = PaymentStateMachine(repository, correlation_id, self.clock)
                        await machine.complete(payment, violation, dict(verification.response))
            except InvariantViolationError as e:
                # A concurrent confirm of this same payment is not a duplicate settlement
                confirmed = await self._confirmed_result(payment.id)
                if confirmed is not None:
                    return confirmed
                raise await self._settled_elsewhere(
                    payment.id, payment.gateway, e, correlation_id
                ) from e
            except (StaleDataError, OperationalError) as e:
                confirmed = await self._confirmed_result(payment.id)
                if confirmed is not None:
                    return confirmed
                raise await self._conflict_error("confirm", payment.violation_id, e) from e
            except IntegrityError as e:
                confirmed = await self._confirmed_result(payment.id)
                if confirmed is not None:
                    return confirmed
                raise self._number_conflict("confirm", e) from e

            metrics.payment_attempts_total.labels(
                gateway=payment.gateway, outcome="completed"
            ).inc()
            metrics.payment_amount.observe(float(payment.amount))
            logger.info(
                "payment_confirmed",
                payment_id=str(payment.id),
                receipt_number=payment.receipt_number,
            )
            return ConfirmationResult(payment, violation, self._receipt(payment))

    async def _confirmed_result(self, payment_id: uuid.UUID) -> Optional[ConfirmationResult]:
        """The receipt of ``payment_id`` if another request already completed it."""
        async with self.session_factory() as session:
            repository = ReconciliationRepository(session)
            payment = await repository.find_payment_by_id(payment_id)
            if payment is None or payment.status != PaymentStatus.COMPLETED.value:
                return None
            violation = await repository.find_violation_by_id(payment.violation_id)
        logger.info("payment_confirmed_concurrently", payment_id=str(payment_id))
        return ConfirmationResult(payment, violation, self._receipt(payment))

    async def _attach_charge(
        self, payment_id: uuid.UUID, result: GatewayPayment, correlation_id: uuid.UUID
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                repository = ReconciliationRepository(session)
                payment = await repository.find_payment_by_id(payment_id, for_update=True)
                if payment is not None and payment.gateway_transaction_id is None:
                    machine = PaymentStateMachine(repository, correlation_id, self.clock)
                    await machine.attach_gateway_payment(payment, result)

    async def _mark_failed(
        self,
        payment_id: uuid.UUID,
        code: str,
        message: str,
        correlation_id: uuid.UUID,
        gateway_result: Optional[GatewayPayment] = None,
    ) -> None:
        """Record a failure in its own transaction; the violation is not touched."""
        async with self.session_factory() as session:
            async with session.begin():
                repository = ReconciliationRepository(session)
                payment = await repository.find_payment_by_id(payment_id, for_update=True)
                if payment is None or payment.status not in _OPEN_PAYMENT_STATES:
                    logger.warning(
                        "payment_failure_not_recorded",
                        payment_id=str(payment_id),
                        status=payment.status if payment else None,
                        error_code=code,
                    )
                    return
                machine = PaymentStateMachine(repository, correlation_id, self.clock)
                if gateway_result is not None:
                    await machine.attach_gateway_payment(payment, gateway_result)
                await machine.fail(payment, code, message)

    async def _settled_elsewhere(
        self,
        payment_id: uuid.UUID,
        gateway: str,
        error: InvariantViolationError,
        correlation_id: uuid.UUID,
        gateway_result: Optional[GatewayPayment] = None,
    ) -> AlreadySettledError:
        """A second charge went through for a violation that another payment settled."""
        logger.error(
            "duplicate_settlement_requires_refund",
            violation_id=error.violation_id,
            payment_id=error.payment_id,
            existing_reference=error.existing_reference,
        )
        await self._mark_failed(
            payment_id,
            AlreadySettledError.code,
            "Violation settled by another payment; funds require refund",
            correlation_id,
            gateway_result,
        )
        metrics.payment_attempts_total.labels(gateway=gateway, outcome="already_settled").inc()
        return AlreadySettledError()

    async def _conflict_error(
        self, operation: str, violation_id: uuid.UUID, error: Exception
    ) -> Exception:
        """Report a lost race as settled when the winner paid the violation, else retryable."""
        metrics.concurrency_conflicts_total.labels(operation=operation).inc()
        async with self.session_factory() as session:
            violation = await ReconciliationRepository(session).find_violation_by_id(
                violation_id
            )

        logger.warning(
            "concurrency_conflict",
            violation_id=str(violation_id),
            violation_status=violation.status if violation else None,
            error_type=type(error).__name__,
        )
        if violation is not None and violation.is_paid:
            return AlreadySettledError(violation.ovr_number)
        return ConcurrencyConflictError()

    def _number_conflict(self, operation: str, error: IntegrityError) -> ConcurrencyConflictError:
        """A concurrent writer took the same payment or receipt number first."""
        metrics.concurrency_conflicts_total.labels(operation=operation).inc()
        logger.warning(
            "unique_number_conflict",
            error_type=type(error).__name__,
            detail=str(error.orig),
        )
        return ConcurrencyConflictError()
