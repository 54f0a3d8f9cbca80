"""
Stripe card gateway with a circuit breaker and classified errors.

Implements:
- Card charges for the credit/debit card payment methods via PaymentIntents
- Circuit breaker pattern around every Stripe call
- Idempotent creation keyed on the payment number (never retried here)
- Retried, read-only verification for transient failures
"""
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from violation_payments.integrations.base import (
    GatewayError,
    GatewayKind,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayStatus,
    GatewayTimeoutError,
    GatewayVerification,
    PaymentGateway,
)
from violation_payments.integrations.paymongo_client import to_centavos

logger = structlog.get_logger(__name__)

_STATUS_MAP = {
    "succeeded": GatewayStatus.SETTLED,
    "processing": GatewayStatus.PENDING,
    "requires_payment_method": GatewayStatus.PENDING,
    "requires_confirmation": GatewayStatus.PENDING,
    "requires_action": GatewayStatus.PENDING,
    "requires_capture": GatewayStatus.PENDING,
    "canceled": GatewayStatus.FAILED,
}


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class _TransientStripeError(Exception):
    """Internal marker so tenacity only retries reads that may succeed next time."""

    def __init__(self, original_error: stripe.StripeError):
        super().__init__(str(original_error))
        self.original_error = original_error


class CircuitOpenError(Exception):
    """Raised instead of calling Stripe while the breaker is open."""


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise CircuitOpenError("Circuit breaker is open")

        try:
            result = func(*args, **kwargs)
            self.on_success()
            return result
        except Exception:
            self.on_failure()
            raise

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def classify_error(error: stripe.StripeError) -> StripeErrorType:
    """Classify a Stripe error for retry logic."""
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
        return StripeErrorType.TRANSIENT
    elif isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
        return StripeErrorType.PERMANENT
    else:
        # Unknown errors are treated as transient
        return StripeErrorType.TRANSIENT


class StripeGateway(PaymentGateway):
    """Card payments through Stripe PaymentIntents."""

    def __init__(
        self,
        secret_key: str,
        *,
        kind: GatewayKind = GatewayKind.CREDIT_CARD,
        api_version: str = "2023-10-16",
        frontend_url: str = "http://localhost:3000",
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        stripe.api_key = secret_key
        stripe.api_version = api_version
        self.kind = kind
        self.frontend_url = frontend_url.rstrip("/")
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            gateway=kind.value,
            api_version=api_version,
            test_mode=secret_key.startswith("sk_test_"),
        )

    def _translate(self, error: Exception, operation: str) -> GatewayError:
        if isinstance(error, CircuitOpenError):
            translated: GatewayError = GatewayError(
                str(error), gateway=self.kind, original_error=error
            )
            error_type = StripeErrorType.TRANSIENT
        else:
            original = error.original_error if isinstance(error, _TransientStripeError) else error
            error_type = classify_error(original)
            error_cls = (
                GatewayTimeoutError
                if isinstance(original, stripe.APIConnectionError)
                else GatewayError
            )
            translated = error_cls(str(original), gateway=self.kind, original_error=original)

        logger.error(
            "stripe_api_error",
            gateway=self.kind.value,
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(translated.original_error, "code", None),
            error_message=translated.provider_message,
        )
        return translated

    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPayment:
        logger.info(
            "creating_payment_intent",
            payment_number=request.payment_number,
            amount=str(request.amount),
            currency=request.currency,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=to_centavos(request.amount),
                currency=request.currency.lower(),
                idempotency_key=f"violation-payment:{request.payment_number}",
                description=request.description,
                receipt_email=request.payer.email,
                metadata={"payment_number": request.payment_number},
                automatic_payment_methods={"enabled": True},
            )

        try:
            intent = self.circuit_breaker.call(_create)
        except (stripe.StripeError, CircuitOpenError) as e:
            raise self._translate(e, "create") from e

        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.id,
            status=intent.status,
        )

        path = self.kind.value.replace("_", "-")
        return GatewayPayment(
            transaction_id=intent.id,
            reference=intent.id,
            status=_STATUS_MAP.get(intent.status, GatewayStatus.PENDING),
            response={"id": intent.id, "status": intent.status},
            redirect_url=f"{self.frontend_url}/payment/{path}?payment_id={request.payment_number}",
        )

    @retry(
        retry=retry_if_exception_type(_TransientStripeError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _retrieve(self, payment_intent_id: str) -> stripe.PaymentIntent:
        def _get() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.retrieve(payment_intent_id)

        try:
            return self.circuit_breaker.call(_get)
        except stripe.StripeError as e:
            if classify_error(e) is StripeErrorType.PERMANENT:
                raise
            raise _TransientStripeError(e) from e

    async def verify_payment(self, transaction_id: str) -> GatewayVerification:
        logger.info("retrieving_payment_intent", payment_intent_id=transaction_id)

        try:
            intent = await self._retrieve(transaction_id)
        except (stripe.StripeError, _TransientStripeError, CircuitOpenError) as e:
            raise self._translate(e, "verify") from e

        received = intent.amount_received or intent.amount
        response: Dict[str, Any] = {"id": intent.id, "status": intent.status}
        return GatewayVerification(
            status=_STATUS_MAP.get(intent.status, GatewayStatus.FAILED),
            amount=(Decimal(received) / 100).quantize(Decimal("0.01")),
            response=response,
        )
