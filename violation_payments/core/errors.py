"""
Exceptions raised by the reconciliation engine.

Every error carries a stable ``code`` and a ``retryable`` flag; ``str()``
is a message safe to return to the citizen. Gateway errors live with the
adapters and are re-exported here.
"""
from typing import Optional, Sequence

from violation_payments.integrations.base import GatewayError, GatewayTimeoutError


class ReconciliationError(Exception):
    """Base exception for payment reconciliation errors."""

    code = "RECONCILIATION_ERROR"
    retryable = False


class InvalidRequestError(ReconciliationError):
    """Raised when a request is structurally unusable."""

    code = "INVALID_REQUEST"


class NotFoundError(ReconciliationError):
    code = "NOT_FOUND"


class ViolationNotFoundError(NotFoundError):
    """
    No violation matched any resolution strategy.

    Only the identifiers the caller supplied are echoed back; payer details
    and unrelated records never appear in the message.
    """

    def __init__(self, attempted: Sequence[str]):
        self.attempted = list(attempted)
        tried = " or ".join(self.attempted) if self.attempted else "the supplied identifiers"
        super().__init__(
            f"Violation not found with {tried}. Please verify the violation exists and try again."
        )


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__("Payment not found")


class AlreadySettledError(ReconciliationError):
    """The violation is already paid; rejected before any gateway call."""

    code = "ALREADY_SETTLED"

    def __init__(self, ovr_number: Optional[str] = None):
        self.ovr_number = ovr_number
        super().__init__("This violation has already been paid")


class ViolationNotPayableError(ReconciliationError):
    """The violation is disputed, dismissed or cancelled."""

    code = "NOT_PAYABLE"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"This violation cannot be paid while it is {status}")


class UnsupportedGatewayError(ReconciliationError):
    code = "UNSUPPORTED_GATEWAY"

    def __init__(self, gateway: str):
        self.gateway = gateway
        super().__init__("Unsupported payment method")


class VerificationMismatchError(ReconciliationError):
    """The gateway did not confirm settlement of the expected amount."""

    code = "VERIFICATION_FAILED"

    def __init__(self, reason: str = "Payment was not completed successfully"):
        super().__init__(reason)


class InvalidTransitionError(ReconciliationError):
    """A payment was asked to move between states the lifecycle does not allow."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move payment from {current} to {target}")


class ConcurrencyConflictError(ReconciliationError):
    """Another request changed the same violation or payment first."""

    code = "CONFLICT"
    retryable = True

    def __init__(self, message: str = "The violation was updated by another request. Please retry."):
        super().__init__(message)


class InvariantViolationError(ReconciliationError):
    """
    Joint completion found the violation already paid by a different payment.

    Internal only: the orchestrator reports it as ``AlreadySettledError``.
    """

    code = "INVARIANT_VIOLATION"

    def __init__(self, violation_id: str, payment_id: str, existing_reference: Optional[str]):
        self.violation_id = violation_id
        self.payment_id = payment_id
        self.existing_reference = existing_reference
        super().__init__(
            f"Violation {violation_id} already paid (reference {existing_reference}); "
            f"payment {payment_id} cannot complete"
        )


__all__ = [
    "AlreadySettledError",
    "ConcurrencyConflictError",
    "GatewayError",
    "GatewayTimeoutError",
    "InvalidRequestError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "NotFoundError",
    "PaymentNotFoundError",
    "ReconciliationError",
    "UnsupportedGatewayError",
    "VerificationMismatchError",
    "ViolationNotFoundError",
    "ViolationNotPayableError",
]
