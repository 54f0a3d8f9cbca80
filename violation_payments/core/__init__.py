"""Core reconciliation logic: resolution, fines, payment lifecycle and orchestration."""
from .errors import (
    AlreadySettledError,
    ConcurrencyConflictError,
    GatewayError,
    GatewayTimeoutError,
    InvalidRequestError,
    InvalidTransitionError,
    PaymentNotFoundError,
    ReconciliationError,
    UnsupportedGatewayError,
    VerificationMismatchError,
    ViolationNotFoundError,
    ViolationNotPayableError,
)
from .fines import FineAssessment, apply_assessment, assess_fine
from .reconciliation import ConfirmationResult, InitiationResult, Receipt, ReconciliationService
from .resolver import ResolutionHints, ViolationResolver
from .state_machine import PaymentStateMachine

__all__ = [
    "AlreadySettledError",
    "ConcurrencyConflictError",
    "ConfirmationResult",
    "FineAssessment",
    "GatewayError",
    "GatewayTimeoutError",
    "InitiationResult",
    "InvalidRequestError",
    "InvalidTransitionError",
    "PaymentNotFoundError",
    "PaymentStateMachine",
    "Receipt",
    "ReconciliationError",
    "ReconciliationService",
    "ResolutionHints",
    "UnsupportedGatewayError",
    "VerificationMismatchError",
    "ViolationNotFoundError",
    "ViolationNotPayableError",
    "ViolationResolver",
    "apply_assessment",
    "assess_fine",
]
