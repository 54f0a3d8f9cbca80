"""
Uniform gateway contract shared by every external payment provider.

Providers differ in whether ``create_payment`` settles synchronously or
needs a later ``verify_payment``; callers only ever look at
``GatewayStatus`` and never at provider-specific payloads.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class GatewayKind(str, Enum):
    """Payment methods a citizen can choose when settling a violation."""

    PAYMONGO = "paymongo"
    GCASH = "gcash"
    MAYA = "maya"
    DRAGONPAY = "dragonpay"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"


class GatewayStatus(str, Enum):
    """Provider outcome normalised to the three states reconciliation acts on."""

    SETTLED = "settled"
    PENDING = "pending"
    FAILED = "failed"


class GatewayError(Exception):
    """
    A provider could not create or verify a payment.

    ``str(error)`` is safe to show an end user; the provider's own message is
    kept on ``provider_message`` for logs only.
    """

    code = "GATEWAY_ERROR"
    retryable = False
    public_message = "The payment provider could not process this payment. Please try again."

    def __init__(
        self,
        provider_message: str,
        *,
        gateway: Optional[GatewayKind] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(self.public_message)
        self.provider_message = provider_message
        self.gateway = gateway
        self.original_error = original_error


class GatewayTimeoutError(GatewayError):
    """The provider did not answer in time. Safe for the caller to retry."""

    code = "GATEWAY_TIMEOUT"
    retryable = True
    public_message = "The payment provider did not respond in time. Please try again."


@dataclass(frozen=True)
class Payer:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class GatewayPaymentRequest:
    """Everything a provider needs to open a charge for one payment attempt."""

    payment_number: str
    amount: Decimal
    currency: str
    description: str
    payer: Payer


@dataclass(frozen=True)
class GatewayPayment:
    """Result of ``create_payment``."""

    transaction_id: str
    reference: Optional[str]
    status: GatewayStatus
    response: Dict[str, Any] = field(default_factory=dict)
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class GatewayVerification:
    """Result of ``verify_payment``. ``amount`` is None when the provider does not report one."""

    status: GatewayStatus
    amount: Optional[Decimal] = None
    response: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Interface every provider adapter implements."""

    kind: GatewayKind

    @abstractmethod
    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPayment:
        """Open a charge with the provider."""

    @abstractmethod
    async def verify_payment(self, transaction_id: str) -> GatewayVerification:
        """Ask the provider for the current state of a charge."""
