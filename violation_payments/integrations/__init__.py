"""External payment gateway integrations."""
from .base import (
    GatewayError,
    GatewayKind,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayStatus,
    GatewayTimeoutError,
    GatewayVerification,
    Payer,
    PaymentGateway,
)
from .paymongo_client import PayMongoGateway
from .registry import GatewayRegistry, build_gateway_registry
from .sandbox import SandboxGateway
from .stripe_client import StripeGateway

__all__ = [
    "GatewayError",
    "GatewayKind",
    "GatewayPayment",
    "GatewayPaymentRequest",
    "GatewayRegistry",
    "GatewayStatus",
    "GatewayTimeoutError",
    "GatewayVerification",
    "Payer",
    "PayMongoGateway",
    "PaymentGateway",
    "SandboxGateway",
    "StripeGateway",
    "build_gateway_registry",
]
