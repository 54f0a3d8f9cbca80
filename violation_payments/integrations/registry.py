"""Typed ``GatewayKind`` → adapter mapping, built once at startup."""
from types import MappingProxyType
from typing import Dict, Mapping

import structlog

from violation_payments.config import Settings
from violation_payments.integrations.base import GatewayKind, PaymentGateway
from violation_payments.integrations.paymongo_client import PayMongoGateway
from violation_payments.integrations.sandbox import SandboxGateway
from violation_payments.integrations.stripe_client import StripeGateway

logger = structlog.get_logger(__name__)

GatewayRegistry = Mapping[GatewayKind, PaymentGateway]

_PAYMONGO_KINDS = (GatewayKind.PAYMONGO, GatewayKind.GCASH)
_CARD_KINDS = (GatewayKind.CREDIT_CARD, GatewayKind.DEBIT_CARD)


def build_gateway_registry(settings: Settings) -> GatewayRegistry:
    """
    Resolve every payment method to its adapter.

    In sandbox mode all methods settle synchronously. Otherwise only methods
    whose provider credentials are configured are registered; Maya and
    DragonPay have no live adapter.
    """
    gateways: Dict[GatewayKind, PaymentGateway] = {}

    if settings.sandbox_mode:
        for kind in GatewayKind:
            gateways[kind] = SandboxGateway(kind, frontend_url=settings.frontend_url)
    else:
        if settings.paymongo_secret_key:
            for kind in _PAYMONGO_KINDS:
                gateways[kind] = PayMongoGateway(
                    settings.paymongo_secret_key,
                    kind=kind,
                    api_base=settings.paymongo_api_base,
                    frontend_url=settings.frontend_url,
                    timeout=settings.gateway_timeout_seconds,
                )
        if settings.stripe_secret_key:
            for kind in _CARD_KINDS:
                gateways[kind] = StripeGateway(
                    settings.stripe_secret_key,
                    kind=kind,
                    api_version=settings.stripe_api_version,
                    frontend_url=settings.frontend_url,
                )

    logger.info(
        "gateway_registry_built",
        sandbox_mode=settings.sandbox_mode,
        gateways=sorted(kind.value for kind in gateways),
    )
    return MappingProxyType(gateways)
