"""
Sandbox gateway used in demo mode.

Settles every charge synchronously and hands back provider-shaped
transaction ids so receipts and logs look like production traffic.
"""
import secrets
import string
import time
from typing import Dict, Tuple

import structlog

from violation_payments.integrations.base import (
    GatewayKind,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayStatus,
    GatewayVerification,
    PaymentGateway,
)

logger = structlog.get_logger(__name__)

# (transaction id prefix, reference prefix, random suffix length)
_ID_FORMATS: Dict[GatewayKind, Tuple[str, str, int]] = {
    GatewayKind.PAYMONGO: ("src_", "PM", 9),
    GatewayKind.GCASH: ("GCASH", "GC", 8),
    GatewayKind.MAYA: ("MAYA", "MY", 8),
    GatewayKind.DRAGONPAY: ("DP", "DPREF", 10),
    GatewayKind.CREDIT_CARD: ("CC", "CCREF", 10),
    GatewayKind.DEBIT_CARD: ("DC", "DCREF", 10),
}

_ALPHABET = string.ascii_uppercase + string.digits


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


class SandboxGateway(PaymentGateway):
    """
    Demo-mode adapter for any ``GatewayKind``.

    With ``settle_immediately=False`` it behaves like a redirect checkout:
    creation returns PENDING and verification reports the charge settled.
    """

    def __init__(
        self,
        kind: GatewayKind,
        frontend_url: str = "http://localhost:3000",
        settle_immediately: bool = True,
    ):
        self.kind = kind
        self.frontend_url = frontend_url.rstrip("/")
        self.settle_immediately = settle_immediately

    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPayment:
        tx_prefix, ref_prefix, suffix_length = _ID_FORMATS[self.kind]
        millis = int(time.time() * 1000)
        transaction_id = f"{tx_prefix}{millis}{_random_suffix(suffix_length)}"
        reference = f"{ref_prefix}{millis}{_random_suffix(6)}"
        status = GatewayStatus.SETTLED if self.settle_immediately else GatewayStatus.PENDING

        logger.info(
            "sandbox_payment_created",
            gateway=self.kind.value,
            payment_number=request.payment_number,
            transaction_id=transaction_id,
            status=status.value,
        )

        if self.settle_immediately:
            redirect_url = f"{self.frontend_url}/payment/success?payment_id={request.payment_number}"
        else:
            path = self.kind.value.replace("_", "-")
            redirect_url = f"{self.frontend_url}/payment/{path}?payment_id={request.payment_number}"

        return GatewayPayment(
            transaction_id=transaction_id,
            reference=reference,
            status=status,
            response={"status": "paid" if self.settle_immediately else "pending"},
            redirect_url=redirect_url,
        )

    async def verify_payment(self, transaction_id: str) -> GatewayVerification:
        logger.info(
            "sandbox_payment_verified",
            gateway=self.kind.value,
            transaction_id=transaction_id,
        )
        return GatewayVerification(
            status=GatewayStatus.SETTLED,
            amount=None,
            response={"status": "paid"},
        )
