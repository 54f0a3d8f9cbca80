"""
PayMongo Sources API adapter.

Redirect-based e-wallet checkout: ``create_payment`` opens a source and
returns its checkout URL; the charge is settled once the payer completes
the redirect and ``verify_payment`` reports the source as paid.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
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

logger = structlog.get_logger(__name__)

_STATUS_MAP = {
    "paid": GatewayStatus.SETTLED,
    "pending": GatewayStatus.PENDING,
    "chargeable": GatewayStatus.PENDING,
    "cancelled": GatewayStatus.FAILED,
    "expired": GatewayStatus.FAILED,
    "failed": GatewayStatus.FAILED,
}


def to_centavos(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


def _provider_detail(response: httpx.Response) -> str:
    """Pull PayMongo's first error detail out of an error body."""
    try:
        errors = response.json().get("errors") or []
        if errors:
            return str(errors[0].get("detail") or errors[0])
    except ValueError:
        pass
    return f"HTTP {response.status_code}"


class PayMongoGateway(PaymentGateway):
    """
    PayMongo adapter.

    The same adapter serves the ``paymongo`` and ``gcash`` payment methods;
    both open a ``gcash`` source.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        kind: GatewayKind = GatewayKind.PAYMONGO,
        source_type: str = "gcash",
        api_base: str = "https://api.paymongo.com/v1",
        frontend_url: str = "http://localhost:3000",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.kind = kind
        self.source_type = source_type
        self.api_base = api_base.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            auth=(secret_key, ""),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

        logger.info("paymongo_client_initialized", gateway=kind.value, source_type=source_type)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _translate(self, error: Exception, operation: str) -> GatewayError:
        if isinstance(error, httpx.TimeoutException):
            translated: GatewayError = GatewayTimeoutError(
                f"PayMongo {operation} timed out", gateway=self.kind, original_error=error
            )
        elif isinstance(error, httpx.HTTPStatusError):
            translated = GatewayError(
                _provider_detail(error.response), gateway=self.kind, original_error=error
            )
        else:
            translated = GatewayError(str(error), gateway=self.kind, original_error=error)

        logger.error(
            "paymongo_api_error",
            gateway=self.kind.value,
            operation=operation,
            error_code=translated.code,
            error_message=translated.provider_message,
        )
        return translated

    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPayment:
        payload = {
            "data": {
                "attributes": {
                    "amount": to_centavos(request.amount),
                    "redirect": {
                        "success": f"{self.frontend_url}/payment/success"
                        f"?payment_id={request.payment_number}",
                        "failed": f"{self.frontend_url}/payment/failed"
                        f"?payment_id={request.payment_number}",
                    },
                    "type": self.source_type,
                    "currency": request.currency,
                    "billing": {
                        "name": request.payer.name,
                        "email": request.payer.email,
                        "phone": request.payer.phone,
                    },
                    "metadata": {"description": request.description},
                }
            }
        }

        logger.info(
            "creating_paymongo_source",
            payment_number=request.payment_number,
            amount=str(request.amount),
            currency=request.currency,
        )

        try:
            response = await self._client.post(f"{self.api_base}/sources", json=payload)
            response.raise_for_status()
            data = response.json()["data"]
            attributes = data["attributes"]
            result = GatewayPayment(
                transaction_id=data["id"],
                reference=attributes.get("reference_number") or data["id"],
                status=_STATUS_MAP.get(attributes.get("status", "pending"), GatewayStatus.PENDING),
                response=response.json(),
                redirect_url=attributes["redirect"]["checkout_url"],
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise self._translate(e, "create") from e

        logger.info(
            "paymongo_source_created",
            transaction_id=result.transaction_id,
            status=result.status.value,
        )
        return result

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _retrieve_source(self, transaction_id: str) -> Dict[str, Any]:
        response = await self._client.get(f"{self.api_base}/sources/{transaction_id}")
        response.raise_for_status()
        return response.json()

    async def verify_payment(self, transaction_id: str) -> GatewayVerification:
        logger.info("retrieving_paymongo_source", transaction_id=transaction_id)

        try:
            body = await self._retrieve_source(transaction_id)
            attributes = body["data"]["attributes"]
            status = _STATUS_MAP.get(attributes["status"], GatewayStatus.FAILED)
            amount = (Decimal(attributes["amount"]) / 100).quantize(Decimal("0.01"))
        except (httpx.HTTPError, KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise self._translate(e, "verify") from e

        return GatewayVerification(status=status, amount=amount, response=body)
