"""
Pydantic schemas for reconciliation requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from violation_payments.integrations.base import GatewayKind


class InitiatePaymentRequest(BaseModel):
    """Request schema for paying a violation."""

    violation_id: Optional[str] = Field(default=None, description="Internal violation identifier")
    ovr_number: Optional[str] = Field(
        default=None, description="Reference number as typed by the payer (OVR/LPC)"
    )
    gateway: GatewayKind = Field(..., description="Payment method")
    payer_name: str = Field(..., min_length=1, max_length=100, description="Payer full name")
    payer_email: str = Field(..., min_length=3, max_length=255, description="Payer email")
    payer_phone: Optional[str] = Field(default=None, max_length=20, description="Payer phone")
    amount: Optional[Decimal] = Field(
        default=None,
        description="Amount the payer was shown; informational only, never charged",
    )

    @field_validator("payer_name")
    @classmethod
    def validate_payer_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Payer name is required")
        return v

    @field_validator("payer_email")
    @classmethod
    def validate_payer_email(cls, v: str) -> str:
        """Validate email shape."""
        v = v.strip()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "ovr_number": "OVR100234",
                    "gateway": "gcash",
                    "payer_name": "Juan Dela Cruz",
                    "payer_email": "juan@example.com",
                    "payer_phone": "09171234567",
                }
            ]
        }
    }


class ConfirmPaymentRequest(BaseModel):
    """Request schema for confirming a redirect-based payment."""

    payment_id: str = Field(..., min_length=1, description="Payment UUID or PAY number")
    gateway_transaction_id: str = Field(
        ..., min_length=1, description="Transaction id returned by the gateway"
    )


class ViolationView(BaseModel):
    """Violation as shown to the payer."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ovr_number: str
    citation_number: Optional[str] = None
    driver_name: str
    plate_number: Optional[str] = None
    base_fine: Decimal
    additional_penalties: Decimal
    total_fine: Decimal
    status: str
    payment_deadline: datetime
    payment_method: Optional[str] = None
    payment_date: Optional[datetime] = None
    payment_reference: Optional[str] = None


class PaymentView(BaseModel):
    """Payment as shown to the payer; raw gateway responses are never included."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_number: str
    violation_id: UUID
    ovr_number: str
    amount: Decimal
    currency: str
    gateway: str
    status: str
    gateway_transaction_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    receipt_number: Optional[str] = None
    error_code: Optional[str] = None
    initiated_at: datetime
    completed_at: Optional[datetime] = None


class ReceiptView(BaseModel):
    """Receipt locator for a completed payment."""

    receipt_number: str = Field(..., description="RCP receipt number")
    download_url: str = Field(..., description="Where the rendered receipt is served")
