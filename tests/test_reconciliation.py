"""
End-to-end tests for initiating and confirming violation payments.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from violation_payments.core import ReconciliationService
from violation_payments.core.errors import (
    AlreadySettledError,
    ConcurrencyConflictError,
    GatewayError,
    GatewayTimeoutError,
    InvalidRequestError,
    InvalidTransitionError,
    PaymentNotFoundError,
    UnsupportedGatewayError,
    VerificationMismatchError,
    ViolationNotFoundError,
    ViolationNotPayableError,
)
from violation_payments.database import ReconciliationRepository
from violation_payments.integrations import (
    GatewayKind,
    GatewayPayment,
    GatewayStatus,
    GatewayVerification,
    PaymentGateway,
    SandboxGateway,
)


def overdue() -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=1)


def mock_gateway(kind: GatewayKind = GatewayKind.GCASH) -> AsyncMock:
    gateway = AsyncMock(spec=PaymentGateway)
    gateway.kind = kind
    return gateway


def pending_payment(transaction_id: str = "src_abc123") -> GatewayPayment:
    return GatewayPayment(
        transaction_id=transaction_id,
        reference="PM123",
        status=GatewayStatus.PENDING,
        redirect_url="https://checkout.example/src_abc123",
    )


@pytest.mark.integration
class TestInitiate:
    """Test suite for ReconciliationService.initiate."""

    @pytest.mark.asyncio
    async def test_late_violation_settles_with_penalty(
        self, service, make_violation, load_violation, list_payments, payment_request
    ) -> None:
        violation = await make_violation(base_fine=Decimal("1000"), payment_deadline=overdue())

        result = await service.initiate(payment_request(violation_id=str(violation.id)))

        assert result.completed
        assert result.payment.amount == Decimal("1100.00")
        assert result.payment.status == "completed"
        assert result.gateway_transaction_id.startswith("GCASH")
        assert result.receipt.receipt_number == result.payment.receipt_number
        assert result.receipt.download_url == (
            f"https://violations.test/api/payments/{result.payment.id}/receipt"
        )

        stored = await load_violation(violation.id)
        assert stored.status == "paid"
        assert stored.total_fine == Decimal("1100.00")
        assert stored.additional_penalties == Decimal("100.00")
        assert stored.late_penalty_applied is True
        assert stored.payment_method == "gcash"
        assert stored.payment_reference == result.payment.gateway_reference

        with pytest.raises(AlreadySettledError):
            await service.initiate(payment_request(violation_id=str(violation.id)))

        assert len(await list_payments(violation.id)) == 1

    @pytest.mark.asyncio
    async def test_already_paid_violation_is_rejected_without_writes(
        self, service, make_violation, load_violation, list_payments, payment_request
    ) -> None:
        violation = await make_violation(status="paid", payment_deadline=overdue())
        before = await load_violation(violation.id)

        with pytest.raises(AlreadySettledError) as exc_info:
            await service.initiate(payment_request(ovr_number=violation.ovr_number))

        after = await load_violation(violation.id)
        assert exc_info.value.code == "ALREADY_SETTLED"
        assert after.version == before.version
        assert after.total_fine == before.total_fine
        assert await list_payments(violation.id) == []

    @pytest.mark.asyncio
    async def test_lpc_reference_typed_without_dash(
        self, service, make_violation, load_violation, payment_request
    ) -> None:
        violation = await make_violation(ovr_number="LPC-000123")

        result = await service.initiate(payment_request(ovr_number="lpc000123 "))

        assert result.violation.id == violation.id
        assert (await load_violation(violation.id)).status == "paid"

    @pytest.mark.asyncio
    async def test_client_amount_is_never_charged(
        self, service, make_violation, payment_request
    ) -> None:
        violation = await make_violation(base_fine=Decimal("750"))

        result = await service.initiate(
            payment_request(violation_id=str(violation.id), amount=Decimal("1.00"))
        )

        assert result.payment.amount == Decimal("750.00")

    @pytest.mark.asyncio
    async def test_unknown_violation(self, service, payment_request) -> None:
        with pytest.raises(ViolationNotFoundError):
            await service.initiate(payment_request(ovr_number="OVR000404"))

    @pytest.mark.asyncio
    async def test_disputed_violation_is_not_payable(
        self, service, make_violation, list_payments, payment_request
    ) -> None:
        violation = await make_violation(status="disputed")

        with pytest.raises(ViolationNotPayableError):
            await service.initiate(payment_request(violation_id=str(violation.id)))

        assert await list_payments(violation.id) == []

    @pytest.mark.asyncio
    async def test_unsupported_gateway_writes_nothing(
        self, session_factory, test_settings, make_violation, list_payments, payment_request
    ) -> None:
        violation = await make_violation(payment_deadline=overdue())
        service = ReconciliationService(
            session_factory, {GatewayKind.GCASH: SandboxGateway(GatewayKind.GCASH)}, test_settings
        )

        with pytest.raises(UnsupportedGatewayError):
            await service.initiate(
                payment_request(violation_id=str(violation.id), gateway="dragonpay")
            )

        assert await list_payments(violation.id) == []

    @pytest.mark.asyncio
    async def test_redirect_gateway_leaves_payment_processing(
        self, session_factory, test_settings, make_violation, load_violation, payment_request
    ) -> None:
        violation = await make_violation()
        gateway = SandboxGateway(
            GatewayKind.MAYA, frontend_url=test_settings.frontend_url, settle_immediately=False
        )
        service = ReconciliationService(
            session_factory, {GatewayKind.MAYA: gateway}, test_settings
        )

        result = await service.initiate(
            payment_request(violation_id=str(violation.id), gateway="maya")
        )

        assert not result.completed
        assert result.receipt is None
        assert result.payment.status == "processing"
        assert result.redirect_url == (
            f"https://pay.violations.test/payment/maya?payment_id={result.payment.payment_number}"
        )
        assert (await load_violation(violation.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_gateway_error_marks_payment_failed(
        self, session_factory, test_settings, make_violation, load_violation, list_payments,
        payment_request,
    ) -> None:
        violation = await make_violation()
        gateway = mock_gateway()
        gateway.create_payment.side_effect = GatewayError(
            "source creation rejected", gateway=GatewayKind.GCASH
        )
        service = ReconciliationService(session_factory, {GatewayKind.GCASH: gateway}, test_settings)

        with pytest.raises(GatewayError) as exc_info:
            await service.initiate(payment_request(violation_id=str(violation.id)))

        assert "source creation rejected" not in str(exc_info.value)
        [payment] = await list_payments(violation.id)
        assert payment.status == "failed"
        assert payment.error_code == "GATEWAY_ERROR"
        assert (await load_violation(violation.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_gateway_timeout_is_retryable(
        self, session_factory, test_settings, make_violation, list_payments, payment_request
    ) -> None:
        violation = await make_violation()
        gateway = mock_gateway()

        async def never_answers(request):
            await asyncio.sleep(5)

        gateway.create_payment.side_effect = never_answers
        settings = test_settings.model_copy(update={"gateway_timeout_seconds": 0.05})
        service = ReconciliationService(session_factory, {GatewayKind.GCASH: gateway}, settings)

        with pytest.raises(GatewayTimeoutError) as exc_info:
            await service.initiate(payment_request(violation_id=str(violation.id)))

        assert exc_info.value.retryable is True
        [payment] = await list_payments(violation.id)
        assert payment.status == "failed"
        assert payment.error_code == "GATEWAY_TIMEOUT"

    @pytest.mark.asyncio
    async def test_declined_at_creation(
        self, session_factory, test_settings, make_violation, load_violation, list_payments,
        payment_request,
    ) -> None:
        violation = await make_violation()
        gateway = mock_gateway()
        gateway.create_payment.return_value = GatewayPayment(
            transaction_id="GCASH999", reference=None, status=GatewayStatus.FAILED
        )
        service = ReconciliationService(session_factory, {GatewayKind.GCASH: gateway}, test_settings)

        with pytest.raises(GatewayError):
            await service.initiate(payment_request(violation_id=str(violation.id)))

        [payment] = await list_payments(violation.id)
        assert payment.status == "failed"
        assert payment.gateway_transaction_id == "GCASH999"
        assert (await load_violation(violation.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_gateway_receives_snapshot_amount(
        self, session_factory, test_settings, make_violation, payment_request
    ) -> None:
        violation = await make_violation(base_fine=Decimal("500"), payment_deadline=overdue())
        gateway = mock_gateway()
        gateway.create_payment.return_value = pending_payment()
        service = ReconciliationService(session_factory, {GatewayKind.GCASH: gateway}, test_settings)

        result = await service.initiate(payment_request(violation_id=str(violation.id)))

        sent = gateway.create_payment.await_args.args[0]
        assert sent.amount == Decimal("550.00")
        assert sent.currency == "PHP"
        assert sent.payment_number == result.payment.payment_number
        assert sent.payer.email == "juan@example.com"

    @pytest.mark.asyncio
    async def test_events_are_recorded(self, service, session_factory, make_violation, payment_request) -> None:
        violation = await make_violation()

        result = await service.initiate(payment_request(violation_id=str(violation.id)))

        async with session_factory() as session:
            events = await ReconciliationRepository(session).list_events(result.payment.id)

        assert [e.event_type for e in events] == [
            "payment.created",
            "payment.processing",
            "gateway.payment_created",
            "payment.completed",
        ]


@pytest.mark.integration
class TestConfirm:
    """Test suite for ReconciliationService.confirm."""

    @pytest.fixture
    def gateway(self) -> AsyncMock:
        gateway = mock_gateway()
        gateway.create_payment.return_value = pending_payment()
        gateway.verify_payment.return_value = GatewayVerification(
            status=GatewayStatus.SETTLED, amount=Decimal("1000.00"), response={"status": "paid"}
        )
        return gateway

    @pytest.fixture
    def redirect_service(self, session_factory, test_settings, gateway) -> ReconciliationService:
        return ReconciliationService(session_factory, {GatewayKind.GCASH: gateway}, test_settings)

    @pytest.mark.asyncio
    async def test_confirm_completes_payment_and_violation(
        self, redirect_service, gateway, make_violation, load_violation, payment_request
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))

        confirmed = await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        gateway.verify_payment.assert_awaited_once_with("src_abc123")
        assert confirmed.payment.status == "completed"
        assert confirmed.violation.status == "paid"
        assert confirmed.receipt.receipt_number.startswith("RCP")
        assert (await load_violation(violation.id)).status == "paid"

    @pytest.mark.asyncio
    async def test_confirm_by_payment_number(
        self, redirect_service, make_violation, payment_request
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))

        confirmed = await redirect_service.confirm(
            initiated.payment.payment_number.lower(), "src_abc123"
        )

        assert confirmed.payment.id == initiated.payment.id

    @pytest.mark.asyncio
    async def test_confirm_twice_returns_same_receipt(
        self, redirect_service, gateway, make_violation, payment_request
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))
        first = await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        second = await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        assert second.receipt == first.receipt
        assert gateway.verify_payment.await_count == 1

    @pytest.mark.asyncio
    async def test_verify_failure_leaves_violation_unchanged(
        self, redirect_service, gateway, make_violation, load_violation, list_payments,
        payment_request,
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))
        gateway.verify_payment.return_value = GatewayVerification(status=GatewayStatus.FAILED)

        with pytest.raises(VerificationMismatchError):
            await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        [payment] = await list_payments(violation.id)
        assert payment.status == "failed"
        assert payment.error_code == "PAYMENT_FAILED"
        assert (await load_violation(violation.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_amount_mismatch_fails_payment(
        self, redirect_service, gateway, make_violation, load_violation, list_payments,
        payment_request,
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))
        gateway.verify_payment.return_value = GatewayVerification(
            status=GatewayStatus.SETTLED, amount=Decimal("10.00")
        )

        with pytest.raises(VerificationMismatchError):
            await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        [payment] = await list_payments(violation.id)
        assert payment.error_code == "AMOUNT_MISMATCH"
        assert (await load_violation(violation.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_transaction_id_mismatch_writes_nothing(
        self, redirect_service, gateway, make_violation, list_payments, payment_request
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))

        with pytest.raises(InvalidRequestError):
            await redirect_service.confirm(str(initiated.payment.id), "src_someone_else")

        gateway.verify_payment.assert_not_awaited()
        [payment] = await list_payments(violation.id)
        assert payment.status == "processing"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (GatewayTimeoutError("read timed out"), "GATEWAY_TIMEOUT"),
            (GatewayError("provider 500"), "GATEWAY_ERROR"),
        ],
    )
    async def test_verify_error_fails_payment(
        self,
        redirect_service,
        gateway,
        make_violation,
        load_violation,
        list_payments,
        payment_request,
        error,
        code,
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))
        gateway.verify_payment.side_effect = error

        with pytest.raises(type(error)):
            await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        [payment] = await list_payments(violation.id)
        assert payment.status == "failed"
        assert payment.error_code == code
        assert payment.error_message == error.provider_message
        stored = await load_violation(violation.id)
        assert stored.status == "pending"
        assert stored.payment_reference is None

        with pytest.raises(InvalidTransitionError):
            await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

    @pytest.mark.asyncio
    async def test_unknown_payment(self, redirect_service) -> None:
        with pytest.raises(PaymentNotFoundError):
            await redirect_service.confirm("PAY20240100000", "src_abc123")

    @pytest.mark.asyncio
    async def test_failed_payment_cannot_be_confirmed(
        self, redirect_service, gateway, make_violation, payment_request
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))
        gateway.verify_payment.return_value = GatewayVerification(status=GatewayStatus.FAILED)
        with pytest.raises(VerificationMismatchError):
            await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        with pytest.raises(InvalidTransitionError):
            await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

    @pytest.mark.asyncio
    async def test_confirm_after_violation_settled_elsewhere(
        self, redirect_service, service, make_violation, list_payments, payment_request
    ) -> None:
        violation = await make_violation()
        initiated = await redirect_service.initiate(payment_request(violation_id=str(violation.id)))
        await service.initiate(payment_request(violation_id=str(violation.id)))

        with patch("violation_payments.core.reconciliation.logger") as logger:
            with pytest.raises(AlreadySettledError):
                await redirect_service.confirm(str(initiated.payment.id), "src_abc123")

        logged = [c.args[0] for c in logger.error.call_args_list]
        assert "duplicate_settlement_requires_refund" in logged
        statuses = sorted((p.status, p.error_code) for p in await list_payments(violation.id))
        assert statuses == [("completed", None), ("failed", "ALREADY_SETTLED")]


@pytest.mark.integration
class TestNumberAllocation:
    """Payment and receipt numbers stay unique within their monthly space."""

    @pytest.mark.asyncio
    async def test_taken_receipt_number_is_drawn_again(
        self, service, make_violation, payment_request
    ) -> None:
        first = await make_violation()
        second = await make_violation()

        with patch(
            "violation_payments.core.state_machine.generate_receipt_number",
            side_effect=["RCP2024010042", "RCP2024010042", "RCP2024010043"],
        ):
            settled = await service.initiate(payment_request(violation_id=str(first.id)))
            redrawn = await service.initiate(payment_request(violation_id=str(second.id)))

        assert settled.receipt.receipt_number == "RCP2024010042"
        assert redrawn.completed
        assert redrawn.receipt.receipt_number == "RCP2024010043"

    @pytest.mark.asyncio
    async def test_taken_payment_number_is_drawn_again(
        self, service, make_violation, payment_request
    ) -> None:
        first = await make_violation()
        second = await make_violation()

        with patch(
            "violation_payments.core.state_machine.generate_payment_number",
            side_effect=["PAY20240100042", "PAY20240100042", "PAY20240100043"],
        ):
            await service.initiate(payment_request(violation_id=str(first.id)))
            redrawn = await service.initiate(payment_request(violation_id=str(second.id)))

        assert redrawn.payment.payment_number == "PAY20240100043"

    @pytest.mark.asyncio
    async def test_exhausted_number_space_writes_nothing(
        self, service, make_violation, list_payments, payment_request
    ) -> None:
        first = await make_violation()
        second = await make_violation()

        with patch(
            "violation_payments.core.state_machine.generate_payment_number",
            return_value="PAY20240100042",
        ):
            await service.initiate(payment_request(violation_id=str(first.id)))
            with pytest.raises(ConcurrencyConflictError) as exc_info:
                await service.initiate(payment_request(violation_id=str(second.id)))

        assert exc_info.value.retryable
        assert await list_payments(second.id) == []

    @pytest.mark.asyncio
    async def test_receipt_collision_after_settled_charge_stays_confirmable(
        self, service, make_violation, load_violation, list_payments, payment_request
    ) -> None:
        first = await make_violation()
        second = await make_violation()

        with patch(
            "violation_payments.core.state_machine.generate_receipt_number",
            return_value="RCP2024010042",
        ), patch.object(
            ReconciliationRepository, "receipt_number_in_use", AsyncMock(return_value=False)
        ):
            await service.initiate(payment_request(violation_id=str(first.id)))
            with pytest.raises(ConcurrencyConflictError):
                await service.initiate(payment_request(violation_id=str(second.id)))

        [charged] = await list_payments(second.id)
        assert charged.status == "processing"
        assert charged.gateway_transaction_id.startswith("GCASH")
        assert (await load_violation(second.id)).status == "pending"

        confirmed = await service.confirm(str(charged.id), charged.gateway_transaction_id)

        assert confirmed.payment.status == "completed"
        assert confirmed.receipt.receipt_number != "RCP2024010042"
        assert (await load_violation(second.id)).status == "paid"
