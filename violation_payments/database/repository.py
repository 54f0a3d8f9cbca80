"""
Repository calls the reconciliation engine makes against the relational store.

All methods operate on the caller's session; committing or rolling back is
the caller's decision so several calls can share one transaction.
"""
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from violation_payments.database.models import (
    Payment,
    PaymentEvent,
    Violation,
    ViolationStatus,
    utcnow,
)


class ReconciliationRepository:
    """Violation and payment persistence for a single unit of work."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_violation_by_id(
        self, violation_id: uuid.UUID, *, for_update: bool = False
    ) -> Optional[Violation]:
        """
        Load a violation by its internal identifier.

        With ``for_update`` the row is locked (where the dialect supports it)
        and any stale copy in the identity map is refreshed.
        """
        stmt = select(Violation).where(Violation.id == violation_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_violation_by_reference(
        self, ovr_numbers: Sequence[str]
    ) -> Optional[Violation]:
        """Return the violation matching the first of ``ovr_numbers`` that exists."""
        for ovr_number in ovr_numbers:
            stmt = select(Violation).where(
                func.upper(Violation.ovr_number) == ovr_number.upper()
            )
            result = await self.session.execute(stmt)
            violation = result.scalar_one_or_none()
            if violation is not None:
                return violation
        return None

    async def find_violations_by_driver_name_and_partial_reference(
        self,
        name_fragment: str,
        reference_fragment: str,
        *,
        statuses: Iterable[ViolationStatus],
        limit: int = 5,
    ) -> list[Violation]:
        """
        Candidate violations for fuzzy resolution, newest first.

        Only violations in ``statuses`` are considered so a wrong guess can
        never land on a settled or administratively closed record.
        """
        stmt = (
            select(Violation)
            .where(
                Violation.driver_name.icontains(name_fragment, autoescape=True),
                Violation.ovr_number.contains(reference_fragment, autoescape=True),
                Violation.status.in_([s.value for s in statuses]),
            )
            .order_by(Violation.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_violation(self, violation: Violation) -> None:
        """Flush pending changes; raises ``StaleDataError`` if another writer won."""
        self.session.add(violation)
        await self.session.flush()

    async def create_payment(self, payment: Payment) -> Payment:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def update_payment(self, payment: Payment) -> None:
        """Flush pending changes; raises ``StaleDataError`` if another writer won."""
        self.session.add(payment)
        await self.session.flush()

    async def find_payment_by_id(
        self, payment_id: str | uuid.UUID, *, for_update: bool = False
    ) -> Optional[Payment]:
        """
        Load a payment by UUID or by its ``PAY...`` payment number.
        """
        if isinstance(payment_id, uuid.UUID):
            condition = Payment.id == payment_id
        else:
            raw = str(payment_id).strip()
            try:
                condition = Payment.id == uuid.UUID(raw)
            except ValueError:
                condition = Payment.payment_number == raw.upper()

        stmt = select(Payment).where(condition)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def payment_number_in_use(self, number: str) -> bool:
        result = await self.session.execute(
            select(Payment.id).where(Payment.payment_number == number).limit(1)
        )
        return result.first() is not None

    async def receipt_number_in_use(self, number: str) -> bool:
        result = await self.session.execute(
            select(Payment.id).where(Payment.receipt_number == number).limit(1)
        )
        return result.first() is not None

    async def list_payments_for_violation(self, violation_id: uuid.UUID) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.violation_id == violation_id)
            .order_by(Payment.initiated_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def record_event(
        self,
        payment_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
        created_at: Optional[datetime] = None,
    ) -> None:
        """Append an audit event; flushed with the surrounding transaction."""
        self.session.add(
            PaymentEvent(
                payment_id=payment_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
                created_at=created_at or utcnow(),
            )
        )

    async def list_events(self, payment_id: uuid.UUID) -> list[PaymentEvent]:
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.id.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
