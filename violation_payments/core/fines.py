"""
Fine calculator.

``assess_fine`` is pure: given a violation and the current instant it says
what is owed and whether a late penalty has to be written. ``apply_assessment``
performs that write on the in-session row; the caller holds the row lock.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog

from violation_payments.database.models import PAYABLE_VIOLATION_STATUSES, Violation

logger = structlog.get_logger(__name__)

CENTAVO = Decimal("0.01")
DEFAULT_LATE_PENALTY_RATE = Decimal("0.10")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTAVO, rounding=ROUND_HALF_UP)


def as_utc(moment: datetime) -> datetime:
    """Treat naive timestamps (as some stores return them) as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class FineAssessment:
    """Amount owed at one instant and the penalty, if any, that must be persisted."""

    amount: Decimal
    late_penalty: Decimal = Decimal("0.00")
    penalty_applied_now: bool = False


def assess_fine(
    violation: Violation,
    now: datetime,
    rate: Decimal = DEFAULT_LATE_PENALTY_RATE,
) -> FineAssessment:
    """
    Compute the authoritative amount owed for ``violation`` at ``now``.

    The late penalty is ``rate`` times the base fine, added once after the
    payment deadline has passed while the violation is pending or overdue.
    """
    total = quantize_money(violation.total_fine)
    payable = violation.status in {s.value for s in PAYABLE_VIOLATION_STATUSES}
    past_deadline = as_utc(now) > as_utc(violation.payment_deadline)

    if not payable or not past_deadline or violation.late_penalty_applied:
        return FineAssessment(amount=total)

    penalty = quantize_money(Decimal(violation.base_fine) * rate)
    return FineAssessment(
        amount=quantize_money(total + penalty),
        late_penalty=penalty,
        penalty_applied_now=True,
    )


def apply_assessment(violation: Violation, assessment: FineAssessment) -> bool:
    """
    Write a newly due late penalty onto ``violation``.

    Returns True when the row was changed. A second call with the same
    assessment is a no-op because the flag is already set.
    """
    if not assessment.penalty_applied_now or violation.late_penalty_applied:
        return False

    violation.additional_penalties = quantize_money(
        Decimal(violation.additional_penalties or 0) + assessment.late_penalty
    )
    violation.total_fine = quantize_money(
        Decimal(violation.base_fine) + violation.additional_penalties
    )
    violation.late_penalty_applied = True

    logger.info(
        "late_penalty_applied",
        violation_id=str(violation.id),
        base_fine=str(violation.base_fine),
        penalty=str(assessment.late_penalty),
        total_fine=str(violation.total_fine),
    )
    return True


def log_client_amount_discrepancy(
    violation: Violation, assessment: FineAssessment, client_amount: Optional[Decimal]
) -> None:
    """Record a client-quoted amount that differs from what is actually charged."""
    if client_amount is None:
        return
    if quantize_money(client_amount) != assessment.amount:
        logger.warning(
            "fine_amount_discrepancy",
            violation_id=str(violation.id),
            client_amount=str(client_amount),
            charged_amount=str(assessment.amount),
        )
