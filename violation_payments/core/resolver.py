"""
Identifier resolver.

Locates the violation a payment request refers to from whatever the
citizen typed. Strategies run in a fixed order and the first hit wins:

1. ``by_internal_id``: a UUID anywhere in the supplied id string
2. ``by_reference``: an ``OVR``/``LPC`` reference, tolerant of case, dashes
   and surrounding noise
3. ``by_driver_name_and_partial_reference``: payer first name plus the
   reference digits, limited to violations that can still be paid
"""
import re
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import structlog

from violation_payments.core.errors import InvalidRequestError, ViolationNotFoundError
from violation_payments.database.models import PAYABLE_VIOLATION_STATUSES, Violation
from violation_payments.database.repository import ReconciliationRepository
from violation_payments.monitoring import metrics

logger = structlog.get_logger(__name__)

_UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
_REFERENCE_PATTERN = re.compile(r"(OVR|LPC)-?(\d{3,10})")
_DIGITS_PATTERN = re.compile(r"\d{3,}")

# Canonical spelling per prefix: OVR numbers have no dash, LPC numbers do
_CANONICAL_SEPARATOR = {"OVR": "", "LPC": "-"}


@dataclass(frozen=True)
class ResolutionHints:
    """Identifiers a payment request may carry."""

    violation_id: Optional[str] = None
    reference: Optional[str] = None
    payer_name: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("violation_id", "reference", "payer_name"):
            value = getattr(self, name)
            if value is not None and not value.strip():
                object.__setattr__(self, name, None)


def extract_violation_id(raw: Optional[str]) -> Optional[uuid.UUID]:
    """Return the first UUID embedded in ``raw``, if any."""
    if not raw:
        return None
    match = _UUID_PATTERN.search(raw)
    if match is None:
        return None
    return uuid.UUID(match.group(0))


def normalize_reference(raw: Optional[str]) -> List[str]:
    """
    Candidate stored spellings for a typed reference, most likely first.

    >>> normalize_reference("  ovr-200extra")
    ['OVR200', 'OVR-200', 'OVR-200EXTRA']
    >>> normalize_reference("lpc000123 ")
    ['LPC-000123', 'LPC000123']
    """
    if not raw:
        return []
    cleaned = raw.strip().upper()
    if not cleaned:
        return []

    match = _REFERENCE_PATTERN.search(cleaned)
    if match is None:
        return [cleaned]

    prefix, digits = match.group(1), match.group(2)
    canonical = f"{prefix}{_CANONICAL_SEPARATOR[prefix]}{digits}"
    alternate = f"{prefix}-{digits}" if canonical == f"{prefix}{digits}" else f"{prefix}{digits}"
    candidates = [canonical, alternate]
    if cleaned not in candidates:
        candidates.append(cleaned)
    return candidates


def _reference_digits(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    match = _REFERENCE_PATTERN.search(raw.upper())
    if match is not None:
        return match.group(2)
    match = _DIGITS_PATTERN.search(raw)
    return match.group(0) if match else None


Strategy = Callable[[ResolutionHints, ReconciliationRepository], Awaitable[Optional[Violation]]]


async def by_internal_id(
    hints: ResolutionHints, repository: ReconciliationRepository
) -> Optional[Violation]:
    violation_id = extract_violation_id(hints.violation_id)
    if violation_id is None:
        return None

    violation = await repository.find_violation_by_id(violation_id)
    if violation is not None and hints.reference:
        if violation.ovr_number.upper() not in normalize_reference(hints.reference):
            # The id is the primary key and is trusted over the typed reference
            logger.warning(
                "violation_reference_mismatch",
                violation_id=str(violation.id),
                stored_reference=violation.ovr_number,
                supplied_reference=hints.reference,
            )
    return violation


async def by_reference(
    hints: ResolutionHints, repository: ReconciliationRepository
) -> Optional[Violation]:
    candidates = normalize_reference(hints.reference)
    if not candidates:
        return None
    return await repository.find_violation_by_reference(candidates)


async def by_driver_name_and_partial_reference(
    hints: ResolutionHints, repository: ReconciliationRepository
) -> Optional[Violation]:
    """Last resort: payer first name plus the reference digits."""
    if not hints.payer_name:
        return None
    digits = _reference_digits(hints.reference)
    if digits is None:
        return None
    first_name = hints.payer_name.split()[0]

    candidates = await repository.find_violations_by_driver_name_and_partial_reference(
        first_name,
        digits,
        statuses=PAYABLE_VIOLATION_STATUSES,
    )
    if not candidates:
        return None

    # Closest reference length first; ``sorted`` is stable so ties keep newest-first
    ranked = sorted(candidates, key=lambda v: abs(len(v.ovr_number) - len(hints.reference or "")))
    return ranked[0]


DEFAULT_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("by_internal_id", by_internal_id),
    ("by_reference", by_reference),
    ("by_driver_name_and_partial_reference", by_driver_name_and_partial_reference),
)


class ViolationResolver:
    """Runs resolution strategies in order and returns the first match."""

    def __init__(self, strategies: Sequence[Tuple[str, Strategy]] = DEFAULT_STRATEGIES):
        self.strategies = tuple(strategies)

    async def resolve(
        self, hints: ResolutionHints, repository: ReconciliationRepository
    ) -> Violation:
        if not hints.violation_id and not hints.reference:
            raise InvalidRequestError("A violation id or reference number is required")

        for name, strategy in self.strategies:
            violation = await strategy(hints, repository)
            if violation is not None:
                metrics.resolution_strategy_hits_total.labels(strategy=name).inc()
                logger.info(
                    "violation_resolved",
                    strategy=name,
                    violation_id=str(violation.id),
                    ovr_number=violation.ovr_number,
                )
                return violation

        metrics.resolution_failures_total.inc()
        attempted = []
        if hints.violation_id:
            attempted.append(f"ID {hints.violation_id}")
        if hints.reference:
            attempted.append(f"reference {hints.reference}")
        logger.warning(
            "violation_not_found",
            violation_id=hints.violation_id,
            reference=hints.reference,
        )
        raise ViolationNotFoundError(attempted)
