"""Database package for violation payments."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_db,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    Payment,
    PaymentEvent,
    PaymentStatus,
    Violation,
    ViolationStatus,
)
from .repository import ReconciliationRepository

__all__ = [
    "Base",
    "Payment",
    "PaymentEvent",
    "PaymentStatus",
    "ReconciliationRepository",
    "Violation",
    "ViolationStatus",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "get_db",
    "get_session_factory",
    "init_db",
]
