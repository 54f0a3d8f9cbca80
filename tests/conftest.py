"""
Pytest configuration and fixtures.
"""
import itertools
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from violation_payments.config import Settings
from violation_payments.core import ReconciliationService
from violation_payments.database import Base, ReconciliationRepository, Violation, create_session_factory
from violation_payments.integrations import build_gateway_registry
from violation_payments.schemas import InitiatePaymentRequest

_reference_counter = itertools.count(100000)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: pure logic tests with no database")
    config.addinivalue_line("markers", "race: concurrent request scenarios")
    config.addinivalue_line("markers", "integration: tests against the database and gateways")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'violations.db'}",
        sandbox_mode=True,
        app_name="violation-payments-test",
        app_env="test",
        app_url="https://violations.test",
        frontend_url="https://pay.violations.test",
        gateway_timeout_seconds=2.0,
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> ReconciliationService:
    """Reconciliation service wired to sandbox gateways that settle immediately."""
    return ReconciliationService(
        session_factory, build_gateway_registry(test_settings), test_settings
    )


@pytest.fixture
def make_violation(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Violation]]:
    """Insert a violation; keyword arguments override the defaults."""

    async def _make(**overrides: Any) -> Violation:
        now = datetime.now(timezone.utc)
        base_fine = Decimal(overrides.pop("base_fine", Decimal("1000.00")))
        penalties = Decimal(overrides.pop("additional_penalties", Decimal("0.00")))
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "ovr_number": f"OVR{next(_reference_counter)}",
            "driver_name": "Juan Dela Cruz",
            "plate_number": "ABC1234",
            "base_fine": base_fine,
            "additional_penalties": penalties,
            "total_fine": base_fine + penalties,
            "late_penalty_applied": False,
            "due_date": date.today(),
            "payment_deadline": now + timedelta(days=7),
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)

        violation = Violation(**values)
        async with session_factory() as session:
            async with session.begin():
                session.add(violation)
        return violation

    return _make


@pytest.fixture
def load_violation(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[uuid.UUID], Awaitable[Violation]]:
    """Read a violation back through a fresh session."""

    async def _load(violation_id: uuid.UUID) -> Violation:
        async with session_factory() as session:
            return await ReconciliationRepository(session).find_violation_by_id(violation_id)

    return _load


@pytest.fixture
def list_payments(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[list]]:
    async def _list(violation_id: uuid.UUID) -> list:
        async with session_factory() as session:
            return await ReconciliationRepository(session).list_payments_for_violation(violation_id)

    return _list


@pytest.fixture
def payment_request() -> Callable[..., InitiatePaymentRequest]:
    """Build an initiate request; keyword arguments override the defaults."""

    def _build(**overrides: Any) -> InitiatePaymentRequest:
        data: dict[str, Any] = {
            "gateway": "gcash",
            "payer_name": "Juan Dela Cruz",
            "payer_email": "juan@example.com",
            "payer_phone": "09171234567",
        }
        data.update(overrides)
        return InitiatePaymentRequest(**data)

    return _build
