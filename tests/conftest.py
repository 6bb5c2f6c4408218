"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("PAYMENT_GATEWAY", "simulator")

from clinic_payments.config import ReconciliationSettings
from clinic_payments.database import (
    Appointment,
    Base,
    Payment,
    create_async_engine,
    get_async_session_factory,
    session_scope,
)
from clinic_payments.reconciliation import PaymentChangeFeed, ReconciliationService


@pytest.fixture
def mock_api_key(monkeypatch):
    """Set up API key for authentication."""
    monkeypatch.setenv("API_KEY", "test_api_key_12345")
    return "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


# Database fixtures. A file database lets concurrent sessions use separate connections.
@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'clinic_test.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def create_appointment(session_factory):
    """Insert an appointment and return its id."""

    async def _create(
        appointment_id: Optional[int] = None,
        status: str = "approved",
        payment_status: str = "unpaid",
        service_price: Optional[Decimal] = Decimal("1500.00"),
        **fields: Any,
    ) -> int:
        values = {
            "status": status,
            "payment_status": payment_status,
            "service_price": service_price,
            "service_name": "Tooth Extraction",
            "patient_name": "Maria Santos",
            "patient_email": "maria@example.com",
            "dentist_name": "Dr. Reyes",
            "dentist_email": "reyes@example.com",
            "appointment_time": datetime(2026, 11, 2, 9, 30),
        }
        values.update(fields)
        if appointment_id is not None:
            values["id"] = appointment_id
        async with session_scope(session_factory) as session:
            appointment = Appointment(**values)
            session.add(appointment)
            await session.flush()
            return appointment.id

    return _create


@pytest.fixture
def create_payment(session_factory):
    """Insert a payment and return it as a dict."""

    async def _create(
        appointment_id: int,
        status: str = "pending",
        amount: Decimal = Decimal("1500.00"),
        gateway_payment_id: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if status == "completed" and completed_at is None:
            completed_at = datetime.utcnow()
        async with session_scope(session_factory) as session:
            payment = Payment(
                appointment_id=appointment_id,
                amount=amount,
                status=status,
                gateway_payment_id=gateway_payment_id or f"PAY-{appointment_id}-{status}",
                gateway_transaction_id=gateway_transaction_id,
                completed_at=completed_at,
            )
            session.add(payment)
            await session.flush()
            return payment.to_dict()

    return _create


@pytest.fixture
def get_appointment(session_factory):
    """Re-read an appointment as a dict (None if missing)."""

    async def _get(appointment_id: int) -> Optional[Dict[str, Any]]:
        async with session_scope(session_factory) as session:
            appointment = await session.get(Appointment, appointment_id)
            return appointment.to_dict() if appointment else None

    return _get


@pytest.fixture
def get_payment(session_factory):
    """Re-read a payment as a dict (None if missing)."""

    async def _get(payment_id: str) -> Optional[Dict[str, Any]]:
        async with session_scope(session_factory) as session:
            payment = await session.get(Payment, payment_id)
            return payment.to_dict() if payment else None

    return _get


@pytest.fixture
def feed():
    return PaymentChangeFeed()


@pytest.fixture
def reconciliation(session_factory, feed):
    """Reconciliation service with no backoff delay."""
    return ReconciliationService(
        session_factory,
        feed=feed,
        settings=ReconciliationSettings(max_retries=3, retry_delay=0),
    )
