"""Database module for appointment and payment persistence."""

from .models import (
    Appointment,
    Payment,
    SyncAuditLog,
    Base,
    PaymentStatus,
    AppointmentStatus,
    AppointmentPaymentStatus,
    SyncFixMethod,
)
from .session import (
    get_database_url,
    create_async_engine,
    get_async_session_factory,
    session_scope,
    DatabaseManager,
)
from .repository import (
    AppointmentRepository,
    PaymentRepository,
    SyncAuditRepository,
)

__all__ = [
    # Models
    "Appointment",
    "Payment",
    "SyncAuditLog",
    "Base",
    "PaymentStatus",
    "AppointmentStatus",
    "AppointmentPaymentStatus",
    "SyncFixMethod",
    # Session management
    "get_database_url",
    "create_async_engine",
    "get_async_session_factory",
    "session_scope",
    "DatabaseManager",
    # Repositories
    "AppointmentRepository",
    "PaymentRepository",
    "SyncAuditRepository",
]
