# clinic_payments package
__version__ = "0.1.0"

from .database import (
    Appointment,
    Payment,
    SyncAuditLog,
    PaymentStatus,
    AppointmentPaymentStatus,
    DatabaseManager,
)
from .services import PaymentService, PaymentFlowError

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    StatusMonitor,
    PaymentChangeFeed,
    SyncResult,
    SyncContractError,
    AppointmentUpdateError,
)
