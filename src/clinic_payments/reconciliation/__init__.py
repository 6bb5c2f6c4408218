"""Payment/appointment status reconciliation.

A completed payment and its appointment are written independently, so the
appointment's payment_status can lag behind. This package repairs that drift:

- ReconciliationService syncs an appointment right after gateway execution
  and on demand
- StatusMonitor sweeps for drift periodically and reacts to completion
  events from the PaymentChangeFeed
"""

from .models import (
    AppointmentUpdateError,
    MonitorStatus,
    PaymentCompletedEvent,
    StepResult,
    SweepOutcome,
    SweepReport,
    SweepResult,
    SyncCheck,
    SyncContractError,
    SyncResult,
    UpdateResult,
    VerificationResult,
)
from .feed import PaymentChangeFeed, Subscription
from .service import ReconciliationService, normalize_appointment_id
from .monitor import StatusMonitor

__all__ = [
    # Models
    "AppointmentUpdateError",
    "MonitorStatus",
    "PaymentCompletedEvent",
    "StepResult",
    "SweepOutcome",
    "SweepReport",
    "SweepResult",
    "SyncCheck",
    "SyncContractError",
    "SyncResult",
    "UpdateResult",
    "VerificationResult",
    # Core Components
    "PaymentChangeFeed",
    "Subscription",
    "ReconciliationService",
    "normalize_appointment_id",
    "StatusMonitor",
]
