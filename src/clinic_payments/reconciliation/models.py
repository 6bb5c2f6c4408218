"""Models and errors for payment/appointment reconciliation."""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class SyncContractError(ValueError):
    """Raised when a caller passes a payment record that cannot be synced."""


class AppointmentUpdateError(Exception):
    """Raised when every attempt to mark an appointment paid has failed."""

    def __init__(self, appointment_id: int, attempts: int, last_error: Optional[str] = None):
        self.appointment_id = appointment_id
        self.attempts = attempts
        self.last_error = last_error
        message = f"Failed to update appointment {appointment_id} after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)


class SweepOutcome(str, enum.Enum):
    """Outcome of repairing one appointment during a sweep."""
    FIXED = "fixed"
    FAILED = "failed"
    ERROR = "error"


class StepResult(BaseModel):
    """Result of a single store write."""
    success: bool
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class UpdateResult(BaseModel):
    """Result of marking an appointment paid."""
    success: bool
    appointment_id: int
    attempts: int = Field(default=1, description="Attempts used, including the successful one")
    rows_affected: int = 0
    data: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None


class VerificationResult(BaseModel):
    """Authoritative re-read of an appointment's payment status."""
    success: bool
    appointment_id: int
    payment_status: Optional[str] = None
    message: str


class SyncResult(BaseModel):
    """Structured outcome of a reconciliation call.

    ``success`` is true only when the appointment was re-read as paid. A false
    value after a gateway execution means the money moved but local state
    still needs a repair, not that the payment failed.
    """
    success: bool
    appointment_id: Optional[int] = None
    payment_update: Optional[StepResult] = None
    appointment_update: Optional[UpdateResult] = None
    verification: Optional[VerificationResult] = None
    payment: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message: str


class SyncCheck(BaseModel):
    """Whether an appointment agrees with its payments."""
    appointment_id: int
    is_synced: bool
    appointment_payment_status: Optional[str] = None
    has_completed_payment: bool = False
    completed_payment: Optional[Dict[str, Any]] = None
    issue: Optional[str] = None
    error: Optional[str] = None


class SweepResult(BaseModel):
    """Repair outcome for one appointment found by a sweep."""
    appointment_id: int
    status: SweepOutcome
    message: Optional[str] = None
    error: Optional[str] = None


class SweepReport(BaseModel):
    """Summary of one sweep over drifted appointments."""
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    total_issues: int = 0
    fixed_count: int = 0
    results: List[SweepResult] = Field(default_factory=list)
    error: Optional[str] = None


class MonitorStatus(BaseModel):
    """Read-only snapshot of the status monitor."""
    is_running: bool
    check_interval: float
    current_sync_issues: Optional[int] = None
    last_check: Optional[datetime] = None
    subscription_active: bool = False
    error: Optional[str] = None


class PaymentCompletedEvent(BaseModel):
    """Published when a payment row becomes completed."""
    payment_id: str
    appointment_id: int
    transaction_id: Optional[str] = None
    amount: Optional[str] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
