"""SQLAlchemy models for appointments, payments and sync auditing."""

import uuid
import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    Text,
    Index,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentStatus(str, enum.Enum):
    """Lifecycle of a payment record."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class AppointmentStatus(str, enum.Enum):
    """Booking lifecycle of an appointment."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class AppointmentPaymentStatus(str, enum.Enum):
    """Payment state as seen from the appointment."""
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class SyncFixMethod(str, enum.Enum):
    """What triggered a reconciliation attempt."""
    PAYMENT_EXECUTION = "payment_execution"
    WEBHOOK = "webhook"
    MANUAL = "manual"
    AUTO_MONITOR = "auto_monitor"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Appointment(Base):
    """Appointment booked by a patient with a dentist."""
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AppointmentStatus.PENDING.value)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AppointmentPaymentStatus.UNPAID.value
    )

    # Denormalized participant details used for notifications
    patient_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    patient_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    dentist_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    dentist_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    service_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    service_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    appointment_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="appointment",
        cascade="all, delete-orphan",
        order_by="Payment.created_at.desc()",
    )

    __table_args__ = (
        Index("ix_appointments_payment_status", "payment_status"),
        Index("ix_appointments_status", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert appointment to dictionary representation."""
        return {
            "id": self.id,
            "status": self.status,
            "payment_status": self.payment_status,
            "patient_name": self.patient_name,
            "patient_email": self.patient_email,
            "dentist_name": self.dentist_name,
            "dentist_email": self.dentist_email,
            "service_name": self.service_name,
            "service_price": str(self.service_price) if self.service_price is not None else None,
            "appointment_time": _isoformat(self.appointment_time),
            "rejection_reason": self.rejection_reason,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


class Payment(Base):
    """Payment made through the gateway for one appointment."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    appointment_id: Mapped[int] = mapped_column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PHP")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    # PayPal payment id (PAY-...) and sale id
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    appointment: Mapped["Appointment"] = relationship("Appointment", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_status", "status"),
        # At most one completed payment per appointment
        Index(
            "uq_payments_completed_appointment",
            "appointment_id",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert payment to dictionary representation."""
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "gateway_payment_id": self.gateway_payment_id,
            "gateway_transaction_id": self.gateway_transaction_id,
            "completed_at": _isoformat(self.completed_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


class SyncAuditLog(Base):
    """Audit trail of reconciliation attempts on an appointment."""
    __tablename__ = "payment_sync_audit"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    appointment_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    fix_method: Mapped[str] = mapped_column(String(50), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_payment_sync_audit_created_at", "created_at"),
    )

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        """Get details as dictionary."""
        if self.details_json:
            return json.loads(self.details_json)
        return None

    @details.setter
    def details(self, value: Optional[Dict[str, Any]]) -> None:
        """Set details from dictionary."""
        if value is not None:
            self.details_json = json.dumps(value, default=str)
        else:
            self.details_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit entry to dictionary representation."""
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "payment_id": self.payment_id,
            "fix_method": self.fix_method,
            "success": self.success,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "details": self.details,
            "created_at": _isoformat(self.created_at),
        }
