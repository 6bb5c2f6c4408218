"""Repository layer for appointment and payment persistence operations."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Appointment,
    Payment,
    SyncAuditLog,
    PaymentStatus,
    AppointmentPaymentStatus,
)

logger = logging.getLogger(__name__)


class AppointmentRepository:
    """Repository for Appointment reads and payment status updates."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(self, **fields: Any) -> Appointment:
        """Create an appointment record.

        Appointments are booked by the wider application; this is used by
        seeding and tests.
        """
        appointment = Appointment(**fields)
        self.session.add(appointment)
        await self.session.flush()
        logger.debug(f"Created appointment {appointment.id}")
        return appointment

    async def get_by_id(self, appointment_id: int) -> Optional[Appointment]:
        """Get an appointment by its ID.

        Args:
            appointment_id: Appointment ID.

        Returns:
            Appointment instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Appointment).where(Appointment.id == appointment_id)
        )
        return result.scalar_one_or_none()

    async def set_payment_status(
        self,
        appointment_id: int,
        payment_status: str,
    ) -> List[Appointment]:
        """Set the payment status of an appointment by ID.

        Args:
            appointment_id: Appointment ID.
            payment_status: New payment status value.

        Returns:
            The updated rows; empty if no appointment matched.
        """
        result = await self.session.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id)
            .values(payment_status=payment_status, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return []

        refreshed = await self.session.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .execution_options(populate_existing=True)
        )
        return list(refreshed.scalars().all())

    async def mark_paid(self, appointment_id: int) -> List[Appointment]:
        """Mark an appointment as paid, returning the updated rows."""
        return await self.set_payment_status(
            appointment_id, AppointmentPaymentStatus.PAID.value
        )

    async def mark_rejected(
        self,
        appointment: Appointment,
        reason: Optional[str] = None,
    ) -> Appointment:
        """Record a rejection on an appointment."""
        appointment.status = "rejected"
        appointment.rejection_reason = reason or "No reason provided"
        appointment.updated_at = datetime.utcnow()
        await self.session.flush()
        return appointment

    def _sync_issue_query(self):
        return (
            select(Appointment.id)
            .join(Payment, Payment.appointment_id == Appointment.id)
            .where(
                and_(
                    Appointment.payment_status == AppointmentPaymentStatus.UNPAID.value,
                    Payment.status == PaymentStatus.COMPLETED.value,
                )
            )
            .distinct()
        )

    async def find_sync_issues(self, limit: Optional[int] = None) -> List[int]:
        """Find appointments that are unpaid although a payment completed.

        Args:
            limit: Optional maximum number of appointment IDs to return.

        Returns:
            Appointment IDs ordered ascending.
        """
        query = self._sync_issue_query().order_by(Appointment.id)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_sync_issues(self) -> int:
        """Count appointments currently drifted from their payments."""
        result = await self.session.execute(
            select(func.count()).select_from(self._sync_issue_query().subquery())
        )
        return int(result.scalar_one())


class PaymentRepository:
    """Repository for Payment CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        appointment_id: int,
        amount: Decimal,
        currency: str = "PHP",
        gateway_payment_id: Optional[str] = None,
        status: str = PaymentStatus.PENDING.value,
    ) -> Payment:
        """Create a new payment record.

        Args:
            appointment_id: Appointment being paid for.
            amount: Payment amount in major units.
            currency: Three-letter currency code.
            gateway_payment_id: Payment identifier issued by the gateway.
            status: Initial payment status.

        Returns:
            Created Payment instance.
        """
        payment = Payment(
            appointment_id=appointment_id,
            amount=amount,
            currency=currency.upper(),
            gateway_payment_id=gateway_payment_id,
            status=status,
        )
        self.session.add(payment)
        await self.session.flush()

        logger.info(f"Created payment {payment.id} for appointment {appointment_id} with status {status}")
        return payment

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """Get a payment by its ID."""
        result = await self.session.execute(
            select(Payment).where(Payment.id == payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        """Get a payment by the identifier the gateway issued at creation.

        Args:
            gateway_payment_id: Gateway payment identifier.

        Returns:
            Payment instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Payment).where(Payment.gateway_payment_id == gateway_payment_id)
        )
        return result.scalar_one_or_none()

    async def mark_completed(
        self,
        payment_id: str,
        transaction_id: Optional[str],
    ) -> Optional[Payment]:
        """Mark a payment completed and stamp the gateway transaction.

        Args:
            payment_id: Payment ID.
            transaction_id: Gateway transaction (sale) identifier.

        Returns:
            The updated Payment, or None if no payment matched.
        """
        now = datetime.utcnow()
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(
                status=PaymentStatus.COMPLETED.value,
                gateway_transaction_id=transaction_id,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None

        refreshed = await self.session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        payment = refreshed.scalar_one()
        logger.info(f"Marked payment {payment_id} completed with transaction {transaction_id}")
        return payment

    async def update_status(self, payment: Payment, new_status: str) -> Payment:
        """Update payment status.

        Args:
            payment: Payment instance to update.
            new_status: New payment status.

        Returns:
            Updated Payment instance.
        """
        payment.status = new_status
        payment.updated_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Updated payment {payment.id} status to {new_status}")
        return payment

    async def get_latest_completed(self, appointment_id: int) -> Optional[Payment]:
        """Get the most recently completed payment for an appointment."""
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.appointment_id == appointment_id,
                    Payment.status == PaymentStatus.COMPLETED.value,
                )
            )
            .order_by(Payment.completed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_by_appointment(
        self,
        appointment_id: int,
        status: Optional[str] = None,
    ) -> List[Payment]:
        """List payments for an appointment, newest first.

        Args:
            appointment_id: Appointment ID.
            status: Optional status to filter by.

        Returns:
            List of Payment instances.
        """
        conditions = [Payment.appointment_id == appointment_id]
        if status:
            conditions.append(Payment.status == status)
        result = await self.session.execute(
            select(Payment)
            .where(and_(*conditions))
            .order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())


class SyncAuditRepository:
    """Repository for SyncAuditLog records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        appointment_id: int,
        fix_method: str,
        success: bool,
        payment_id: Optional[str] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SyncAuditLog:
        """Create a new audit entry for a reconciliation attempt.

        Args:
            appointment_id: Appointment that was reconciled.
            fix_method: What triggered the attempt.
            success: Whether verification confirmed the appointment paid.
            payment_id: Completed payment the repair relied on.
            previous_status: Appointment payment status before the repair.
            new_status: Appointment payment status after the repair.
            details: Additional data about the attempt.

        Returns:
            Created SyncAuditLog instance.
        """
        entry = SyncAuditLog(
            appointment_id=appointment_id,
            payment_id=payment_id,
            fix_method=fix_method,
            success=success,
            previous_status=previous_status,
            new_status=new_status,
        )
        if details:
            entry.details = details

        self.session.add(entry)
        await self.session.flush()

        logger.debug(
            f"Recorded {fix_method} sync for appointment {appointment_id}: "
            f"success={success}"
        )
        return entry

    async def list_by_appointment(
        self,
        appointment_id: int,
        limit: int = 100,
    ) -> List[SyncAuditLog]:
        """Get audit entries for an appointment, newest first."""
        result = await self.session.execute(
            select(SyncAuditLog)
            .where(SyncAuditLog.appointment_id == appointment_id)
            .order_by(SyncAuditLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
