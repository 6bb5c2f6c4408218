"""Service layer for payment/appointment status reconciliation."""

import asyncio
import logging
import re
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import ReconciliationSettings
from ..database import (
    AppointmentPaymentStatus,
    AppointmentRepository,
    PaymentRepository,
    SyncAuditRepository,
    session_scope,
)
from .feed import PaymentChangeFeed
from .models import (
    AppointmentUpdateError,
    PaymentCompletedEvent,
    StepResult,
    SyncCheck,
    SyncContractError,
    SyncResult,
    UpdateResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)

_DECIMAL_ID = re.compile(r"[0-9]+")


class PaymentNotifier(Protocol):
    async def notify_payment_confirmed(self, appointment_id: int, amount: Any) -> Any:
        ...


def normalize_appointment_id(value: Any) -> int:
    """Convert an appointment identifier to the store's integer key.

    Accepts ints and strings of ASCII digits. Raises SyncContractError for
    anything else.
    """
    if isinstance(value, bool):
        raise SyncContractError(f"Invalid appointment id: {value!r}")
    if isinstance(value, int):
        appointment_id = value
    elif isinstance(value, str) and _DECIMAL_ID.fullmatch(value.strip()):
        appointment_id = int(value.strip())
    else:
        raise SyncContractError(f"Invalid appointment id: {value!r}")

    if appointment_id <= 0:
        raise SyncContractError(f"Invalid appointment id: {value!r}")
    return appointment_id


def _record_value(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


class ReconciliationService:
    """Drives an appointment's payment status into agreement with its payments.

    Every step opens its own short-lived session, so concurrent calls for the
    same appointment never share state and each check re-reads the store.
    All writes set the same target value, which lets concurrent repairs
    converge without locking.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[PaymentNotifier] = None,
        feed: Optional[PaymentChangeFeed] = None,
        settings: Optional[ReconciliationSettings] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            session_factory: Factory for short-lived database sessions.
            notifier: Optional notifier told about confirmed payments.
            feed: Optional change feed that receives completion events.
            settings: Retry policy for appointment updates.
        """
        self.session_factory = session_factory
        self.notifier = notifier
        self.feed = feed
        self.settings = settings or ReconciliationSettings()

    async def sync_payment_status(
        self,
        payment_record: Any,
        executed_payment: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None,
    ) -> SyncResult:
        """Complete a payment after gateway execution and mark its appointment paid.

        Args:
            payment_record: Payment row (ORM object or dict) with id and appointment_id.
            executed_payment: Raw gateway response for the executed payment.
            transaction_id: Gateway transaction (sale) identifier.

        Returns:
            SyncResult; success is true only if the appointment re-reads as paid.

        Raises:
            SyncContractError: If the payment record or its ids are missing.
        """
        if payment_record is None:
            raise SyncContractError("Payment record is required")

        payment_id = _record_value(payment_record, "id")
        raw_appointment_id = _record_value(payment_record, "appointment_id")
        if not payment_id:
            raise SyncContractError("Payment record has no id")
        if raw_appointment_id is None:
            raise SyncContractError(f"Payment {payment_id} has no appointment_id")
        appointment_id = normalize_appointment_id(raw_appointment_id)

        logger.info(
            f"Starting payment sync for payment {payment_id}, "
            f"appointment {appointment_id}, transaction {transaction_id}"
        )

        try:
            async with session_scope(self.session_factory) as session:
                payment = await PaymentRepository(session).mark_completed(payment_id, transaction_id)
                payment_data = payment.to_dict() if payment else None
        except Exception as e:
            logger.error(f"Failed to complete payment {payment_id} for appointment {appointment_id}: {e}")
            return SyncResult(
                success=False,
                appointment_id=appointment_id,
                payment_update=StepResult(success=False, error=str(e)),
                error=str(e),
                message="Payment sync failed due to system error",
            )

        if payment_data is None:
            error = f"Payment {payment_id} not found"
            logger.error(f"Failed to complete payment for appointment {appointment_id}: {error}")
            return SyncResult(
                success=False,
                appointment_id=appointment_id,
                payment_update=StepResult(success=False, error=error),
                error=error,
                message="Payment sync failed due to system error",
            )

        payment_update = StepResult(success=True, data=payment_data)
        self._publish_completion(payment_data, appointment_id, transaction_id)

        try:
            appointment_update = await self._update_appointment_captured(appointment_id)
            verification = await self.verify_sync(appointment_id)

            if verification.success:
                await self._notify(appointment_id, payment_data.get("amount"))
                logger.info(f"Payment sync completed for appointment {appointment_id}")
                message = "Payment status synchronized successfully"
            else:
                logger.warning(
                    f"Payment {payment_id} completed but appointment {appointment_id} "
                    f"is not paid: {verification.message}"
                )
                message = "Payment sync failed - manual intervention required"

            return SyncResult(
                success=verification.success,
                appointment_id=appointment_id,
                payment_update=payment_update,
                appointment_update=appointment_update,
                verification=verification,
                payment=payment_data,
                message=message,
            )
        except Exception as e:
            logger.error(f"Payment sync error for appointment {appointment_id}: {e}")
            return SyncResult(
                success=False,
                appointment_id=appointment_id,
                payment_update=payment_update,
                payment=payment_data,
                error=str(e),
                message="Payment sync failed due to system error",
            )

    async def manual_sync(self, appointment_id: Any) -> SyncResult:
        """Repair one appointment from its most recently completed payment.

        Args:
            appointment_id: Appointment to repair.

        Returns:
            SyncResult. Without a completed payment nothing is written.
        """
        appointment_id = normalize_appointment_id(appointment_id)
        logger.info(f"Manual sync requested for appointment {appointment_id}")

        try:
            async with session_scope(self.session_factory) as session:
                payment = await PaymentRepository(session).get_latest_completed(appointment_id)
                payment_data = payment.to_dict() if payment else None

            if payment_data is None:
                logger.info(f"No completed payment for appointment {appointment_id}, nothing to sync")
                return SyncResult(
                    success=False,
                    appointment_id=appointment_id,
                    message="No completed payment found for this appointment",
                )

            appointment_update = await self._update_appointment_captured(appointment_id)
            verification = await self.verify_sync(appointment_id)

            if verification.success:
                message = "Manual sync completed successfully"
            else:
                message = "Manual sync failed - appointment status not updated"

            return SyncResult(
                success=verification.success,
                appointment_id=appointment_id,
                appointment_update=appointment_update,
                verification=verification,
                payment=payment_data,
                message=message,
            )
        except Exception as e:
            logger.error(f"Manual sync error for appointment {appointment_id}: {e}")
            return SyncResult(
                success=False,
                appointment_id=appointment_id,
                error=str(e),
                message="Manual sync failed due to system error",
            )

    async def _update_appointment_captured(self, appointment_id: int) -> UpdateResult:
        try:
            return await self.update_appointment_with_retry(appointment_id)
        except AppointmentUpdateError as e:
            return UpdateResult(
                success=False,
                appointment_id=appointment_id,
                attempts=e.attempts,
                error=str(e),
            )

    async def update_appointment_with_retry(self, appointment_id: Any) -> UpdateResult:
        """Mark an appointment paid, retrying with linear backoff.

        Args:
            appointment_id: Appointment to update.

        Returns:
            The successful UpdateResult.

        Raises:
            AppointmentUpdateError: After max_retries failed attempts.
        """
        appointment_id = normalize_appointment_id(appointment_id)
        max_retries = max(1, self.settings.max_retries)
        last_error = None

        for attempt in range(1, max_retries + 1):
            result = await self.update_appointment_status(appointment_id)
            if result.success:
                result.attempts = attempt
                return result

            last_error = result.error
            logger.warning(
                f"Appointment update attempt {attempt}/{max_retries} failed "
                f"for appointment {appointment_id}: {last_error}"
            )
            if attempt < max_retries:
                await asyncio.sleep(attempt * self.settings.retry_delay)

        logger.error(f"Giving up on appointment {appointment_id} after {max_retries} attempts")
        raise AppointmentUpdateError(appointment_id, max_retries, last_error)

    async def update_appointment_status(self, appointment_id: Any) -> UpdateResult:
        """Single update-by-id setting payment_status to paid.

        Store errors are logged and reported as a failed result.
        """
        appointment_id = normalize_appointment_id(appointment_id)
        try:
            async with session_scope(self.session_factory) as session:
                rows = await AppointmentRepository(session).mark_paid(appointment_id)
                data = [row.to_dict() for row in rows]
        except Exception as e:
            logger.error(f"update_appointment_status failed for appointment {appointment_id}: {e}")
            return UpdateResult(success=False, appointment_id=appointment_id, error=str(e))

        if not data:
            return UpdateResult(
                success=False,
                appointment_id=appointment_id,
                error=f"No appointment rows updated for id {appointment_id}",
            )

        logger.debug(f"Marked appointment {appointment_id} paid ({len(data)} rows)")
        return UpdateResult(
            success=True,
            appointment_id=appointment_id,
            rows_affected=len(data),
            data=data,
        )

    async def verify_sync(self, appointment_id: Any) -> VerificationResult:
        """Re-read the appointment and check that it is paid."""
        appointment_id = normalize_appointment_id(appointment_id)
        try:
            async with session_scope(self.session_factory) as session:
                appointment = await AppointmentRepository(session).get_by_id(appointment_id)
                payment_status = appointment.payment_status if appointment else None
        except Exception as e:
            logger.error(f"Verification read failed for appointment {appointment_id}: {e}")
            return VerificationResult(
                success=False,
                appointment_id=appointment_id,
                message=f"Verification failed: {e}",
            )

        if appointment is None:
            return VerificationResult(
                success=False,
                appointment_id=appointment_id,
                message="Appointment not found",
            )

        if payment_status == AppointmentPaymentStatus.PAID.value:
            return VerificationResult(
                success=True,
                appointment_id=appointment_id,
                payment_status=payment_status,
                message="Payment status successfully updated to paid",
            )

        return VerificationResult(
            success=False,
            appointment_id=appointment_id,
            payment_status=payment_status,
            message=f"Payment status is still {payment_status}, expected paid",
        )

    async def check_appointment_sync(self, appointment_id: Any) -> SyncCheck:
        """Compare an appointment's payment status with its completed payments."""
        appointment_id = normalize_appointment_id(appointment_id)
        try:
            async with session_scope(self.session_factory) as session:
                appointment = await AppointmentRepository(session).get_by_id(appointment_id)
                if appointment is None:
                    return SyncCheck(
                        appointment_id=appointment_id,
                        is_synced=False,
                        error="Appointment not found",
                    )
                payment_status = appointment.payment_status
                payment = await PaymentRepository(session).get_latest_completed(appointment_id)
                payment_data = payment.to_dict() if payment else None
        except Exception as e:
            logger.error(f"Sync check failed for appointment {appointment_id}: {e}")
            return SyncCheck(appointment_id=appointment_id, is_synced=False, error=str(e))

        has_completed = payment_data is not None
        is_paid = payment_status == AppointmentPaymentStatus.PAID.value

        issue = None
        if has_completed and not is_paid:
            issue = "Payment completed but appointment shows unpaid"
        elif is_paid and not has_completed:
            issue = "Appointment marked paid but no completed payment found"

        return SyncCheck(
            appointment_id=appointment_id,
            is_synced=has_completed == is_paid,
            appointment_payment_status=payment_status,
            has_completed_payment=has_completed,
            completed_payment=payment_data,
            issue=issue,
        )

    async def record_audit(
        self,
        appointment_id: int,
        fix_method: str,
        result: SyncResult,
        previous_status: Optional[str] = None,
    ) -> bool:
        """Write a sync audit row for a repair attempt. Best effort."""
        new_status = result.verification.payment_status if result.verification else None
        try:
            async with session_scope(self.session_factory) as session:
                await SyncAuditRepository(session).create(
                    appointment_id=appointment_id,
                    fix_method=fix_method,
                    success=result.success,
                    payment_id=(result.payment or {}).get("id"),
                    previous_status=previous_status,
                    new_status=new_status,
                    details={"message": result.message, "error": result.error},
                )
        except Exception as e:
            logger.warning(f"Failed to record {fix_method} sync audit for appointment {appointment_id}: {e}")
            return False
        return True

    def _publish_completion(
        self,
        payment_data: Dict[str, Any],
        appointment_id: int,
        transaction_id: Optional[str],
    ) -> None:
        if self.feed is None:
            return
        self.feed.publish(
            PaymentCompletedEvent(
                payment_id=payment_data["id"],
                appointment_id=appointment_id,
                transaction_id=transaction_id,
                amount=payment_data.get("amount"),
            )
        )

    async def _notify(self, appointment_id: int, amount: Any) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_payment_confirmed(appointment_id, amount)
        except Exception as e:
            logger.warning(f"Payment confirmation notification failed for appointment {appointment_id}: {e}")
