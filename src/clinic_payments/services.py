"""Payment service layer that ties gateway calls to persistence and reconciliation."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .connectors import COMPLETION_EVENTS, ConnectorBase, GatewayError, GatewayPaymentRequest
from .database import (
    AppointmentPaymentStatus,
    AppointmentRepository,
    AppointmentStatus,
    PaymentRepository,
    PaymentStatus,
    SyncAuditRepository,
    SyncFixMethod,
    session_scope,
)
from .reconciliation.service import ReconciliationService, normalize_appointment_id

logger = logging.getLogger(__name__)


class PaymentFlowError(Exception):
    """A payment request that cannot proceed; carries the HTTP status to report."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PaymentService:
    """Service class for appointment payment flows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ConnectorBase,
        reconciliation: ReconciliationService,
        currency: str = "PHP",
    ):
        """Initialize the service.

        Args:
            session_factory: Factory for short-lived database sessions.
            gateway: Payment gateway connector.
            reconciliation: Service that syncs appointments after execution.
            currency: Currency payments are created in.
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.reconciliation = reconciliation
        self.currency = currency

    async def create_payment(self, appointment_id: Any) -> Dict[str, Any]:
        """Create a gateway payment and a pending payment record for an appointment.

        Args:
            appointment_id: Approved, unpaid appointment to pay for.

        Returns:
            Dict with the pending payment and the gateway approval URL.

        Raises:
            PaymentFlowError: If the appointment cannot be paid for.
            GatewayError: If the gateway rejects the payment.
        """
        appointment_id = normalize_appointment_id(appointment_id)

        async with session_scope(self.session_factory) as session:
            appointment = await AppointmentRepository(session).get_by_id(appointment_id)
            if appointment is None:
                raise PaymentFlowError("Appointment not found", status_code=404)
            if appointment.status != AppointmentStatus.APPROVED.value:
                raise PaymentFlowError("Appointment must be approved before payment")
            if appointment.payment_status == AppointmentPaymentStatus.PAID.value:
                raise PaymentFlowError("Appointment is already paid")
            if appointment.service_price is None:
                raise PaymentFlowError("Appointment has no price to charge")
            amount = appointment.service_price
            service_name = appointment.service_name

        gateway_payment = await self.gateway.create_payment(
            GatewayPaymentRequest(
                amount=amount,
                currency=self.currency,
                description=f"Payment for {service_name or 'dental appointment'}",
                reference=str(appointment_id),
            )
        )

        async with session_scope(self.session_factory) as session:
            payment = await PaymentRepository(session).create(
                appointment_id=appointment_id,
                amount=amount,
                currency=self.currency,
                gateway_payment_id=gateway_payment.id,
            )
            payment_data = payment.to_dict()

        logger.info(
            f"Created {self.gateway.name} payment {gateway_payment.id} "
            f"for appointment {appointment_id}"
        )
        return {
            "payment": payment_data,
            "gateway_payment_id": gateway_payment.id,
            "approval_url": gateway_payment.approval_url,
        }

    async def execute_payment(self, gateway_payment_id: str, payer_id: str) -> Dict[str, Any]:
        """Execute an approved gateway payment and sync the appointment.

        Once the gateway has captured the money this always returns a result;
        a lagging appointment is reported through ``sync_failed``.

        Raises:
            PaymentFlowError: If no payment record matches.
            GatewayError: If the gateway refuses to execute the payment.
        """
        async with session_scope(self.session_factory) as session:
            payment = await PaymentRepository(session).get_by_gateway_payment_id(gateway_payment_id)
            if payment is None:
                raise PaymentFlowError("Payment record not found", status_code=404)
            payment_data = payment.to_dict()

        if payment_data["status"] == PaymentStatus.COMPLETED.value:
            logger.info(f"Payment {gateway_payment_id} already completed, re-checking appointment")
            sync = await self.reconciliation.manual_sync(payment_data["appointment_id"])
            return self._execution_response(payment_data, payment_data["gateway_transaction_id"], sync)

        try:
            executed = await self.gateway.execute_payment(gateway_payment_id, payer_id)
        except GatewayError:
            await self._mark_failed(payment_data["id"])
            raise

        sync = await self.reconciliation.sync_payment_status(
            payment_data,
            executed.raw_response,
            executed.transaction_id,
        )
        if not sync.success:
            logger.warning(
                f"Payment {gateway_payment_id} captured but appointment "
                f"{payment_data['appointment_id']} is not yet paid: {sync.message}"
            )
        return self._execution_response(payment_data, executed.transaction_id, sync)

    def _execution_response(self, payment_data: Dict[str, Any], transaction_id: Optional[str], sync) -> Dict[str, Any]:
        if sync.success:
            message = "Payment completed successfully"
        else:
            message = "Payment completed but appointment status update is pending"
        return {
            "success": True,
            "payment_id": payment_data["id"],
            "appointment_id": payment_data["appointment_id"],
            "transaction_id": transaction_id,
            "sync_failed": not sync.success,
            "sync": sync.model_dump(mode="json"),
            "message": message,
        }

    async def _mark_failed(self, payment_id: str) -> None:
        async with session_scope(self.session_factory) as session:
            repo = PaymentRepository(session)
            payment = await repo.get_by_id(payment_id)
            if payment is not None and payment.status == PaymentStatus.PENDING.value:
                await repo.update_status(payment, PaymentStatus.FAILED.value)

    async def handle_webhook_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a canonical gateway webhook event.

        Completion events sync the referenced payment; others are acknowledged.

        Raises:
            PaymentFlowError: If a completion event references an unknown payment.
        """
        event_type = event.get("type")
        if event_type not in COMPLETION_EVENTS:
            logger.info(f"Ignoring webhook event {event_type}")
            return {"received": True, "event_type": event_type, "processed": False}

        gateway_payment_id = event.get("payment_id")
        if not gateway_payment_id:
            raise PaymentFlowError("Webhook event has no payment reference")

        async with session_scope(self.session_factory) as session:
            payment = await PaymentRepository(session).get_by_gateway_payment_id(gateway_payment_id)
            if payment is None:
                raise PaymentFlowError("Payment record not found", status_code=404)
            payment_data = payment.to_dict()

        logger.info(f"Webhook {event_type} for payment {gateway_payment_id}")
        if payment_data["status"] == PaymentStatus.COMPLETED.value:
            sync = await self.reconciliation.manual_sync(payment_data["appointment_id"])
        else:
            transaction_id = event.get("transaction_id") or payment_data["gateway_transaction_id"]
            sync = await self.reconciliation.sync_payment_status(payment_data, event.get("payload"), transaction_id)

        return {
            "received": True,
            "event_type": event_type,
            "processed": True,
            "sync": sync.model_dump(mode="json"),
        }

    async def refund_appointment(self, appointment_id: Any, reason: Optional[str] = None) -> Dict[str, Any]:
        """Refund a paid appointment that is being rejected.

        Both the payment and the appointment move to refunded together.

        Raises:
            PaymentFlowError: If the appointment is not in a refundable state.
            GatewayError: If the gateway refuses the refund.
        """
        appointment_id = normalize_appointment_id(appointment_id)

        async with session_scope(self.session_factory) as session:
            appointment = await AppointmentRepository(session).get_by_id(appointment_id)
            if appointment is None:
                raise PaymentFlowError("Appointment not found", status_code=404)
            if appointment.payment_status != AppointmentPaymentStatus.PAID.value:
                raise PaymentFlowError("Appointment is not paid")
            payment = await PaymentRepository(session).get_latest_completed(appointment_id)
            if payment is None or not payment.gateway_transaction_id:
                raise PaymentFlowError("No completed payment with a transaction to refund")
            payment_id = payment.id
            sale_id = payment.gateway_transaction_id
            amount = payment.amount
            currency = payment.currency

        refund = await self.gateway.refund_sale(sale_id, amount, currency)

        async with session_scope(self.session_factory) as session:
            payment_repo = PaymentRepository(session)
            appointment_repo = AppointmentRepository(session)
            payment = await payment_repo.get_by_id(payment_id)
            await payment_repo.update_status(payment, PaymentStatus.REFUNDED.value)
            await appointment_repo.set_payment_status(appointment_id, AppointmentPaymentStatus.REFUNDED.value)
            appointment = await appointment_repo.get_by_id(appointment_id)
            await appointment_repo.mark_rejected(appointment, reason)
            payment_data = payment.to_dict()
            appointment_data = appointment.to_dict()

        logger.info(f"Refunded sale {sale_id} for appointment {appointment_id}")
        return {
            "success": True,
            "refund": refund.model_dump(mode="json"),
            "payment": payment_data,
            "appointment": appointment_data,
        }

    async def list_payments(self, appointment_id: Any, status: Optional[str] = None) -> Dict[str, Any]:
        """Payment history for an appointment, newest first.

        Raises:
            PaymentFlowError: If the appointment is unknown or the status filter is invalid.
        """
        appointment_id = normalize_appointment_id(appointment_id)
        if status is not None:
            status = _valid_payment_status(status)

        async with session_scope(self.session_factory) as session:
            if await AppointmentRepository(session).get_by_id(appointment_id) is None:
                raise PaymentFlowError("Appointment not found", status_code=404)
            payments = await PaymentRepository(session).list_by_appointment(appointment_id, status)
            return {
                "appointment_id": appointment_id,
                "payments": [p.to_dict() for p in payments],
            }

    async def get_payment_details(self, payment_id: str) -> Dict[str, Any]:
        """Get a payment record together with its appointment."""
        async with session_scope(self.session_factory) as session:
            payment = await PaymentRepository(session).get_by_id(payment_id)
            if payment is None:
                raise PaymentFlowError("Payment not found", status_code=404)
            appointment = await AppointmentRepository(session).get_by_id(payment.appointment_id)
            return {
                "payment": payment.to_dict(),
                "appointment": appointment.to_dict() if appointment else None,
            }

    async def override_payment_status(
        self,
        payment_id: str,
        new_status: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Set a payment's status by hand and bring its appointment in line.

        The appointment follows its payments: paid while any completed payment
        exists, refunded when the override is a refund, otherwise unpaid. Every
        override is written to the sync audit log as a manual fix.

        Args:
            payment_id: Payment record ID.
            new_status: One of pending, completed, failed, refunded.
            reason: Free-text note stored with the audit entry.

        Raises:
            PaymentFlowError: 400 on an invalid status, 404 on an unknown
                payment, 409 when the appointment already has a completed payment.
        """
        new_status = _valid_payment_status(new_status)

        try:
            async with session_scope(self.session_factory) as session:
                payment_repo = PaymentRepository(session)
                appointment_repo = AppointmentRepository(session)

                payment = await payment_repo.get_by_id(payment_id)
                if payment is None:
                    raise PaymentFlowError("Payment not found", status_code=404)
                appointment_id = payment.appointment_id
                previous_payment_status = payment.status
                appointment = await appointment_repo.get_by_id(appointment_id)
                previous_appointment_status = appointment.payment_status if appointment else None

                if new_status == PaymentStatus.COMPLETED.value and payment.completed_at is None:
                    payment.completed_at = datetime.utcnow()
                await payment_repo.update_status(payment, new_status)

                target = previous_appointment_status
                if await payment_repo.get_latest_completed(appointment_id) is not None:
                    target = AppointmentPaymentStatus.PAID.value
                elif new_status == PaymentStatus.REFUNDED.value:
                    target = AppointmentPaymentStatus.REFUNDED.value
                elif previous_appointment_status == AppointmentPaymentStatus.PAID.value:
                    target = AppointmentPaymentStatus.UNPAID.value

                if appointment is not None and target != previous_appointment_status:
                    rows = await appointment_repo.set_payment_status(appointment_id, target)
                    appointment = rows[0] if rows else appointment

                await SyncAuditRepository(session).create(
                    appointment_id=appointment_id,
                    fix_method=SyncFixMethod.MANUAL.value,
                    success=True,
                    payment_id=payment.id,
                    previous_status=previous_appointment_status,
                    new_status=target,
                    details={
                        "payment_status": {"from": previous_payment_status, "to": new_status},
                        "reason": reason,
                    },
                )
                payment_data = payment.to_dict()
                appointment_data = appointment.to_dict() if appointment else None
        except IntegrityError:
            raise PaymentFlowError("Appointment already has a completed payment", status_code=409)

        logger.info(
            f"Payment {payment_id} status overridden {previous_payment_status} -> {new_status}; "
            f"appointment {appointment_id} now {target}"
        )
        return {
            "success": True,
            "message": "Payment status updated successfully",
            "payment": payment_data,
            "appointment": appointment_data,
        }


def _valid_payment_status(value: str) -> str:
    try:
        return PaymentStatus(value).value
    except ValueError:
        raise PaymentFlowError("Invalid status value")
