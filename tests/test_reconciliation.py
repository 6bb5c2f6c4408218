"""Tests for the reconciliation service."""

import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from clinic_payments.config import ReconciliationSettings
from clinic_payments.database import Appointment, AppointmentRepository, Payment, SyncAuditRepository, session_scope
from clinic_payments.reconciliation import (
    AppointmentUpdateError,
    PaymentCompletedEvent,
    ReconciliationService,
    SyncContractError,
    UpdateResult,
    normalize_appointment_id,
)


class TestNormalizeAppointmentId:
    """Tests for identifier normalization at the boundary."""

    def test_accepts_int_and_digit_strings(self):
        assert normalize_appointment_id(50) == 50
        assert normalize_appointment_id("50") == 50
        assert normalize_appointment_id(" 51 ") == 51

    @pytest.mark.parametrize("value", [None, "abc", "5.0", 0, -3, True, 5.5, "", "-4", "²", "٣", "1_000"])
    def test_rejects_invalid(self, value):
        with pytest.raises(SyncContractError):
            normalize_appointment_id(value)


class TestSyncPaymentStatus:
    """Tests for syncing after gateway execution."""

    async def test_end_to_end_sync(self, reconciliation, create_appointment, create_payment, get_appointment, get_payment):
        """Appointment #50 with a pending payment is paid after execution of TXN-1."""
        await create_appointment(appointment_id=50)
        payment = await create_payment(50, gateway_payment_id="PAY-50")

        result = await reconciliation.sync_payment_status(payment, {"id": "PAY-50"}, "TXN-1")

        assert result.success is True
        assert result.message == "Payment status synchronized successfully"
        assert result.verification.message == "Payment status successfully updated to paid"

        stored_payment = await get_payment(payment["id"])
        assert stored_payment["status"] == "completed"
        assert stored_payment["gateway_transaction_id"] == "TXN-1"
        assert stored_payment["completed_at"] is not None
        assert (await get_appointment(50))["payment_status"] == "paid"

    async def test_accepts_string_appointment_id(self, reconciliation, create_appointment, create_payment, get_appointment):
        appointment_id = await create_appointment()
        payment = await create_payment(appointment_id)
        record = {"id": payment["id"], "appointment_id": str(appointment_id)}

        result = await reconciliation.sync_payment_status(record, None, "TXN-2")

        assert result.success is True
        assert (await get_appointment(appointment_id))["payment_status"] == "paid"

    async def test_missing_payment_record_raises(self, reconciliation):
        with pytest.raises(SyncContractError):
            await reconciliation.sync_payment_status(None, {}, "TXN-1")

    async def test_missing_ids_raise(self, reconciliation):
        with pytest.raises(SyncContractError):
            await reconciliation.sync_payment_status({"appointment_id": 50}, {}, "TXN-1")
        with pytest.raises(SyncContractError):
            await reconciliation.sync_payment_status({"id": "p-1", "appointment_id": None}, {}, "TXN-1")

    async def test_contract_violation_is_not_retried(self, reconciliation):
        with patch.object(reconciliation, "update_appointment_status", new_callable=AsyncMock) as update:
            with pytest.raises(SyncContractError):
                await reconciliation.sync_payment_status({"id": "p-1"}, {}, "TXN-1")
        update.assert_not_called()

    async def test_unknown_payment_aborts(self, reconciliation, create_appointment, get_appointment):
        appointment_id = await create_appointment()

        result = await reconciliation.sync_payment_status(
            {"id": "missing-payment", "appointment_id": appointment_id}, {}, "TXN-1"
        )

        assert result.success is False
        assert result.message == "Payment sync failed due to system error"
        assert result.payment_update.success is False
        assert result.appointment_update is None
        assert (await get_appointment(appointment_id))["payment_status"] == "unpaid"

    async def test_payment_store_error_aborts(self, reconciliation, create_appointment, create_payment):
        appointment_id = await create_appointment()
        payment = await create_payment(appointment_id)

        with patch(
            "clinic_payments.reconciliation.service.PaymentRepository.mark_completed",
            new_callable=AsyncMock,
            side_effect=OperationalError("UPDATE payments", {}, Exception("disk I/O error")),
        ):
            result = await reconciliation.sync_payment_status(payment, {}, "TXN-1")

        assert result.success is False
        assert result.message == "Payment sync failed due to system error"
        assert "disk I/O error" in result.error

    async def test_appointment_failure_is_captured(self, reconciliation, create_payment, get_payment):
        """Payment completes even when the appointment row cannot be updated."""
        payment = await create_payment(777)  # no appointment 777

        result = await reconciliation.sync_payment_status(payment, {}, "TXN-9")

        assert result.success is False
        assert result.message == "Payment sync failed - manual intervention required"
        assert result.payment_update.success is True
        assert result.appointment_update.success is False
        assert result.appointment_update.attempts == 3
        assert result.verification.message == "Appointment not found"
        assert (await get_payment(payment["id"]))["status"] == "completed"

    async def test_notifies_on_success(self, session_factory, create_appointment, create_payment):
        notifier = AsyncMock()
        service = ReconciliationService(
            session_factory, notifier=notifier, settings=ReconciliationSettings(retry_delay=0)
        )
        appointment_id = await create_appointment()
        payment = await create_payment(appointment_id)

        result = await service.sync_payment_status(payment, {}, "TXN-1")

        assert result.success is True
        notifier.notify_payment_confirmed.assert_awaited_once_with(appointment_id, "1500.00")

    async def test_notification_failure_is_swallowed(self, session_factory, create_appointment, create_payment):
        notifier = AsyncMock()
        notifier.notify_payment_confirmed.side_effect = RuntimeError("SMTP down")
        service = ReconciliationService(
            session_factory, notifier=notifier, settings=ReconciliationSettings(retry_delay=0)
        )
        appointment_id = await create_appointment()
        payment = await create_payment(appointment_id)

        result = await service.sync_payment_status(payment, {}, "TXN-1")

        assert result.success is True

    async def test_no_notification_when_unverified(self, session_factory, create_payment):
        notifier = AsyncMock()
        service = ReconciliationService(
            session_factory, notifier=notifier, settings=ReconciliationSettings(retry_delay=0)
        )
        payment = await create_payment(778)

        await service.sync_payment_status(payment, {}, "TXN-1")

        notifier.notify_payment_confirmed.assert_not_called()

    async def test_publishes_completion_event(self, reconciliation, feed, create_appointment, create_payment):
        received = []

        async def handler(event: PaymentCompletedEvent):
            received.append(event)

        feed.subscribe(handler)
        appointment_id = await create_appointment()
        payment = await create_payment(appointment_id)

        await reconciliation.sync_payment_status(payment, {}, "TXN-5")
        await feed.drain()

        assert len(received) == 1
        assert received[0].payment_id == payment["id"]
        assert received[0].appointment_id == appointment_id
        assert received[0].transaction_id == "TXN-5"


class TestManualSync:
    """Tests for manual and monitor-driven repair."""

    async def test_repairs_drift(self, reconciliation, create_appointment, create_payment, get_appointment):
        appointment_id = await create_appointment()
        await create_payment(appointment_id, status="completed", gateway_transaction_id="TXN-3")

        result = await reconciliation.manual_sync(appointment_id)

        assert result.success is True
        assert result.message == "Manual sync completed successfully"
        assert result.payment["gateway_transaction_id"] == "TXN-3"
        assert (await get_appointment(appointment_id))["payment_status"] == "paid"

    async def test_idempotent(self, reconciliation, session_factory, create_appointment, create_payment, get_appointment):
        appointment_id = await create_appointment(payment_status="paid")
        await create_payment(appointment_id, status="completed")

        first = await reconciliation.manual_sync(appointment_id)
        second = await reconciliation.manual_sync(appointment_id)

        assert first.success is True
        assert second.success is True
        assert (await get_appointment(appointment_id))["payment_status"] == "paid"
        async with session_scope(session_factory) as session:
            count = await session.scalar(select(func.count()).select_from(Payment))
        assert count == 1

    async def test_no_completed_payment(self, reconciliation, create_appointment, create_payment, get_appointment):
        """No-op precondition: nothing is written without a completed payment."""
        appointment_id = await create_appointment()
        await create_payment(appointment_id, status="pending")
        before = await get_appointment(appointment_id)

        with patch.object(reconciliation, "update_appointment_status", wraps=reconciliation.update_appointment_status) as update:
            result = await reconciliation.manual_sync(appointment_id)

        assert result.success is False
        assert result.message == "No completed payment found for this appointment"
        update.assert_not_called()
        assert await get_appointment(appointment_id) == before

    async def test_unknown_appointment_999(self, reconciliation, session_factory):
        """manual_sync(999) with no payments at all writes nothing."""
        result = await reconciliation.manual_sync(999)

        assert result.success is False
        assert result.message == "No completed payment found for this appointment"
        async with session_scope(session_factory) as session:
            assert await session.scalar(select(func.count()).select_from(Appointment)) == 0
            assert await session.scalar(select(func.count()).select_from(Payment)) == 0

    async def test_uses_latest_completed_payment(self, reconciliation, create_appointment, create_payment):
        appointment_id = await create_appointment()
        await create_payment(
            appointment_id,
            status="refunded",
            gateway_transaction_id="TXN-OLD",
            completed_at=datetime.utcnow() - timedelta(days=2),
        )
        await create_payment(appointment_id, status="completed", gateway_transaction_id="TXN-NEW")

        result = await reconciliation.manual_sync(appointment_id)

        assert result.payment["gateway_transaction_id"] == "TXN-NEW"

    async def test_unverified_update(self, reconciliation, create_appointment, create_payment):
        appointment_id = await create_appointment()
        await create_payment(appointment_id, status="completed")
        failed = UpdateResult(success=False, appointment_id=appointment_id, error="locked")

        with patch.object(reconciliation, "update_appointment_status", new_callable=AsyncMock, return_value=failed):
            result = await reconciliation.manual_sync(appointment_id)

        assert result.success is False
        assert result.message == "Manual sync failed - appointment status not updated"
        assert result.verification.message == "Payment status is still unpaid, expected paid"

    async def test_store_error_becomes_result(self, reconciliation):
        with patch(
            "clinic_payments.reconciliation.service.PaymentRepository.get_latest_completed",
            new_callable=AsyncMock,
            side_effect=OperationalError("SELECT", {}, Exception("connection lost")),
        ):
            result = await reconciliation.manual_sync(51)

        assert result.success is False
        assert result.message == "Manual sync failed due to system error"
        assert "connection lost" in result.error

    async def test_invalid_id_raises(self, reconciliation):
        with pytest.raises(SyncContractError):
            await reconciliation.manual_sync("fifty")


class TestUpdateWithRetry:
    """Tests for bounded retry with linear backoff."""

    async def test_raises_after_exactly_max_retries(self, session_factory):
        service = ReconciliationService(session_factory, settings=ReconciliationSettings(max_retries=3, retry_delay=1.0))
        failed = UpdateResult(success=False, appointment_id=5, error="no rows")

        with patch.object(service, "update_appointment_status", new_callable=AsyncMock, return_value=failed) as update, \
                patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(AppointmentUpdateError) as exc_info:
                await service.update_appointment_with_retry(5)

        assert update.await_count == 3
        assert exc_info.value.attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    async def test_respects_configured_bound(self, session_factory):
        service = ReconciliationService(session_factory, settings=ReconciliationSettings(max_retries=5, retry_delay=0))
        failed = UpdateResult(success=False, appointment_id=5, error="no rows")

        with patch.object(service, "update_appointment_status", new_callable=AsyncMock, return_value=failed) as update:
            with pytest.raises(AppointmentUpdateError):
                await service.update_appointment_with_retry(5)

        assert update.await_count == 5

    async def test_succeeds_on_later_attempt(self, session_factory):
        service = ReconciliationService(session_factory, settings=ReconciliationSettings(retry_delay=0))
        outcomes = [
            UpdateResult(success=False, appointment_id=5, error="busy"),
            UpdateResult(success=True, appointment_id=5, rows_affected=1),
        ]

        with patch.object(service, "update_appointment_status", new_callable=AsyncMock, side_effect=outcomes) as update:
            result = await service.update_appointment_with_retry(5)

        assert result.success is True
        assert result.attempts == 2
        assert update.await_count == 2

    async def test_store_exception_reported_as_failure(self, reconciliation, create_appointment):
        appointment_id = await create_appointment()

        with patch.object(
            AppointmentRepository,
            "mark_paid",
            new_callable=AsyncMock,
            side_effect=OperationalError("UPDATE appointments", {}, Exception("database is locked")),
        ):
            result = await reconciliation.update_appointment_status(appointment_id)

        assert result.success is False
        assert "database is locked" in result.error

    async def test_update_returns_rows(self, reconciliation, create_appointment):
        appointment_id = await create_appointment()

        result = await reconciliation.update_appointment_status(str(appointment_id))

        assert result.success is True
        assert result.rows_affected == 1
        assert result.data[0]["payment_status"] == "paid"


class TestCheckAppointmentSync:
    """Tests for the single-appointment consistency check."""

    async def test_completed_but_unpaid(self, reconciliation, create_appointment, create_payment):
        appointment_id = await create_appointment()
        await create_payment(appointment_id, status="completed")

        check = await reconciliation.check_appointment_sync(appointment_id)

        assert check.is_synced is False
        assert check.has_completed_payment is True
        assert check.issue == "Payment completed but appointment shows unpaid"

    async def test_synced_states(self, reconciliation, create_appointment, create_payment):
        paid = await create_appointment(payment_status="paid")
        await create_payment(paid, status="completed")
        unpaid = await create_appointment()
        refunded = await create_appointment(payment_status="refunded")
        await create_payment(refunded, status="refunded")

        for appointment_id in (paid, unpaid, refunded):
            check = await reconciliation.check_appointment_sync(appointment_id)
            assert check.is_synced is True
            assert check.issue is None

    async def test_paid_without_completed_payment(self, reconciliation, create_appointment):
        appointment_id = await create_appointment(payment_status="paid")

        check = await reconciliation.check_appointment_sync(appointment_id)

        assert check.is_synced is False
        assert check.issue == "Appointment marked paid but no completed payment found"

    async def test_missing_appointment(self, reconciliation):
        check = await reconciliation.check_appointment_sync(12345)

        assert check.is_synced is False
        assert check.error == "Appointment not found"


class TestConvergence:
    """Concurrent repairs of the same appointment always end paid."""

    async def test_concurrent_sync_and_manual_sync(self, reconciliation, create_appointment, create_payment, get_appointment):
        appointment_id = await create_appointment()
        payment = await create_payment(appointment_id)

        await asyncio.gather(
            reconciliation.sync_payment_status(payment, {}, "TXN-RACE"),
            reconciliation.manual_sync(appointment_id),
            reconciliation.manual_sync(appointment_id),
        )

        assert (await get_appointment(appointment_id))["payment_status"] == "paid"

    async def test_concurrent_manual_syncs_on_drift(self, reconciliation, create_appointment, create_payment, get_appointment):
        appointment_id = await create_appointment()
        await create_payment(appointment_id, status="completed")

        results = await asyncio.gather(*(reconciliation.manual_sync(appointment_id) for _ in range(5)))

        assert any(r.success for r in results)
        assert (await get_appointment(appointment_id))["payment_status"] == "paid"


class TestAudit:
    """Tests for writing sync audit rows."""

    async def test_record_audit(self, reconciliation, session_factory, create_appointment, create_payment):
        appointment_id = await create_appointment()
        payment = await create_payment(appointment_id, status="completed")
        result = await reconciliation.manual_sync(appointment_id)

        assert await reconciliation.record_audit(appointment_id, "manual", result, previous_status="unpaid")

        async with session_scope(session_factory) as session:
            entries = await SyncAuditRepository(session).list_by_appointment(appointment_id)
        assert len(entries) == 1
        assert entries[0].payment_id == payment["id"]
        assert entries[0].previous_status == "unpaid"
        assert entries[0].new_status == "paid"
        assert entries[0].success is True
