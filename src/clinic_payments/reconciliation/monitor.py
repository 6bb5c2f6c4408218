"""Status monitor that detects and repairs payment status drift."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import MonitorSettings
from ..database import AppointmentRepository, AppointmentPaymentStatus, SyncFixMethod, session_scope
from .feed import PaymentChangeFeed, Subscription
from .models import (
    MonitorStatus,
    PaymentCompletedEvent,
    SweepOutcome,
    SweepReport,
    SweepResult,
    SyncResult,
)
from .service import ReconciliationService

logger = logging.getLogger(__name__)


class StatusMonitor:
    """
    Periodic sweep plus change-feed fast path, both feeding the same
    idempotent repair.

    Stopped -> Running -> Stopped. Stopping only prevents new work from being
    scheduled; a sweep that is already running finishes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciliation: ReconciliationService,
        feed: Optional[PaymentChangeFeed] = None,
        settings: Optional[MonitorSettings] = None,
    ):
        self.session_factory = session_factory
        self.reconciliation = reconciliation
        self.feed = feed
        self.settings = settings or MonitorSettings()

        self.last_check: Optional[datetime] = None
        self.last_report: Optional[SweepReport] = None
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start_monitoring(self) -> bool:
        """Start the sweep timer and subscribe to the change feed.

        Returns:
            False if the monitor was already running.
        """
        if self._running:
            logger.info("Payment status monitor is already running")
            return False

        self._running = True
        if self.feed is not None:
            self._subscription = self.feed.subscribe(self.handle_payment_completed)
        self._timer_task = asyncio.create_task(self._run_timer())

        logger.info(f"Payment status monitor started (interval {self.settings.check_interval}s)")
        return True

    def stop_monitoring(self) -> bool:
        """Cancel the timer and unsubscribe.

        Returns:
            False if the monitor was not running.
        """
        if not self._running:
            logger.info("Payment status monitor is not running")
            return False

        self._running = False
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        logger.info("Payment status monitor stopped")
        return True

    async def _run_timer(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.check_interval)
            if not self._running:
                break
            # Shielded so stop_monitoring() leaves an in-flight sweep running
            self._sweep_task = asyncio.create_task(self.check_for_sync_issues())
            try:
                await asyncio.shield(self._sweep_task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in payment status monitor timer: {e}")

    async def check_for_sync_issues(self) -> SweepReport:
        """Find appointments that are unpaid despite a completed payment and repair each.

        Returns:
            SweepReport with one result per drifted appointment.
        """
        report = SweepReport()
        try:
            async with session_scope(self.session_factory) as session:
                appointment_ids = await AppointmentRepository(session).find_sync_issues()
        except Exception as e:
            logger.error(f"Sync issue query failed: {e}")
            report.error = str(e)
            report.completed_at = datetime.utcnow()
            self.last_report = report
            return report

        report.total_issues = len(appointment_ids)
        if appointment_ids:
            logger.warning(f"Found {len(appointment_ids)} appointments with payment sync issues")
        else:
            logger.debug("No payment sync issues found")

        for index, appointment_id in enumerate(appointment_ids):
            report.results.append(await self._repair(appointment_id))
            if index < len(appointment_ids) - 1:
                await asyncio.sleep(self.settings.repair_pause)

        report.fixed_count = sum(1 for r in report.results if r.status == SweepOutcome.FIXED)
        report.completed_at = datetime.utcnow()
        self.last_check = report.completed_at
        self.last_report = report

        if report.total_issues:
            logger.info(f"Sweep fixed {report.fixed_count}/{report.total_issues} sync issues")
        return report

    async def _repair(self, appointment_id: int) -> SweepResult:
        try:
            result = await self.auto_fix_sync_issue(appointment_id)
        except Exception as e:
            logger.error(f"Auto-fix raised for appointment {appointment_id}: {e}")
            return SweepResult(appointment_id=appointment_id, status=SweepOutcome.ERROR, error=str(e))

        return SweepResult(
            appointment_id=appointment_id,
            status=SweepOutcome.FIXED if result.success else SweepOutcome.FAILED,
            message=result.message,
            error=result.error,
        )

    async def auto_fix_sync_issue(
        self,
        appointment_id: int,
        fix_method: SyncFixMethod = SyncFixMethod.AUTO_MONITOR,
    ) -> SyncResult:
        """Repair one appointment and record the attempt in the audit log."""
        logger.info(f"Auto-fixing payment sync for appointment {appointment_id}")
        result = await self.reconciliation.manual_sync(appointment_id)
        await self.reconciliation.record_audit(
            appointment_id,
            fix_method.value,
            result,
            previous_status=AppointmentPaymentStatus.UNPAID.value,
        )
        if not result.success:
            logger.warning(f"Auto-fix failed for appointment {appointment_id}: {result.message}")
        return result

    async def handle_payment_completed(self, event: PaymentCompletedEvent) -> None:
        """React to a completed payment once direct reconciliation had time to finish."""
        await asyncio.sleep(self.settings.event_settle_delay)
        try:
            check = await self.reconciliation.check_appointment_sync(event.appointment_id)
            if check.error:
                logger.warning(f"Sync check for appointment {event.appointment_id} failed: {check.error}")
                return
            if check.is_synced or not check.has_completed_payment:
                return

            logger.info(f"Appointment {event.appointment_id} still out of sync after completion event")
            await self.auto_fix_sync_issue(event.appointment_id)
        except Exception as e:
            logger.error(f"Error handling completion of payment {event.payment_id}: {e}")

    async def get_monitoring_status(self) -> MonitorStatus:
        """Read-only snapshot of the monitor."""
        status = MonitorStatus(
            is_running=self._running,
            check_interval=self.settings.check_interval,
            last_check=self.last_check,
            subscription_active=bool(self._subscription and self._subscription.active),
        )
        try:
            async with session_scope(self.session_factory) as session:
                status.current_sync_issues = await AppointmentRepository(session).count_sync_issues()
        except Exception as e:
            logger.error(f"Failed to count sync issues: {e}")
            status.error = str(e)
        return status
