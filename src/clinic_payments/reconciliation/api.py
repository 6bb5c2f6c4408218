"""Administrative API for the status monitor and manual reconciliation."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import verify_api_key
from ..database import SyncAuditRepository, SyncFixMethod, session_scope
from ..dependencies import get_monitor, get_reconciliation_service, get_runtime
from ..runtime import ClinicRuntime
from .models import MonitorStatus, SweepReport, SyncCheck
from .monitor import StatusMonitor
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post("/monitor/start")
async def start_monitor(
    monitor: StatusMonitor = Depends(get_monitor),
    api_key: str = Depends(verify_api_key),
):
    started = await monitor.start_monitoring()
    return {
        "success": True,
        "started": started,
        "message": "Payment status monitor started" if started else "Payment status monitor already running",
    }


@router.post("/monitor/stop")
async def stop_monitor(
    monitor: StatusMonitor = Depends(get_monitor),
    api_key: str = Depends(verify_api_key),
):
    stopped = monitor.stop_monitoring()
    return {
        "success": True,
        "stopped": stopped,
        "message": "Payment status monitor stopped" if stopped else "Payment status monitor was not running",
    }


@router.get("/monitor/status", response_model=MonitorStatus)
async def monitor_status(
    monitor: StatusMonitor = Depends(get_monitor),
    api_key: str = Depends(verify_api_key),
):
    return await monitor.get_monitoring_status()


@router.post("/monitor/check-all")
async def check_all_now(
    monitor: StatusMonitor = Depends(get_monitor),
    api_key: str = Depends(verify_api_key),
):
    """Run one sweep immediately."""
    report = await monitor.check_for_sync_issues()
    return {
        "success": report.error is None,
        "message": "Sync check completed" if report.error is None else "Sync check failed",
        "report": report.model_dump(mode="json"),
    }


@router.post("/sync/{appointment_id}")
async def sync_appointment(
    appointment_id: int,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Repair one appointment from its latest completed payment.

    Responds 400 with the sync result when the appointment could not be
    marked paid, including when it has no completed payment.
    """
    before = await reconciliation.check_appointment_sync(appointment_id)
    result = await reconciliation.manual_sync(appointment_id)
    await reconciliation.record_audit(
        appointment_id,
        SyncFixMethod.MANUAL.value,
        result,
        previous_status=before.appointment_payment_status,
    )

    if not result.success:
        raise HTTPException(status_code=400, detail=result.model_dump(mode="json"))
    return result.model_dump(mode="json")


@router.get("/check/{appointment_id}", response_model=SyncCheck)
async def check_appointment(
    appointment_id: int,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    check = await reconciliation.check_appointment_sync(appointment_id)
    if check.error == "Appointment not found":
        raise HTTPException(status_code=404, detail=check.error)
    return check


@router.post("/sync-all", response_model=SweepReport)
async def sync_all(
    monitor: StatusMonitor = Depends(get_monitor),
    api_key: str = Depends(verify_api_key),
):
    """Repair every drifted appointment and report per-appointment outcomes."""
    report = await monitor.check_for_sync_issues()
    if report.error:
        raise HTTPException(status_code=500, detail=report.error)
    return report


@router.get("/audit/{appointment_id}")
async def audit_log(
    appointment_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    runtime: ClinicRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    async with session_scope(runtime.session_factory) as session:
        entries = await SyncAuditRepository(session).list_by_appointment(appointment_id, limit=limit)
        return {"appointment_id": appointment_id, "entries": [e.to_dict() for e in entries]}


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}
