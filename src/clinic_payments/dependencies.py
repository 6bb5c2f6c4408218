"""FastAPI dependencies shared by the routers."""

from fastapi import Depends, HTTPException, Request

from .runtime import ClinicRuntime
from .reconciliation.monitor import StatusMonitor
from .reconciliation.service import ReconciliationService
from .services import PaymentService


def get_runtime(request: Request) -> ClinicRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return runtime


def get_payment_service(runtime: ClinicRuntime = Depends(get_runtime)) -> PaymentService:
    return runtime.payments


def get_reconciliation_service(runtime: ClinicRuntime = Depends(get_runtime)) -> ReconciliationService:
    return runtime.reconciliation


def get_monitor(runtime: ClinicRuntime = Depends(get_runtime)) -> StatusMonitor:
    return runtime.monitor
