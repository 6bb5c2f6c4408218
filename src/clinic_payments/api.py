"""FastAPI application: payment routes, PayPal webhook and admin controls."""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .auth import limiter, verify_api_key, WEBHOOK_RATE_LIMIT
from .config import Settings, configure_logging
from .connectors import GatewayError
from .dependencies import get_payment_service, get_runtime
from .reconciliation.api import router as reconciliation_router
from .reconciliation.models import SyncContractError
from .runtime import ClinicRuntime
from .services import PaymentFlowError, PaymentService

logger = logging.getLogger(__name__)

class CreatePaymentBody(BaseModel):
    appointment_id: Union[int, str]


class ExecutePaymentBody(BaseModel):
    payment_id: str = Field(..., description="Gateway payment id returned at creation")
    payer_id: str = Field(..., description="Payer id PayPal appends to the return URL")


class RefundBody(BaseModel):
    reason: Optional[str] = None


class PaymentStatusBody(BaseModel):
    status: str = Field(..., description="pending, completed, failed or refunded")
    reason: Optional[str] = None


router = APIRouter()


@router.get("/health")
async def health(runtime: ClinicRuntime = Depends(get_runtime)):
    return {
        "status": "healthy",
        "gateway": runtime.gateway.health_check(),
        "monitor_running": runtime.monitor.is_running,
    }


@router.post("/payments/create", status_code=201)
async def create_payment(body: CreatePaymentBody, service: PaymentService = Depends(get_payment_service)):
    """Create a PayPal payment for an approved appointment and return the approval URL."""
    return await service.create_payment(body.appointment_id)


@router.post("/payments/execute")
async def execute_payment(body: ExecutePaymentBody, service: PaymentService = Depends(get_payment_service)):
    """
    Execute an approved payment.

    Responds 200 whenever the gateway captured the money; ``sync_failed`` is
    set if the appointment could not be marked paid yet.
    """
    return await service.execute_payment(body.payment_id, body.payer_id)


@router.get("/payments/history")
async def payment_history(
    appointment_id: str = Query(...),
    status: Optional[str] = Query(None),
    api_key: str = Depends(verify_api_key),
    service: PaymentService = Depends(get_payment_service),
):
    """List an appointment's payments, newest first, optionally filtered by status."""
    return await service.list_payments(appointment_id, status)


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: str,
    api_key: str = Depends(verify_api_key),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.get_payment_details(payment_id)


@router.patch("/admin/payments/{payment_id}/status")
async def override_payment_status(
    payment_id: str,
    body: PaymentStatusBody,
    api_key: str = Depends(verify_api_key),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Manually correct a payment's status.

    The appointment's payment status is brought in line and the change is
    recorded in the sync audit log.
    """
    return await service.override_payment_status(payment_id, body.status, body.reason)


@router.post("/webhooks/paypal")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def paypal_webhook(request: Request, runtime: ClinicRuntime = Depends(get_runtime)):
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    if not await runtime.gateway.verify_webhook(headers, body):
        raise HTTPException(status_code=400, detail="Invalid webhook signature")
    try:
        event = runtime.gateway.parse_webhook(headers, body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await runtime.payments.handle_webhook_event(event)


@router.post("/appointments/{appointment_id}/refund")
async def refund_appointment(
    appointment_id: int,
    body: Optional[RefundBody] = None,
    service: PaymentService = Depends(get_payment_service),
):
    """Refund a paid appointment when it is rejected."""
    reason = body.reason if body else None
    return await service.refund_appointment(appointment_id, reason)


async def payment_flow_error_handler(request: Request, exc: PaymentFlowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def sync_contract_error_handler(request: Request, exc: SyncContractError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    logger.error(f"Gateway error on {request.url.path}: {exc} ({exc.status_code})")
    return JSONResponse(
        status_code=502,
        content={
            "detail": str(exc),
            "gateway_status": exc.status_code,
            "gateway_error": exc.details,
        },
    )


def create_app(runtime: Optional[ClinicRuntime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        runtime: Prebuilt runtime; when given the app does not build or shut one down.
        settings: Settings used to build a runtime at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            yield
            return

        app_settings = settings or Settings.from_env()
        configure_logging(app_settings.log_level)
        app.state.runtime = await ClinicRuntime.build(app_settings)
        try:
            yield
        finally:
            await app.state.runtime.shutdown()

    app = FastAPI(title="Clinic Payments", lifespan=lifespan)
    app.state.limiter = limiter
    if runtime is not None:
        app.state.runtime = runtime

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(PaymentFlowError, payment_flow_error_handler)
    app.add_exception_handler(SyncContractError, sync_contract_error_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)

    app.include_router(router)
    app.include_router(reconciliation_router)
    return app


app = create_app()
