"""Simulator connector for testing payment flows without real gateway calls."""

import json
import uuid
import random
import asyncio
import logging
from decimal import Decimal
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .base import (
    ConnectorBase,
    GatewayError,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayRefund,
)

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined test scenarios for the simulator."""
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass
class SimulatedPayment:
    """In-memory representation of a simulated gateway payment."""
    id: str
    amount: Decimal
    currency: str
    status: str
    reference: Optional[str] = None
    sale_id: Optional[str] = None
    payer_id: Optional[str] = None
    refunded_amount: Decimal = Decimal("0")
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    success_rate: float = 1.0  # 0.0 to 1.0
    delay_ms: int = 0  # Simulated response delay in ms
    timeout_rate: float = 0.0  # Rate of timeout errors
    frontend_url: str = "http://localhost:3000"
    seed: Optional[int] = None  # Random seed for reproducibility


class SimulatorConnector(ConnectorBase):
    """
    Simulator gateway with the same interface as the PayPal connector.

    Features:
    - In-memory payment storage
    - Configurable success/failure rates
    - Delayed response simulation
    - Special payer ids for specific scenarios
    """

    name = "simulator"

    # Special payer ids for triggering specific behaviors
    PAYER_SUCCESS = "sim_payer_success"
    PAYER_DECLINE = "sim_payer_decline"
    PAYER_TIMEOUT = "sim_payer_timeout"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        """Initialize the simulator with optional configuration."""
        self.config = config or SimulatorConfig()
        self._payments: Dict[str, SimulatedPayment] = {}
        self._rng = random.Random(self.config.seed)
        logger.info("SimulatorConnector initialized")

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}-SIM{uuid.uuid4().hex[:20].upper()}"

    async def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

    def _determine_scenario(self, payer_id: str) -> SimulatorScenario:
        """Determine scenario based on payer id or random config."""
        payer_scenarios = {
            self.PAYER_SUCCESS: SimulatorScenario.SUCCESS,
            self.PAYER_DECLINE: SimulatorScenario.FAILURE,
            self.PAYER_TIMEOUT: SimulatorScenario.TIMEOUT,
        }
        if payer_id in payer_scenarios:
            return payer_scenarios[payer_id]
        if self._rng.random() < self.config.timeout_rate:
            return SimulatorScenario.TIMEOUT
        if self._rng.random() >= self.config.success_rate:
            return SimulatorScenario.FAILURE
        return SimulatorScenario.SUCCESS

    def _to_gateway_payment(self, payment: SimulatedPayment, approval_url: Optional[str] = None) -> GatewayPayment:
        return GatewayPayment(
            id=payment.id,
            status=payment.status,
            approval_url=approval_url,
            transaction_id=payment.sale_id,
            raw_response={
                "simulator": True,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "payer_id": payment.payer_id,
            },
        )

    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPayment:
        """Create a simulated payment awaiting approval."""
        await self._apply_delay()
        payment = SimulatedPayment(
            id=self._generate_id("PAY"),
            amount=request.amount,
            currency=request.currency,
            status="created",
            reference=request.reference,
        )
        self._payments[payment.id] = payment

        return_url = request.return_url or f"{self.config.frontend_url}/payment/success"
        approval_url = f"{return_url}?paymentId={payment.id}&PayerID={self.PAYER_SUCCESS}"
        return self._to_gateway_payment(payment, approval_url)

    async def execute_payment(self, payment_id: str, payer_id: str) -> GatewayPayment:
        """Execute a previously created payment."""
        await self._apply_delay()
        payment = self._payments.get(payment_id)
        if not payment:
            raise GatewayError("Payment not found", status_code=404, details={"name": "INVALID_RESOURCE_ID"})

        if payment.status == "completed":
            raise GatewayError(
                "Payment has already been done", status_code=400, details={"name": "PAYMENT_ALREADY_DONE"}
            )

        scenario = self._determine_scenario(payer_id)
        if scenario == SimulatorScenario.TIMEOUT:
            raise GatewayError("Simulated gateway timeout", status_code=504)
        if scenario == SimulatorScenario.FAILURE:
            payment.status = "failed"
            raise GatewayError(
                "Instrument declined", status_code=400, details={"name": "INSTRUMENT_DECLINED"}
            )

        payment.status = "completed"
        payment.payer_id = payer_id
        payment.sale_id = self._generate_id("SALE")
        return self._to_gateway_payment(payment)

    async def refund_sale(
        self,
        sale_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "PHP",
    ) -> GatewayRefund:
        """Refund a completed sale, fully when no amount is given."""
        await self._apply_delay()
        payment = next((p for p in self._payments.values() if p.sale_id == sale_id), None)
        if not payment:
            raise GatewayError("Sale not found", status_code=404, details={"name": "INVALID_RESOURCE_ID"})

        if payment.status not in ("completed", "partially_refunded"):
            raise GatewayError(
                f"Cannot refund sale in state {payment.status}",
                status_code=400,
                details={"name": "TRANSACTION_REFUSED"},
            )

        refund_amount = amount if amount is not None else payment.amount - payment.refunded_amount
        payment.refunded_amount += refund_amount
        if payment.refunded_amount >= payment.amount:
            payment.status = "refunded"
        else:
            payment.status = "partially_refunded"

        return GatewayRefund(
            id=self._generate_id("REFUND"),
            status="completed",
            sale_id=sale_id,
            amount=refund_amount,
            raw_response={"simulator": True, "refunded_amount": str(payment.refunded_amount)},
        )

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        payment = self._payments.get(payment_id)
        if not payment:
            raise GatewayError("Payment not found", status_code=404, details={"name": "INVALID_RESOURCE_ID"})
        return self._to_gateway_payment(payment)

    async def verify_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        # Simulated deliveries come from tests and local tooling
        return True

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """Parse a simulated webhook payload shaped like a PayPal event."""
        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            raise ValueError("Invalid webhook payload")

        resource = event.get("resource") or {}
        event_type = event.get("event_type", "unknown")
        payment_id = resource.get("parent_payment") or resource.get("id")
        transaction_id = resource.get("id") if event_type == "PAYMENT.SALE.COMPLETED" else None

        return {
            "type": event_type,
            "provider": self.name,
            "payment_id": payment_id,
            "transaction_id": transaction_id,
            "payload": event,
        }

    def get_simulated_payment(self, payment_id: str) -> Optional[SimulatedPayment]:
        """Get a payment from in-memory storage (for testing)."""
        return self._payments.get(payment_id)

    def clear(self) -> None:
        """Clear all stored payments (for test cleanup)."""
        self._payments.clear()

    def health_check(self) -> Dict[str, Any]:
        """Return health status of the simulator."""
        return {
            "ok": True,
            "provider": self.name,
            "payment_count": len(self._payments),
            "config": {
                "success_rate": self.config.success_rate,
                "delay_ms": self.config.delay_ms,
                "timeout_rate": self.config.timeout_rate,
            },
        }
