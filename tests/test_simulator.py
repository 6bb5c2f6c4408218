"""Tests for the SimulatorConnector."""

import json
import pytest
from decimal import Decimal

from clinic_payments.connectors import (
    GatewayError,
    GatewayPaymentRequest,
    SimulatorConnector,
    SimulatorConfig,
)


def _request(**overrides) -> GatewayPaymentRequest:
    values = {"amount": Decimal("1500.00"), "currency": "PHP", "reference": "50"}
    values.update(overrides)
    return GatewayPaymentRequest(**values)


class TestSimulatorBasicOperations:
    """Test basic payment operations with the simulator."""

    async def test_create_payment(self):
        connector = SimulatorConnector()

        payment = await connector.create_payment(_request())

        assert payment.id.startswith("PAY-SIM")
        assert payment.status == "created"
        assert payment.transaction_id is None
        assert "PayerID=sim_payer_success" in payment.approval_url
        assert payment.approval_url.startswith("http://localhost:3000/payment/success?paymentId=")

    async def test_create_payment_uses_return_url(self):
        connector = SimulatorConnector()

        payment = await connector.create_payment(_request(return_url="https://clinic.example/ok"))

        assert payment.approval_url.startswith("https://clinic.example/ok?paymentId=")

    async def test_execute_success(self):
        connector = SimulatorConnector()
        created = await connector.create_payment(_request())

        executed = await connector.execute_payment(created.id, SimulatorConnector.PAYER_SUCCESS)

        assert executed.status == "completed"
        assert executed.transaction_id.startswith("SALE-SIM")
        assert connector.get_simulated_payment(created.id).payer_id == "sim_payer_success"

    async def test_execute_decline(self):
        connector = SimulatorConnector()
        created = await connector.create_payment(_request())

        with pytest.raises(GatewayError) as exc_info:
            await connector.execute_payment(created.id, SimulatorConnector.PAYER_DECLINE)

        assert exc_info.value.status_code == 400
        assert exc_info.value.details["name"] == "INSTRUMENT_DECLINED"
        assert connector.get_simulated_payment(created.id).status == "failed"

    async def test_execute_timeout(self):
        connector = SimulatorConnector()
        created = await connector.create_payment(_request())

        with pytest.raises(GatewayError) as exc_info:
            await connector.execute_payment(created.id, SimulatorConnector.PAYER_TIMEOUT)

        assert exc_info.value.status_code == 504

    async def test_execute_unknown_payment(self):
        connector = SimulatorConnector()

        with pytest.raises(GatewayError) as exc_info:
            await connector.execute_payment("PAY-MISSING", SimulatorConnector.PAYER_SUCCESS)

        assert exc_info.value.status_code == 404

    async def test_execute_twice(self):
        connector = SimulatorConnector()
        created = await connector.create_payment(_request())
        await connector.execute_payment(created.id, SimulatorConnector.PAYER_SUCCESS)

        with pytest.raises(GatewayError) as exc_info:
            await connector.execute_payment(created.id, SimulatorConnector.PAYER_SUCCESS)

        assert exc_info.value.details["name"] == "PAYMENT_ALREADY_DONE"


class TestSimulatorRefunds:
    """Test refund simulation."""

    async def _completed_sale(self, connector):
        created = await connector.create_payment(_request())
        executed = await connector.execute_payment(created.id, SimulatorConnector.PAYER_SUCCESS)
        return created.id, executed.transaction_id

    async def test_full_refund(self):
        connector = SimulatorConnector()
        payment_id, sale_id = await self._completed_sale(connector)

        refund = await connector.refund_sale(sale_id)

        assert refund.status == "completed"
        assert refund.sale_id == sale_id
        assert refund.amount == Decimal("1500.00")
        assert connector.get_simulated_payment(payment_id).status == "refunded"

    async def test_partial_refund(self):
        connector = SimulatorConnector()
        payment_id, sale_id = await self._completed_sale(connector)

        await connector.refund_sale(sale_id, amount=Decimal("500.00"))

        assert connector.get_simulated_payment(payment_id).status == "partially_refunded"

    async def test_refund_unknown_sale(self):
        connector = SimulatorConnector()

        with pytest.raises(GatewayError) as exc_info:
            await connector.refund_sale("SALE-MISSING")

        assert exc_info.value.status_code == 404

    async def test_refund_already_refunded(self):
        connector = SimulatorConnector()
        _, sale_id = await self._completed_sale(connector)
        await connector.refund_sale(sale_id)

        with pytest.raises(GatewayError):
            await connector.refund_sale(sale_id)


class TestSimulatorConfig:
    """Test configurable behaviour."""

    async def test_zero_success_rate_declines(self):
        connector = SimulatorConnector(SimulatorConfig(success_rate=0.0, seed=1))
        created = await connector.create_payment(_request())

        with pytest.raises(GatewayError):
            await connector.execute_payment(created.id, "PAYER-REAL")

    async def test_timeout_rate(self):
        connector = SimulatorConnector(SimulatorConfig(timeout_rate=1.0, seed=1))
        created = await connector.create_payment(_request())

        with pytest.raises(GatewayError) as exc_info:
            await connector.execute_payment(created.id, "PAYER-REAL")

        assert exc_info.value.status_code == 504

    async def test_get_payment_and_clear(self):
        connector = SimulatorConnector()
        created = await connector.create_payment(_request())

        assert (await connector.get_payment(created.id)).status == "created"
        assert connector.health_check()["payment_count"] == 1

        connector.clear()

        with pytest.raises(GatewayError):
            await connector.get_payment(created.id)


class TestSimulatorWebhooks:
    """Test webhook parsing."""

    def test_parse_sale_completed(self):
        connector = SimulatorConnector()
        body = json.dumps({
            "event_type": "PAYMENT.SALE.COMPLETED",
            "resource": {"id": "SALE-1", "parent_payment": "PAY-1"},
        }).encode()

        event = connector.parse_webhook({}, body)

        assert event["type"] == "PAYMENT.SALE.COMPLETED"
        assert event["provider"] == "simulator"
        assert event["payment_id"] == "PAY-1"
        assert event["transaction_id"] == "SALE-1"

    def test_parse_invalid_json(self):
        connector = SimulatorConnector()

        with pytest.raises(ValueError):
            connector.parse_webhook({}, b"not json")

    async def test_deliveries_are_trusted(self):
        connector = SimulatorConnector()

        assert await connector.verify_webhook({}, b"{}") is True
