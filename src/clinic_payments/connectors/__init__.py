"""Payment gateway connectors."""

from .base import (
    ConnectorBase,
    GatewayError,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayRefund,
)
from .paypal_connector import PayPalConnector, COMPLETION_EVENTS, extract_sale_id
from .simulator_connector import (
    SimulatorConnector,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedPayment,
)

__all__ = [
    # Base classes and models
    "ConnectorBase",
    "GatewayError",
    "GatewayPayment",
    "GatewayPaymentRequest",
    "GatewayRefund",
    # Connectors
    "PayPalConnector",
    "COMPLETION_EVENTS",
    "extract_sale_id",
    "SimulatorConnector",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedPayment",
]
