from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class GatewayError(Exception):
    """Raised when the payment gateway rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}


# Canonical models
class GatewayPaymentRequest(BaseModel):
    amount: Decimal  # major units, e.g. 1500.00 PHP
    currency: str = "PHP"
    description: Optional[str] = None
    reference: Optional[str] = None  # our appointment id
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class GatewayPayment(BaseModel):
    id: str
    status: str  # created|approved|completed|failed
    approval_url: Optional[str] = None
    transaction_id: Optional[str] = None  # sale id once executed
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class GatewayRefund(BaseModel):
    id: Optional[str]
    status: str  # completed|pending|failed
    sale_id: str
    amount: Optional[Decimal] = None
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class ConnectorBase(ABC):
    """
    Minimal gateway interface. Implementations should be side-effect free
    until the method makes a network call to the gateway.
    """

    name: str = "base"

    @abstractmethod
    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPayment:
        """
        Create a payment awaiting payer approval. The returned approval_url is
        where the patient is redirected.
        """
        raise NotImplementedError

    @abstractmethod
    async def execute_payment(self, payment_id: str, payer_id: str) -> GatewayPayment:
        """
        Execute an approved payment. Money has moved once this returns.
        """
        raise NotImplementedError

    @abstractmethod
    async def refund_sale(self, sale_id: str, amount: Optional[Decimal] = None, currency: str = "PHP") -> GatewayRefund:
        raise NotImplementedError

    @abstractmethod
    async def get_payment(self, payment_id: str) -> GatewayPayment:
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """
        Validate and canonicalize a gateway webhook payload; return a canonical
        event dict with type, provider, payment_id and payload.
        """
        raise NotImplementedError

    async def verify_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        """Confirm a delivery came from the gateway. Unverifiable deliveries are rejected."""
        return False

    async def close(self) -> None:
        """Release network resources held by the connector."""
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name}
