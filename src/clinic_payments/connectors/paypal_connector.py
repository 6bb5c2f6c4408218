"""PayPal REST connector using the v1 payments API."""

import json
import base64
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Any, Optional

import httpx

from .base import (
    ConnectorBase,
    GatewayError,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayRefund,
)

logger = logging.getLogger(__name__)

SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"
LIVE_API_BASE = "https://api-m.paypal.com"

# PayPal v1 payment states to canonical gateway statuses
_STATE_MAP = {
    "created": "created",
    "approved": "completed",
    "failed": "failed",
    "canceled": "failed",
    "expired": "failed",
}

# Webhook events that mean the patient's money was captured
COMPLETION_EVENTS = ("PAYMENT.SALE.COMPLETED", "CHECKOUT.ORDER.APPROVED")

# Headers PayPal signs every webhook delivery with
WEBHOOK_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)


def _money(amount: Decimal) -> str:
    return f"{Decimal(amount).quantize(Decimal('0.01'))}"


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    """PayPal error payload, or the raw text when a proxy answered with HTML."""
    if not response.text:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"body": response.text[:500]}
    return data if isinstance(data, dict) else {"body": data}


def extract_sale_id(payment: Dict[str, Any]) -> Optional[str]:
    """Pull the sale (transaction) id out of an executed v1 payment."""
    try:
        return payment["transactions"][0]["related_resources"][0]["sale"]["id"]
    except (KeyError, IndexError, TypeError):
        return None


class PayPalConnector(ConnectorBase):
    """
    PayPal connector for redirect-based sale payments.

    The patient approves the payment on PayPal, is redirected back to the
    frontend, and the frontend posts payment_id and payer_id to be executed.
    """

    name = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        currency: str = "PHP",
        frontend_url: str = "http://localhost:3000",
        webhook_id: Optional[str] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not client_id or not client_secret:
            raise ValueError("PayPal client_id and client_secret are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self.mode = mode
        self.currency = currency
        self.frontend_url = frontend_url.rstrip("/")
        self.webhook_id = webhook_id
        self.api_base = LIVE_API_BASE if mode == "live" else SANDBOX_API_BASE
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    async def _get_access_token(self) -> str:
        """Get an OAuth access token, reusing the cached one until it expires."""
        if self._access_token and self._token_expires_at:
            if datetime.utcnow() < self._token_expires_at:
                return self._access_token

        auth_string = f"{self.client_id}:{self.client_secret}"
        auth_encoded = base64.b64encode(auth_string.encode()).decode()

        try:
            response = await self.http_client.post(
                f"{self.api_base}/v1/oauth2/token",
                headers={
                    "Authorization": f"Basic {auth_encoded}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                content="grant_type=client_credentials",
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"PayPal token request failed: {e}") from e

        if response.status_code != 200:
            raise GatewayError(
                "Failed to get PayPal access token",
                status_code=response.status_code,
                details={"body": response.text},
            )

        try:
            data = response.json()
            self._access_token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise GatewayError(
                "PayPal returned an unreadable token response",
                status_code=response.status_code,
                details={"body": response.text[:500]},
            ) from e
        # Refresh a minute early
        expires_in = int(data.get("expires_in", 3600)) - 60
        self._token_expires_at = datetime.utcnow() + timedelta(seconds=max(expires_in, 0))
        return self._access_token

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated request to the PayPal API."""
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            response = await self.http_client.request(
                method=method,
                url=f"{self.api_base}{endpoint}",
                headers=headers,
                json=data,
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal {method} {endpoint} failed: {e}")
            raise GatewayError(f"PayPal request failed: {e}") from e

        if response.status_code >= 400:
            error_data = _error_body(response)
            logger.error(f"PayPal API error: {response.status_code} - {error_data}")
            raise GatewayError(
                error_data.get("message", "PayPal API error"),
                status_code=response.status_code,
                details=error_data,
            )

        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"PayPal {method} {endpoint} returned a non-JSON body")
            raise GatewayError(
                "PayPal returned a non-JSON response",
                status_code=response.status_code,
                details={"body": response.text[:500]},
            ) from e

    def _to_gateway_payment(self, result: Dict[str, Any]) -> GatewayPayment:
        approval_url = None
        for link in result.get("links", []):
            if link.get("rel") == "approval_url":
                approval_url = link.get("href")
                break

        return GatewayPayment(
            id=result.get("id", ""),
            status=_STATE_MAP.get(result.get("state", ""), "pending"),
            approval_url=approval_url,
            transaction_id=extract_sale_id(result),
            raw_response=result,
        )

    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPayment:
        payload = {
            "intent": "sale",
            "payer": {"payment_method": "paypal"},
            "redirect_urls": {
                "return_url": request.return_url or f"{self.frontend_url}/payment/success",
                "cancel_url": request.cancel_url or f"{self.frontend_url}/payment/cancel",
            },
            "transactions": [
                {
                    "amount": {
                        "total": _money(request.amount),
                        "currency": request.currency or self.currency,
                    },
                    "description": request.description or "Dental appointment payment",
                    "custom": request.reference,
                }
            ],
        }
        result = await self._make_request("POST", "/v1/payments/payment", payload)
        payment = self._to_gateway_payment(result)
        logger.info(f"Created PayPal payment {payment.id}")
        return payment

    async def execute_payment(self, payment_id: str, payer_id: str) -> GatewayPayment:
        result = await self._make_request(
            "POST",
            f"/v1/payments/payment/{payment_id}/execute",
            {"payer_id": payer_id},
        )
        payment = self._to_gateway_payment(result)
        logger.info(f"Executed PayPal payment {payment_id}: sale {payment.transaction_id}")
        return payment

    async def refund_sale(
        self,
        sale_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "PHP",
    ) -> GatewayRefund:
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = {"total": _money(amount), "currency": currency}

        result = await self._make_request("POST", f"/v1/payments/sale/{sale_id}/refund", payload)
        total = result.get("amount", {}).get("total")
        return GatewayRefund(
            id=result.get("id"),
            status=result.get("state", "pending"),
            sale_id=sale_id,
            amount=Decimal(total) if total else amount,
            raw_response=result,
        )

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        result = await self._make_request("GET", f"/v1/payments/payment/{payment_id}")
        return self._to_gateway_payment(result)

    async def verify_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        """
        Verify a webhook delivery with PayPal's verify-webhook-signature API.

        Args:
            headers: Request headers; the paypal-transmission-* set is required.
            body: Raw request body.

        Returns:
            True only when PayPal reports verification_status SUCCESS.
        """
        if not self.webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID is not set; rejecting webhook")
            return False

        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in WEBHOOK_SIGNATURE_HEADERS if not lowered.get(h)]
        if missing:
            logger.warning(f"Webhook missing signature headers: {missing}")
            return False

        try:
            event = json.loads(body)
        except ValueError:
            logger.warning("Webhook body is not valid JSON")
            return False

        payload = {
            "auth_algo": lowered["paypal-auth-algo"],
            "cert_url": lowered["paypal-cert-url"],
            "transmission_id": lowered["paypal-transmission-id"],
            "transmission_sig": lowered["paypal-transmission-sig"],
            "transmission_time": lowered["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        try:
            result = await self._make_request("POST", "/v1/notifications/verify-webhook-signature", payload)
        except GatewayError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            return False

        status = result.get("verification_status")
        if status != "SUCCESS":
            logger.warning(f"Webhook signature rejected by PayPal: {status}")
            return False
        return True

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            raise ValueError("Invalid webhook payload")

        resource = event.get("resource") or {}
        event_type = event.get("event_type", "unknown")
        # Sale events reference the payment through parent_payment
        payment_id = resource.get("parent_payment") or resource.get("id")
        transaction_id = resource.get("id") if event_type == "PAYMENT.SALE.COMPLETED" else None

        return {
            "type": event_type,
            "provider": self.name,
            "payment_id": payment_id,
            "transaction_id": transaction_id,
            "payload": event,
        }

    async def close(self) -> None:
        await self.http_client.aclose()

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name, "mode": self.mode}
