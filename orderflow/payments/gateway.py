import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import httpx
from pydantic import BaseModel, Field
from orderflow.common.logging_setup import get_logger

logger = get_logger("orderflow.gateway")

PAYPAL_BASE_URLS = {
    "live": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}


class IntentResult(BaseModel):
    intent_id: str
    approval_link: Optional[str] = None
    status: Optional[str] = None


class CaptureResponse(BaseModel):
    status: str
    capture_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    captured_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class GatewayClient:
    """What the reconciler needs from a payment provider."""

    name = "gateway"

    async def create_intent(self, amount: Decimal, currency: str, reference: str) -> IntentResult:
        raise NotImplementedError

    async def capture(self, intent_id: str) -> CaptureResponse:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def parse_capture(data: Dict[str, Any]) -> CaptureResponse:
    """Pick the first capture out of a PayPal order/capture body; falls back to the order status."""
    captures = []
    units = data.get("purchase_units") or []
    if units:
        captures = ((units[0].get("payments") or {}).get("captures")) or []
    if not captures:
        return CaptureResponse(status=str(data.get("status") or "UNKNOWN"), raw=data)

    cap = captures[0]
    amount = cap.get("amount") or {}
    return CaptureResponse(
        status=str(cap.get("status") or data.get("status") or "UNKNOWN"),
        capture_id=cap.get("id"),
        amount=amount.get("value"),
        currency=amount.get("currency_code"),
        captured_at=cap.get("create_time"),
        raw=data,
    )


class PayPalGatewayClient(GatewayClient):

    name = "paypal"

    def __init__(self, client_id: str, client_secret: str, environment: str = "sandbox",
                 timeout: float = 10.0, return_url: Optional[str] = None, cancel_url: Optional[str] = None,
                 brand_name: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_BASE_URLS.get(environment, PAYPAL_BASE_URLS["sandbox"])
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.brand_name = brand_name
        self._client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

        if not client_id or not client_secret:
            logger.warning("gateway.paypal.not_configured")

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        resp = await self._client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        resp.raise_for_status()
        body = resp.json()
        self._token = body["access_token"]
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(0, int(body.get("expires_in", 0)) - 60)
        return self._token

    async def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def create_intent(self, amount: Decimal, currency: str, reference: str) -> IntentResult:
        body: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": reference,
                "invoice_id": reference,
                "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
            }],
            "application_context": {
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        ctx = body["application_context"]
        if self.brand_name:
            ctx["brand_name"] = self.brand_name
        if self.return_url:
            ctx["return_url"] = self.return_url
        if self.cancel_url:
            ctx["cancel_url"] = self.cancel_url

        resp = await self._client.post("/v2/checkout/orders", json=body, headers=await self._headers(reference))
        resp.raise_for_status()
        data = resp.json()
        link = next((l.get("href") for l in data.get("links", []) if l.get("rel") in ("approve", "payer-action")), None)
        logger.info("gateway.paypal.intent_created", extra={"intent_id": data.get("id"), "reference": reference})
        return IntentResult(intent_id=data["id"], approval_link=link, status=data.get("status"))

    async def capture(self, intent_id: str) -> CaptureResponse:
        resp = await self._client.post(
            f"/v2/checkout/orders/{intent_id}/capture",
            json={},
            headers=await self._headers(f"capture-{intent_id}"),
        )
        if resp.status_code == 422 and "ORDER_ALREADY_CAPTURED" in resp.text:
            # a previous attempt went through; read the order back instead
            logger.info("gateway.paypal.already_captured", extra={"intent_id": intent_id})
            resp = await self._client.get(f"/v2/checkout/orders/{intent_id}", headers=await self._headers())
        resp.raise_for_status()
        return parse_capture(resp.json())

    async def aclose(self) -> None:
        await self._client.aclose()
