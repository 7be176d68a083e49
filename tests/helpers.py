import asyncio
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from orderflow.common.utils import now
from orderflow.orders.models import CreateOrderIn
from orderflow.payments.gateway import CaptureResponse, GatewayClient, IntentResult

url_prefix = "/api/v1"

PRICE_X = 240000
PRICE_Y = 120000


class FakeGateway(GatewayClient):
    """In-memory gateway; tests flip its knobs to script provider behaviour."""

    name = "fake"

    def __init__(self):
        self.intents: Dict[str, dict] = {}
        self.create_calls = 0
        self.capture_calls = 0
        self.create_errors: List[Exception] = []
        self.capture_status = "COMPLETED"
        self.capture_error: Optional[Exception] = None
        self.capture_delay = 0.0
        self.on_capture = None

    async def create_intent(self, amount: Decimal, currency: str, reference: str) -> IntentResult:
        self.create_calls += 1
        if self.create_errors:
            raise self.create_errors.pop(0)
        intent_id = f"INTENT-{len(self.intents) + 1}"
        self.intents[intent_id] = {"amount": amount, "currency": currency, "reference": reference}
        return IntentResult(intent_id=intent_id, approval_link=f"https://gateway.test/approve/{intent_id}", status="CREATED")

    async def capture(self, intent_id: str) -> CaptureResponse:
        self.capture_calls += 1
        if self.capture_delay:
            await asyncio.sleep(self.capture_delay)
        if self.capture_error is not None:
            raise self.capture_error
        if self.on_capture is not None:
            await self.on_capture(intent_id)
        intent = self.intents[intent_id]
        return CaptureResponse(
            status=self.capture_status,
            capture_id=f"CAP-{intent_id}",
            amount=f"{intent['amount']:.2f}",
            currency=intent["currency"],
            captured_at=now(),
        )


def order_data(lines: List[Tuple[int, int, int]], payment_method: str = "COD", shipping_fee: int = 30000,
               discount: int = 0, **extra) -> dict:
    """`lines` are (variant_id, quantity, unit_price)."""
    subtotal = sum(q * p for _, q, p in lines)
    data = {
        "customer_name": "Tran Van A",
        "customer_email": "buyer@example.com",
        "customer_phone": "0901234567",
        "shipping_address": "12 Nguyen Hue, District 1, HCMC",
        "items": [{"variant_id": v, "quantity": q, "unit_price": p} for v, q, p in lines],
        "subtotal": subtotal,
        "shipping_fee": shipping_fee,
        "discount": discount,
        "total": subtotal + shipping_fee - discount,
        "payment_method": payment_method,
    }
    data.update(extra)
    return data


def order_payload(lines: List[Tuple[int, int, int]], **kwargs) -> CreateOrderIn:
    return CreateOrderIn(**order_data(lines, **kwargs))
