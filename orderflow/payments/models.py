from typing import List, Optional
from pydantic import BaseModel, Field
from orderflow.orders.models import OrderRead, PaymentRead
from orderflow.schema.full_schema import PaymentMethod


class CaptureIn(BaseModel):
    order_id: int
    intent_id: str


class RetryPaymentIn(BaseModel):
    method: PaymentMethod = PaymentMethod.GATEWAY


class CaptureResult(BaseModel):
    order_id: int
    order_number: str
    order_status: str
    payment_id: int
    payment_status: str
    intent_id: Optional[str] = None
    capture_id: Optional[str] = None
    gateway_status: Optional[str] = None
    captured_amount: Optional[str] = None
    captured_currency: Optional[str] = None
    replayed: bool = False
    refund_required: bool = False


class GatewayPaymentOpened(BaseModel):
    order: OrderRead
    payment: PaymentRead
    approval_link: Optional[str] = None


class RetryResult(BaseModel):
    order: OrderRead
    payment: PaymentRead
    approval_link: Optional[str] = None


class PaymentHistory(BaseModel):
    order_id: int
    latest: Optional[PaymentRead] = None
    history: List[PaymentRead] = Field(default_factory=list)
