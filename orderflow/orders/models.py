import uuid
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from orderflow.schema.full_schema import PaymentMethod


class CreateOrderItemIn(BaseModel):
    variant_id: int
    quantity: int
    unit_price: int


class CreateOrderIn(BaseModel):
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: str
    items: List[CreateOrderItemIn] = Field(default_factory=list)
    subtotal: int
    shipping_fee: int = 0
    discount: int = 0
    total: int
    note: Optional[str] = None
    user_id: Optional[str] = None
    voucher_id: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.COD


class CancelOrderIn(BaseModel):
    reason: Optional[str] = None


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    variant_id: int
    quantity: int
    unit_price: int
    product_name: str
    variant_sku: str
    color_name: Optional[str] = None
    size_name: Optional[str] = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    public_id: uuid.UUID
    method: str
    status: str
    amount: int
    currency: str
    transaction_id: Optional[str] = None
    capture_id: Optional[str] = None
    gateway_status: Optional[str] = None
    gateway_amount: Optional[str] = None
    gateway_currency: Optional[str] = None
    note: Optional[str] = None
    refund_required: bool = False
    paid_at: Optional[datetime] = None
    created_at: datetime


class ShippingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    recipient_name: str
    recipient_phone: Optional[str] = None
    address: str
    shipping_fee: int
    status: str


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    public_id: uuid.UUID
    order_number: str
    user_id: Optional[str] = None
    voucher_id: Optional[int] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: str
    note: Optional[str] = None
    status: str
    stock_state: str
    is_paid: bool
    currency: str
    subtotal: int
    shipping_fee: int
    discount: int
    total: int
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemRead] = Field(default_factory=list)
    payment: Optional[PaymentRead] = None
    shipping: Optional[ShippingRead] = None


class OrderPage(BaseModel):
    items: List[OrderRead]
    total: int
    page: int
    limit: int
