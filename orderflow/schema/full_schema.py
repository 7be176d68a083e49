import enum
import uuid
from datetime import date, datetime
from typing import Optional
from sqlalchemy import BigInteger, Boolean, CheckConstraint, Date, DateTime, ForeignKey, Integer, Text, Uuid
from uuid6 import uuid7
from sqlmodel import Column, SQLModel, Field, String
from orderflow.common.utils import now


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class StockState(str, enum.Enum):
    RESERVED = "RESERVED"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class PaymentMethod(str, enum.Enum):
    COD = "COD"
    GATEWAY = "GATEWAY"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"      # gateway payment waiting for capture
    UNPAID = "UNPAID"        # cash on delivery, collected later
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.UNPAID)
TERMINAL_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED)


class ShippingStatus(str, enum.Enum):
    PENDING = "PENDING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"


class DiscountType(str, enum.Enum):
    PERCENT = "PERCENT"
    FIXED = "FIXED"

# --------------------------------------------------------------------------------------------
# catalog rows, owned by the catalog service; stock counters change only through inventory.ledger

class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid, unique=True, index=True, nullable=False))
    name: str = Field(sa_column=Column(String(255), nullable=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


class ProductVariant(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(sa_column=Column(Integer, ForeignKey("product.id", ondelete="CASCADE"), nullable=False, index=True))
    sku: str = Field(sa_column=Column(String(128), nullable=False, unique=True))
    color_name: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    size_name: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))   # store minor units
    available: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    reserved: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))

    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_variant_available_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_variant_reserved_non_negative"),
    )


class Voucher(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(sa_column=Column(String(64), nullable=False, unique=True, index=True))
    discount_type: str = Field(default=DiscountType.FIXED.value, sa_column=Column(String(16), nullable=False))
    value: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))   # percent points or minor units
    min_order_amount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    max_discount: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    usage_limit: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    used_count: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    starts_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

# --------------------------------------------------------------------------------------------

class OrderSequence(SQLModel, table=True):
    day: date = Field(sa_column=Column(Date, primary_key=True))
    last_value: int = Field(default=0, sa_column=Column(Integer, nullable=False))


class Orders(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid, unique=True, index=True, nullable=False))
    order_number: str = Field(sa_column=Column(String(32), unique=True, index=True, nullable=False))
    user_id: Optional[str] = Field(default=None, sa_column=Column(String(64), index=True, nullable=True))  # null for guest checkout
    voucher_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("voucher.id", ondelete="SET NULL"), nullable=True))

    customer_name: str = Field(sa_column=Column(String(255), nullable=False))
    customer_email: Optional[str] = Field(default=None, sa_column=Column(String(320), nullable=True))
    customer_phone: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    shipping_address: str = Field(sa_column=Column(Text, nullable=False))
    note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    status: str = Field(default=OrderStatus.PENDING.value, sa_column=Column(String(16), nullable=False, index=True))
    stock_state: str = Field(default=StockState.RESERVED.value, sa_column=Column(String(16), nullable=False))
    is_paid: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    currency: str = Field(default="VND", sa_column=Column(String(8), nullable=False))
    subtotal: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    shipping_fee: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    discount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    total: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    cancel_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, index=True))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    __table_args__ = (
        CheckConstraint("total = subtotal + shipping_fee - discount", name="ck_orders_total_balanced"),
    )


# Order --> OrderItems (1:many); the descriptive columns are a snapshot taken at order time
class OrderItem(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True))
    variant_id: int = Field(sa_column=Column(Integer, ForeignKey("productvariant.id", ondelete="RESTRICT"), nullable=False))
    quantity: int = Field(sa_column=Column(Integer, nullable=False))
    unit_price: int = Field(sa_column=Column(BigInteger, nullable=False))
    product_name: str = Field(sa_column=Column(String(255), nullable=False))
    variant_sku: str = Field(sa_column=Column(String(128), nullable=False))
    color_name: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    size_name: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_orderitem_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_orderitem_price_non_negative"),
    )


class Payment(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid, unique=True, index=True, nullable=False))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True))
    method: str = Field(sa_column=Column(String(16), nullable=False))
    status: str = Field(default=PaymentStatus.PENDING.value, sa_column=Column(String(16), nullable=False, index=True))
    amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    currency: str = Field(default="VND", sa_column=Column(String(8), nullable=False))
    transaction_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))  # gateway intent id
    capture_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    gateway_status: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    gateway_amount: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    gateway_currency: Optional[str] = Field(default=None, sa_column=Column(String(8), nullable=True))
    note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    refund_required: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))  # captured money that has to go back
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))


class Shipping(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, unique=True))
    recipient_name: str = Field(sa_column=Column(String(255), nullable=False))
    recipient_phone: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    address: str = Field(sa_column=Column(Text, nullable=False))
    shipping_fee: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    status: str = Field(default=ShippingStatus.PENDING.value, sa_column=Column(String(16), nullable=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
