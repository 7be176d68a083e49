import enum
from datetime import date
from typing import Dict, FrozenSet, NamedTuple, Optional
from orderflow.common.custom_exceptions import ValidationError
from orderflow.orders.models import CreateOrderIn
from orderflow.schema.full_schema import OrderStatus


class OrderEvent(str, enum.Enum):
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    COD_CONFIRMED = "COD_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ABANDONED = "ABANDONED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"
    FULFILLED = "FULFILLED"


class StockEffect(str, enum.Enum):
    NONE = "NONE"
    COMMIT = "COMMIT"
    RELEASE = "RELEASE"


class Transition(NamedTuple):
    sources: FrozenSet[OrderStatus]
    target: OrderStatus
    stock: StockEffect


TRANSITIONS: Dict[OrderEvent, Transition] = {
    OrderEvent.PAYMENT_SUCCEEDED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.PROCESSING, StockEffect.COMMIT),
    OrderEvent.COD_CONFIRMED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.PROCESSING, StockEffect.COMMIT),
    OrderEvent.PAYMENT_FAILED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.CANCELLED, StockEffect.RELEASE),
    OrderEvent.ABANDONED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.CANCELLED, StockEffect.RELEASE),
    # release is a no-op when the stock was already committed
    OrderEvent.CANCEL_REQUESTED: Transition(frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING}), OrderStatus.CANCELLED, StockEffect.RELEASE),
    OrderEvent.FULFILLED: Transition(frozenset({OrderStatus.PROCESSING}), OrderStatus.COMPLETED, StockEffect.NONE),
}


def format_order_number(day: date, seq: int) -> str:
    return f"ORD{day:%Y%m%d}{seq:04d}"


def validate_order_payload(payload: CreateOrderIn) -> None:
    """Shape and arithmetic checks that need no database access."""
    if not payload.shipping_address or not payload.shipping_address.strip():
        raise ValidationError("shipping address is required")
    if not payload.items:
        raise ValidationError("order must contain at least one item")

    line_sum = 0
    for idx, item in enumerate(payload.items):
        if item.quantity <= 0:
            raise ValidationError(f"item {idx}: quantity must be greater than 0", variant_id=item.variant_id)
        if item.unit_price < 0:
            raise ValidationError(f"item {idx}: unit price must not be negative", variant_id=item.variant_id)
        line_sum += item.quantity * item.unit_price

    for field in ("subtotal", "shipping_fee", "discount", "total"):
        if getattr(payload, field) < 0:
            raise ValidationError(f"{field} must not be negative")

    if payload.subtotal != line_sum:
        raise ValidationError("subtotal does not match the sum of the items",
                              subtotal=payload.subtotal, expected=line_sum)
    expected_total = payload.subtotal + payload.shipping_fee - payload.discount
    if payload.total != expected_total:
        raise ValidationError("total must equal subtotal + shipping_fee - discount",
                              total=payload.total, expected=expected_total)


def within_tolerance(given: int, expected: int, tolerance: int) -> bool:
    return abs(int(given) - int(expected)) <= tolerance


def cancellation_note(reason: Optional[str]) -> str:
    return f"Cancelled: {reason}" if reason else "Cancelled: order cancelled"
