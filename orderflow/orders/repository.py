from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.common.utils import audit_line, now
from orderflow.db.utils import dialect_insert
from orderflow.orders.utils import format_order_number
from orderflow.schema.full_schema import (OPEN_PAYMENT_STATUSES, OrderItem, Orders, OrderSequence, Payment,
                                          PaymentStatus, Shipping)


async def allocate_order_number(session: AsyncSession, day: Optional[date] = None) -> str:
    """Next ORDyyyymmddNNNN for `day`; the counter row update serializes concurrent allocations."""
    day = day or now().date()
    ins = dialect_insert(session, OrderSequence).values(day=day, last_value=0).on_conflict_do_nothing(index_elements=["day"])
    await session.execute(ins)

    stmt = (
        update(OrderSequence)
        .where(OrderSequence.day == day)
        .values(last_value=OrderSequence.last_value + 1)
        .returning(OrderSequence.last_value)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    seq = res.scalar_one()
    return format_order_number(day, int(seq))


async def insert_order(session: AsyncSession, values: Dict[str, Any]) -> Orders:
    order = Orders(**values)
    session.add(order)
    await session.flush()
    return order


async def insert_order_items(session: AsyncSession, order_id: int, rows: Iterable[Dict[str, Any]]) -> List[OrderItem]:
    items = [OrderItem(order_id=order_id, **row) for row in rows]
    session.add_all(items)
    await session.flush()
    return items


async def insert_payment(session: AsyncSession, order_id: int, method: str, status: str,
                         amount: int, currency: str, note: Optional[str] = None) -> Payment:
    ts = now()
    payment = Payment(
        order_id=order_id,
        method=method,
        status=status,
        amount=amount,
        currency=currency,
        note=audit_line(note, ts) if note else None,
        created_at=ts,
        updated_at=ts,
    )
    session.add(payment)
    await session.flush()
    return payment


async def insert_shipping(session: AsyncSession, order_id: int, recipient_name: str,
                          recipient_phone: Optional[str], address: str, shipping_fee: int) -> Shipping:
    shipping = Shipping(
        order_id=order_id,
        recipient_name=recipient_name,
        recipient_phone=recipient_phone,
        address=address,
        shipping_fee=shipping_fee,
    )
    session.add(shipping)
    await session.flush()
    return shipping


async def transition_order_status(session: AsyncSession, order_id: int, sources: Iterable[str],
                                  values: Dict[str, Any]) -> bool:
    """Guarded status update; False when the order is not in one of `sources` (or does not exist)."""
    stmt = (
        update(Orders)
        .where(and_(Orders.id == order_id, Orders.status.in_(list(sources))))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def get_order_status(session: AsyncSession, order_id: int) -> Optional[str]:
    res = await session.execute(select(Orders.status).where(Orders.id == order_id))
    return res.scalar_one_or_none()


async def load_order(session: AsyncSession, order_id: int) -> Optional[Orders]:
    stmt = select(Orders).where(Orders.id == order_id).execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def load_order_by_number(session: AsyncSession, order_number: str) -> Optional[Orders]:
    stmt = select(Orders).where(Orders.order_number == order_number).execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def load_order_items(session: AsyncSession, order_id: int) -> List[OrderItem]:
    res = await session.execute(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id))
    return list(res.scalars().all())


async def load_shipping(session: AsyncSession, order_id: int) -> Optional[Shipping]:
    res = await session.execute(select(Shipping).where(Shipping.order_id == order_id))
    return res.scalar_one_or_none()


async def load_payments(session: AsyncSession, order_id: int) -> List[Payment]:
    """Newest first."""
    stmt = (
        select(Payment)
        .where(Payment.order_id == order_id)
        .order_by(Payment.id.desc())
        .execution_options(populate_existing=True)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def load_payment(session: AsyncSession, payment_id: int) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


def _append_note(message: str):
    return func.coalesce(Payment.note, "").concat(audit_line(message))


async def cancel_open_payments(session: AsyncSession, order_id: int, message: str) -> int:
    """Cancel the order's non-terminal payment(s), appending `message` to their audit trail."""
    stmt = (
        update(Payment)
        .where(and_(
            Payment.order_id == order_id,
            Payment.status.in_([s.value for s in OPEN_PAYMENT_STATUSES]),
        ))
        .values(status=PaymentStatus.CANCELLED.value, note=_append_note(message), updated_at=now())
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount


async def update_payment_if(session: AsyncSession, payment_id: int, from_statuses: Iterable[str],
                            values: Dict[str, Any], message: Optional[str] = None) -> bool:
    """Conditional payment update; the first writer to move a payment out of `from_statuses` wins."""
    values = dict(values, updated_at=now())
    if message:
        values["note"] = _append_note(message)
    stmt = (
        update(Payment)
        .where(and_(Payment.id == payment_id, Payment.status.in_(list(from_statuses))))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def mark_refund_required(session: AsyncSession, payment_id: int, message: str) -> None:
    """Flag a captured payment whose money has to be returned; the flag is what replays report."""
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id)
        .values(refund_required=True, note=_append_note(message), updated_at=now())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def list_orders(session: AsyncSession, user_id: Optional[str], page: int, limit: int) -> Tuple[List[Orders], int]:
    filters = [Orders.user_id == user_id] if user_id else []
    count_stmt = select(func.count(Orders.id)).where(*filters)
    total = (await session.execute(count_stmt)).scalar_one()

    stmt = (
        select(Orders)
        .where(*filters)
        .order_by(Orders.created_at.desc(), Orders.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all()), int(total)
