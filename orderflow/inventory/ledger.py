from collections import defaultdict
from typing import Dict, Iterable, List, Tuple
from pydantic import BaseModel
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.common.custom_exceptions import InsufficientStock
from orderflow.common.logging_setup import get_logger
from orderflow.common.utils import now
from orderflow.schema.full_schema import OrderItem, Orders, ProductVariant, StockState

logger = get_logger("orderflow.inventory")


class StockLevel(BaseModel):
    available: int
    reserved: int


def merge_lines(items: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Sum quantities per variant and order by variant id, so concurrent reservations lock rows in the same order."""
    merged: Dict[int, int] = defaultdict(int)
    for variant_id, qty in items:
        merged[int(variant_id)] += int(qty)
    return sorted(merged.items())


async def _reserve_one(session: AsyncSession, variant_id: int, qty: int) -> bool:
    stmt = (
        update(ProductVariant)
        .where(and_(ProductVariant.id == variant_id, ProductVariant.available >= qty))
        .values(
            available=ProductVariant.available - qty,
            reserved=ProductVariant.reserved + qty,
            updated_at=now(),
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def reserve_stock(session: AsyncSession, items: Iterable[Tuple[int, int]]) -> None:
    """
    Move `qty` from available to reserved for every (variant_id, qty) line, all or nothing.

    Each variant is a single conditional update (`available >= qty`), so two checkouts racing
    for the last unit cannot both succeed. When any line cannot be covered the surrounding
    transaction is rolled back before InsufficientStock is raised; callers must not have
    pending writes they want to keep.
    """
    lines = merge_lines(items)
    for variant_id, qty in lines:
        if qty <= 0:
            raise ValueError(f"quantity for variant {variant_id} must be positive, got {qty}")

    for variant_id, qty in lines:
        if await _reserve_one(session, variant_id, qty):
            continue

        res = await session.execute(select(ProductVariant.available).where(ProductVariant.id == variant_id))
        available = res.scalar_one_or_none()
        await session.rollback()
        logger.info(
            "inventory.reserve_rejected",
            extra={"variant_id": variant_id, "available": available or 0, "requested": qty},
        )
        raise InsufficientStock(variant_id=variant_id, available=available or 0, requested=qty)

    logger.debug("inventory.reserved", extra={"lines": len(lines)})


async def _order_quantities(session: AsyncSession, order_id: int) -> List[Tuple[int, int]]:
    stmt = select(OrderItem.variant_id, OrderItem.quantity).where(OrderItem.order_id == order_id)
    res = await session.execute(stmt)
    return merge_lines((int(r[0]), int(r[1])) for r in res.all())


async def _flip_stock_state(session: AsyncSession, order_id: int, target: StockState) -> bool:
    stmt = (
        update(Orders)
        .where(and_(Orders.id == order_id, Orders.stock_state == StockState.RESERVED.value))
        .values(stock_state=target.value, updated_at=now())
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def commit_stock(session: AsyncSession, order_id: int) -> bool:
    """Turn the order's reservation into a permanent decrement. Returns False when there was nothing to commit."""
    if not await _flip_stock_state(session, order_id, StockState.COMMITTED):
        return False

    for variant_id, qty in await _order_quantities(session, order_id):
        await session.execute(
            update(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .values(reserved=ProductVariant.reserved - qty, updated_at=now())
            .execution_options(synchronize_session=False)
        )
    logger.info("inventory.committed", extra={"order_id": order_id})
    return True


async def release_stock(session: AsyncSession, order_id: int) -> bool:
    """Give the order's reservation back to available. No-op once committed or released."""
    if not await _flip_stock_state(session, order_id, StockState.RELEASED):
        return False

    for variant_id, qty in await _order_quantities(session, order_id):
        await session.execute(
            update(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .values(
                available=ProductVariant.available + qty,
                reserved=ProductVariant.reserved - qty,
                updated_at=now(),
            )
            .execution_options(synchronize_session=False)
        )
    logger.info("inventory.released", extra={"order_id": order_id})
    return True


async def stock_levels(session: AsyncSession, variant_ids: Iterable[int]) -> Dict[int, StockLevel]:
    ids = sorted({int(v) for v in variant_ids})
    if not ids:
        return {}
    stmt = select(ProductVariant.id, ProductVariant.available, ProductVariant.reserved).where(ProductVariant.id.in_(ids))
    res = await session.execute(stmt)
    return {int(r[0]): StockLevel(available=int(r[1]), reserved=int(r[2])) for r in res.all()}
