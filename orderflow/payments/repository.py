from typing import Optional
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.schema.full_schema import Payment


async def find_payment_by_intent(session: AsyncSession, intent_id: str, order_id: Optional[int] = None) -> Optional[Payment]:
    conds = [Payment.transaction_id == intent_id]
    if order_id is not None:
        conds.append(Payment.order_id == order_id)
    stmt = select(Payment).where(and_(*conds)).execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()

