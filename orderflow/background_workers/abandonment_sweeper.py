import asyncio
from datetime import timedelta
from typing import Any, Callable, List, Optional
from sqlalchemy import and_, exists, select
from orderflow.common.custom_exceptions import IllegalTransition
from orderflow.common.logging_setup import get_logger
from orderflow.common.utils import now
from orderflow.orders.services import OrderService
from orderflow.orders.utils import OrderEvent
from orderflow.schema.full_schema import OPEN_PAYMENT_STATUSES, OrderStatus, Orders, Payment, PaymentMethod, PaymentStatus

logger = get_logger("orderflow.sweeper")

DEFAULT_THRESHOLD_MINUTES = 60
DEFAULT_POLL_SECONDS = 300.0
DEFAULT_BATCH = 100


class AbandonmentSweeper:
    """Cancels orders left PENDING past the threshold without a completed payment, releasing their stock."""

    def __init__(
        self,
        session_factory: Callable[[], Any],
        *,
        threshold_minutes: int = DEFAULT_THRESHOLD_MINUTES,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        batch_size: int = DEFAULT_BATCH,
        include_cod: bool = True,
        orders: Optional[OrderService] = None,
    ):
        self.session_factory = session_factory
        self.threshold_minutes = threshold_minutes
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.include_cod = include_cod
        self.orders = orders or OrderService()
        self._stop = asyncio.Event()

    @property
    def cancel_note(self) -> str:
        return f"Cancelled automatically: abandoned for more than {self.threshold_minutes} minutes"

    def stop(self):
        self._stop.set()

    async def run(self):
        logger.info("sweeper.started", extra={"threshold_minutes": self.threshold_minutes, "poll_interval": self.poll_interval})
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("sweeper.loop_error")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("sweeper.stopped")

    async def _candidates(self) -> List[int]:
        cutoff = now() - timedelta(minutes=self.threshold_minutes)
        paid = exists().where(and_(Payment.order_id == Orders.id, Payment.status == PaymentStatus.PAID.value))
        conds = [
            Orders.status == OrderStatus.PENDING.value,
            Orders.created_at < cutoff,
            ~paid,
        ]
        if not self.include_cod:
            open_cod = exists().where(and_(
                Payment.order_id == Orders.id,
                Payment.method == PaymentMethod.COD.value,
                Payment.status.in_([s.value for s in OPEN_PAYMENT_STATUSES]),
            ))
            conds.append(~open_cod)

        stmt = select(Orders.id).where(and_(*conds)).order_by(Orders.created_at, Orders.id).limit(self.batch_size)
        async with self.session_factory() as session:
            res = await session.execute(stmt)
            return [int(r[0]) for r in res.all()]

    async def sweep_once(self) -> List[int]:
        """One pass; returns the ids of the orders it cancelled."""
        swept: List[int] = []
        for order_id in await self._candidates():
            async with self.session_factory() as session:
                try:
                    await self.orders.apply_event(
                        session, order_id, OrderEvent.ABANDONED,
                        reason=f"abandoned for more than {self.threshold_minutes} minutes",
                        payment_note=self.cancel_note,
                    )
                    await session.commit()
                except IllegalTransition as exc:
                    await session.rollback()
                    logger.info("sweeper.order_skipped",
                                extra={"order_id": order_id, "current_status": exc.current_status})
                    continue
                except Exception:
                    await session.rollback()
                    raise
            swept.append(order_id)
            logger.info("sweeper.order_abandoned", extra={"order_id": order_id})

        if swept:
            logger.info("sweeper.pass_completed", extra={"cancelled": len(swept)})
        return swept
