from typing import Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.catalog.models import VariantPricing
from orderflow.catalog.services import CatalogService, VoucherService
from orderflow.common.custom_exceptions import IllegalTransition, InsufficientStock, NotFound, ValidationError
from orderflow.common.logging_setup import get_logger
from orderflow.common.utils import now
from orderflow.config.settings import config_settings
from orderflow.inventory.ledger import commit_stock, merge_lines, release_stock, reserve_stock
from orderflow.orders import repository as repo
from orderflow.orders.models import CreateOrderIn, OrderItemRead, OrderPage, OrderRead, PaymentRead, ShippingRead
from orderflow.orders.utils import (TRANSITIONS, OrderEvent, StockEffect, cancellation_note,
                                    validate_order_payload, within_tolerance)
from orderflow.schema.full_schema import (OrderStatus, Orders, PaymentMethod, PaymentStatus, StockState)

logger = get_logger("orderflow.orders")


class OrderService:
    """Order lifecycle: creation with stock reservation, guarded transitions, reads."""

    def __init__(self, catalog: Optional[CatalogService] = None, vouchers: Optional[VoucherService] = None,
                 price_tolerance: int = None, currency: str = None):
        self.catalog = catalog or CatalogService()
        self.vouchers = vouchers or VoucherService()
        self.price_tolerance = config_settings.PRICE_TOLERANCE if price_tolerance is None else price_tolerance
        self.currency = currency or config_settings.STORE_CURRENCY

    # ---------------------------------------------------------------- create

    async def _price_lines(self, session: AsyncSession, payload: CreateOrderIn) -> Dict[int, VariantPricing]:
        pricing: Dict[int, VariantPricing] = {}
        for item in payload.items:
            if item.variant_id not in pricing:
                found = await self.catalog.get_variant_for_pricing(session, item.variant_id)
                if found is None:
                    raise ValidationError(f"variant {item.variant_id} not found", variant_id=item.variant_id)
                pricing[item.variant_id] = found
            current = pricing[item.variant_id]
            if not within_tolerance(item.unit_price, current.unit_price, self.price_tolerance):
                raise ValidationError(
                    f"price of {current.name} has changed",
                    variant_id=item.variant_id, given=item.unit_price, current=current.unit_price,
                )
        return pricing

    async def _check_discount(self, session: AsyncSession, payload: CreateOrderIn) -> None:
        if payload.voucher_id is None:
            if payload.discount != 0:
                raise ValidationError("discount requires a voucher", discount=payload.discount)
            return
        check = await self.vouchers.validate(session, payload.voucher_id, payload.subtotal)
        if not check.valid:
            raise ValidationError(check.error or "voucher is not valid", voucher_id=payload.voucher_id)
        if not within_tolerance(payload.discount, check.discount_amount, self.price_tolerance):
            raise ValidationError(
                "discount does not match the voucher",
                voucher_id=payload.voucher_id, given=payload.discount, expected=check.discount_amount,
            )

    async def create_order(self, session: AsyncSession, payload: CreateOrderIn) -> OrderRead:
        validate_order_payload(payload)
        pricing = await self._price_lines(session, payload)

        requested = merge_lines((item.variant_id, item.quantity) for item in payload.items)
        for variant_id, qty in requested:
            snapshot = pricing[variant_id]
            if snapshot.available_stock < qty:
                raise InsufficientStock(variant_id, snapshot.available_stock, qty, product_name=snapshot.name)

        await self._check_discount(session, payload)

        try:
            try:
                await reserve_stock(session, requested)
            except InsufficientStock as exc:
                name = pricing[exc.variant_id].name if exc.variant_id in pricing else None
                raise InsufficientStock(exc.variant_id, exc.available, exc.requested, product_name=name) from exc

            ts = now()
            order_number = await repo.allocate_order_number(session, ts.date())
            customer_name = (payload.customer_name or "").strip() or "Guest"
            order = await repo.insert_order(session, {
                "order_number": order_number,
                "user_id": payload.user_id,
                "voucher_id": payload.voucher_id,
                "customer_name": customer_name,
                "customer_email": payload.customer_email,
                "customer_phone": payload.customer_phone,
                "shipping_address": payload.shipping_address.strip(),
                "note": payload.note,
                "status": OrderStatus.PENDING.value,
                "stock_state": StockState.RESERVED.value,
                "currency": self.currency,
                "subtotal": payload.subtotal,
                "shipping_fee": payload.shipping_fee,
                "discount": payload.discount,
                "total": payload.total,
                "created_at": ts,
                "updated_at": ts,
            })

            await repo.insert_order_items(session, order.id, [
                {
                    "variant_id": item.variant_id,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "product_name": pricing[item.variant_id].name,
                    "variant_sku": pricing[item.variant_id].sku,
                    "color_name": pricing[item.variant_id].color_name,
                    "size_name": pricing[item.variant_id].size_name,
                }
                for item in payload.items
            ])

            cod = payload.payment_method == PaymentMethod.COD
            await repo.insert_payment(
                session, order.id,
                method=payload.payment_method.value,
                status=PaymentStatus.UNPAID.value if cod else PaymentStatus.PENDING.value,
                amount=payload.total,
                currency=self.currency,
                note="Payment created with order",
            )
            await repo.insert_shipping(
                session, order.id,
                recipient_name=customer_name,
                recipient_phone=payload.customer_phone,
                address=order.shipping_address,
                shipping_fee=payload.shipping_fee,
            )

            if payload.voucher_id is not None:
                if not await self.vouchers.increment_usage(session, payload.voucher_id):
                    raise ValidationError("voucher usage limit reached", voucher_id=payload.voucher_id)

            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(
            "order.created",
            extra={"order_id": order.id, "order_number": order_number, "total": payload.total,
                   "payment_method": payload.payment_method.value, "lines": len(payload.items)},
        )
        return await self.get_order(session, order.id)

    # ---------------------------------------------------------------- transitions

    async def apply_event(self, session: AsyncSession, order_id: int, event: OrderEvent,
                          reason: Optional[str] = None, payment_note: Optional[str] = None) -> Orders:
        """
        Move the order along `event` with one guarded update and run the stock side effect.
        Does not commit; the caller owns the transaction.
        """
        transition = TRANSITIONS[event]
        ts = now()
        values = {"status": transition.target.value, "updated_at": ts}
        if event == OrderEvent.PAYMENT_SUCCEEDED:
            values.update(is_paid=True, paid_at=ts)
        elif event == OrderEvent.FULFILLED:
            values["completed_at"] = ts
        if transition.target == OrderStatus.CANCELLED:
            values.update(cancelled_at=ts, cancel_reason=reason)

        moved = await repo.transition_order_status(session, order_id, [s.value for s in transition.sources], values)
        if not moved:
            current = await repo.get_order_status(session, order_id)
            if current is None:
                raise NotFound(f"order {order_id} not found", order_id=order_id)
            logger.info("order.transition_rejected",
                        extra={"order_id": order_id, "event": event.value, "current_status": current})
            raise IllegalTransition(order_id, current, event.value)

        if transition.stock == StockEffect.COMMIT:
            await commit_stock(session, order_id)
        elif transition.stock == StockEffect.RELEASE:
            await release_stock(session, order_id)

        if transition.target == OrderStatus.CANCELLED:
            await self._settle_payments_on_cancel(session, order_id, event, payment_note or cancellation_note(reason))
        elif event == OrderEvent.FULFILLED:
            await self._collect_cod_payment(session, order_id)

        logger.info("order.transitioned",
                    extra={"order_id": order_id, "event": event.value, "to_status": transition.target.value})
        return await repo.load_order(session, order_id)

    async def _settle_payments_on_cancel(self, session: AsyncSession, order_id: int,
                                         event: OrderEvent, note: str) -> None:
        if event == OrderEvent.CANCEL_REQUESTED:
            for payment in await repo.load_payments(session, order_id):
                if payment.status == PaymentStatus.PAID.value:
                    logger.warning("order.refund_required",
                                   extra={"order_id": order_id, "payment_id": payment.id, "amount": payment.amount})
                    await repo.mark_refund_required(session, payment.id, "Order cancelled after payment; refund required")
        await repo.cancel_open_payments(session, order_id, note)

    async def _collect_cod_payment(self, session: AsyncSession, order_id: int) -> None:
        for payment in await repo.load_payments(session, order_id):
            if payment.method == PaymentMethod.COD.value and payment.status == PaymentStatus.UNPAID.value:
                await repo.update_payment_if(
                    session, payment.id, [PaymentStatus.UNPAID.value],
                    {"status": PaymentStatus.PAID.value, "paid_at": now()},
                    message="Cash collected on delivery",
                )

    async def _apply_and_commit(self, session: AsyncSession, order_id: int, event: OrderEvent,
                                reason: Optional[str] = None) -> OrderRead:
        try:
            await self.apply_event(session, order_id, event, reason=reason)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return await self.get_order(session, order_id)

    async def cancel_order(self, session: AsyncSession, order_id: int, reason: Optional[str] = None,
                           actor: str = "customer") -> OrderRead:
        reason = reason or f"cancelled by {actor}"
        order = await self._apply_and_commit(session, order_id, OrderEvent.CANCEL_REQUESTED, reason=reason)
        logger.info("order.cancelled", extra={"order_id": order_id, "actor": actor})
        return order

    async def confirm_cod_order(self, session: AsyncSession, order_id: int) -> OrderRead:
        payments = await repo.load_payments(session, order_id)
        if payments and payments[0].method != PaymentMethod.COD.value:
            raise ValidationError("order is not a cash on delivery order", order_id=order_id)
        return await self._apply_and_commit(session, order_id, OrderEvent.COD_CONFIRMED)

    async def complete_order(self, session: AsyncSession, order_id: int) -> OrderRead:
        return await self._apply_and_commit(session, order_id, OrderEvent.FULFILLED)

    # ---------------------------------------------------------------- reads

    async def _to_read(self, session: AsyncSession, order: Orders) -> OrderRead:
        items = await repo.load_order_items(session, order.id)
        payments = await repo.load_payments(session, order.id)
        shipping = await repo.load_shipping(session, order.id)
        data = OrderRead.model_validate(order)
        data.items = [OrderItemRead.model_validate(i) for i in items]
        data.payment = PaymentRead.model_validate(payments[0]) if payments else None
        data.shipping = ShippingRead.model_validate(shipping) if shipping else None
        return data

    async def get_order(self, session: AsyncSession, order_id: int) -> OrderRead:
        order = await repo.load_order(session, order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found", order_id=order_id)
        return await self._to_read(session, order)

    async def get_order_by_number(self, session: AsyncSession, order_number: str) -> OrderRead:
        order = await repo.load_order_by_number(session, order_number)
        if order is None:
            raise NotFound(f"order {order_number} not found", order_number=order_number)
        return await self._to_read(session, order)

    async def list_orders(self, session: AsyncSession, user_id: Optional[str] = None,
                          page: int = 1, limit: int = 20) -> OrderPage:
        page = max(1, int(page))
        limit = min(max(1, int(limit)), 100)
        orders, total = await repo.list_orders(session, user_id, page, limit)
        items: List[OrderRead] = [await self._to_read(session, o) for o in orders]
        return OrderPage(items=items, total=total, page=page, limit=limit)
