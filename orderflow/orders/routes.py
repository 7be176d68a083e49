from typing import Optional
from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.common.custom_exceptions import GatewayUnavailable
from orderflow.common.logging_setup import get_logger
from orderflow.common.utils import success_response
from orderflow.db.dependencies import get_order_service, get_reconciler, get_session
from orderflow.orders.models import CancelOrderIn, CreateOrderIn
from orderflow.orders.services import OrderService
from orderflow.payments.services import PaymentReconciler
from orderflow.schema.full_schema import PaymentMethod

logger = get_logger("orderflow.orders.routes")

orders_router = APIRouter()
orders_admin_router = APIRouter()


@orders_router.post("/orders")
async def create_order(payload: CreateOrderIn,
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service),
    reconciler: PaymentReconciler = Depends(get_reconciler)):

    order = await orders.create_order(session, payload)
    data = {"order": order, "payment": order.payment, "approval_link": None, "payment_error": None}

    if payload.payment_method == PaymentMethod.GATEWAY:
        # the order stands even when the gateway is down; the client retries the payment later
        try:
            opened = await reconciler.open_gateway_payment(session, order.id)
            data.update(order=opened.order, payment=opened.payment, approval_link=opened.approval_link)
        except GatewayUnavailable as exc:
            logger.warning("order.created_without_intent", extra={"order_id": order.id, "error_code": exc.code})
            data["payment_error"] = {"code": exc.code, **exc.to_dict()}

    return success_response(data, status_code=status.HTTP_201_CREATED)


@orders_router.get("/orders")
async def list_orders(user_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service)):

    result = await orders.list_orders(session, user_id=user_id, page=page, limit=limit)
    return success_response(result)


@orders_router.get("/orders/by-number/{order_number}")
async def get_order_by_number(order_number: str,
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service)):

    return success_response(await orders.get_order_by_number(session, order_number))


@orders_router.get("/orders/{order_id}")
async def get_order(order_id: int,
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service)):

    return success_response(await orders.get_order(session, order_id))


@orders_router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: int,
    payload: Optional[CancelOrderIn] = Body(None),
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service)):

    reason = payload.reason if payload else None
    return success_response(await orders.cancel_order(session, order_id, reason=reason, actor="customer"))

#--------------------------------------------------------------------------------------------------------

@orders_admin_router.post("/orders/{order_id}/confirm-cod")
async def admin_confirm_cod(order_id: int,
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service)):

    return success_response(await orders.confirm_cod_order(session, order_id))


@orders_admin_router.post("/orders/{order_id}/complete")
async def admin_complete_order(order_id: int,
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service)):

    return success_response(await orders.complete_order(session, order_id))


@orders_admin_router.post("/orders/{order_id}/cancel")
async def admin_cancel_order(order_id: int,
    payload: Optional[CancelOrderIn] = Body(None),
    session: AsyncSession = Depends(get_session),
    orders: OrderService = Depends(get_order_service)):

    reason = payload.reason if payload else None
    return success_response(await orders.cancel_order(session, order_id, reason=reason, actor="admin"))
