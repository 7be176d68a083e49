from typing import Optional
from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.common.utils import success_response
from orderflow.db.dependencies import get_reconciler, get_session
from orderflow.payments.models import CaptureIn, RetryPaymentIn
from orderflow.payments.services import PaymentReconciler
from orderflow.schema.full_schema import PaymentMethod

payments_router = APIRouter()


@payments_router.post("/orders/{order_id}/payments/gateway")
async def create_gateway_payment(order_id: int,
    session: AsyncSession = Depends(get_session),
    reconciler: PaymentReconciler = Depends(get_reconciler)):

    opened = await reconciler.open_gateway_payment(session, order_id)
    return success_response(opened, status_code=201)


@payments_router.post("/orders/{order_id}/payments/retry")
async def retry_payment(order_id: int,
    payload: Optional[RetryPaymentIn] = Body(None),
    session: AsyncSession = Depends(get_session),
    reconciler: PaymentReconciler = Depends(get_reconciler)):

    method = payload.method if payload else PaymentMethod.GATEWAY
    result = await reconciler.retry_payment(session, order_id, method)
    return success_response(result, status_code=201)


@payments_router.get("/orders/{order_id}/payments")
async def payment_history(order_id: int,
    session: AsyncSession = Depends(get_session),
    reconciler: PaymentReconciler = Depends(get_reconciler)):

    return success_response(await reconciler.payment_history(session, order_id))


# client poll after the buyer returns from the gateway
@payments_router.post("/payments/capture")
async def confirm_capture(payload: CaptureIn,
    session: AsyncSession = Depends(get_session),
    reconciler: PaymentReconciler = Depends(get_reconciler)):

    result = await reconciler.confirm_capture(session, payload.order_id, payload.intent_id)
    return success_response(result)
