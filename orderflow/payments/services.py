import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from orderflow.common.custom_exceptions import GatewayUnavailable, IllegalTransition, NotFound, ValidationError
from orderflow.common.logging_setup import get_logger
from orderflow.common.retries import is_transient_http_error, retry_with_circuit
from orderflow.common.utils import as_utc, now
from orderflow.orders import repository as orders_repo
from orderflow.orders.models import PaymentRead
from orderflow.orders.services import OrderService
from orderflow.orders.utils import OrderEvent
from orderflow.payments.gateway import CaptureResponse, GatewayClient, IntentResult
from orderflow.payments.models import CaptureResult, GatewayPaymentOpened, PaymentHistory, RetryResult
from orderflow.payments.repository import find_payment_by_intent
from orderflow.payments.utils import PaymentConfig, convert_for_gateway
from orderflow.schema.full_schema import (OPEN_PAYMENT_STATUSES, TERMINAL_PAYMENT_STATUSES, OrderStatus, Orders,
                                          Payment, PaymentMethod, PaymentStatus)

logger = get_logger("orderflow.payments")

OPEN_STATUS_VALUES = [s.value for s in OPEN_PAYMENT_STATUSES]
TERMINAL_STATUS_VALUES = [s.value for s in TERMINAL_PAYMENT_STATUSES]

# webhook events that mean the buyer finished on the gateway side
CAPTURE_EVENTS = ("CHECKOUT.ORDER.APPROVED", "CHECKOUT.ORDER.COMPLETED", "PAYMENT.CAPTURE.COMPLETED",
                  "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED")


class PaymentReconciler:
    """
    Keeps payments, orders and stock consistent with what the gateway reports.

    Gateway calls are made with no transaction open. Every local change after a gateway
    answer is a conditional update, so duplicate callbacks and client polls for the same
    intent settle on a single outcome.
    """

    def __init__(self, gateway: GatewayClient, config: Optional[PaymentConfig] = None,
                 orders: Optional[OrderService] = None, circuit: Optional[CircuitBreaker] = None):
        self.gateway = gateway
        self.config = config or PaymentConfig.from_settings()
        self.orders = orders or OrderService()
        self.circuit = circuit or CircuitBreaker("payment_gateway", failure_threshold=5, recovery_timeout=30.0)
        self._create_intent = retry_with_circuit(
            circuit=self.circuit,
            attempts=self.config.max_retries,
            base_delay=self.config.backoff_base,
        )(self._call_create_intent)

    async def _call_create_intent(self, amount: Decimal, currency: str, reference: str) -> IntentResult:
        return await self.gateway.create_intent(amount, currency, reference)

    async def _load_order(self, session: AsyncSession, order_id: int) -> Orders:
        order = await orders_repo.load_order(session, order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found", order_id=order_id)
        return order

    @staticmethod
    def _ensure_awaiting_payment(order: Orders) -> None:
        if order.status != OrderStatus.PENDING.value or order.is_paid:
            raise ValidationError(
                f"order {order.order_number} is not awaiting payment",
                order_id=order.id, status=order.status, is_paid=order.is_paid,
            )

    # ---------------------------------------------------------------- intents

    async def open_gateway_payment(self, session: AsyncSession, order_id: int) -> GatewayPaymentOpened:
        order = await self._load_order(session, order_id)
        self._ensure_awaiting_payment(order)

        try:
            payments = await orders_repo.load_payments(session, order_id)
            payment = next((p for p in payments if p.status in OPEN_STATUS_VALUES), None)
            if payment is None or payment.method != PaymentMethod.GATEWAY.value or payment.transaction_id:
                if payment is not None:
                    await orders_repo.cancel_open_payments(session, order_id, "Cancelled: replaced by a new gateway payment")
                payment = await orders_repo.insert_payment(
                    session, order_id,
                    method=PaymentMethod.GATEWAY.value,
                    status=PaymentStatus.PENDING.value,
                    amount=order.total,
                    currency=order.currency,
                    note="Gateway payment opened",
                )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        amount = convert_for_gateway(order.total, self.config)
        currency = self.config.gateway_currency
        reference = f"{order.order_number}-P{payment.id}"
        try:
            intent = await self._create_intent(amount, currency, reference)
        except CircuitOpenError as exc:
            logger.warning("payment.intent.circuit_open", extra={"order_id": order_id, "payment_id": payment.id})
            raise GatewayUnavailable("payment gateway is temporarily unavailable", order_id=order_id) from exc
        except Exception as exc:
            logger.error(
                "payment.intent.failed",
                extra={"order_id": order_id, "payment_id": payment.id, "error": str(exc)},
            )
            raise GatewayUnavailable(
                "could not create the gateway payment",
                order_id=order_id, retryable=is_transient_http_error(exc),
            ) from exc

        try:
            stored = await orders_repo.update_payment_if(
                session, payment.id, [PaymentStatus.PENDING.value],
                {
                    "transaction_id": intent.intent_id,
                    "gateway_status": intent.status,
                    "gateway_amount": f"{amount:.2f}",
                    "gateway_currency": currency,
                },
                message=f"Gateway intent {intent.intent_id} created for {amount:.2f} {currency}",
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        if not stored:
            logger.warning("payment.intent.payment_moved",
                           extra={"order_id": order_id, "payment_id": payment.id, "intent_id": intent.intent_id})
            raise ValidationError("payment changed while the gateway intent was being created",
                                  order_id=order_id, payment_id=payment.id)

        logger.info(
            "payment.intent.created",
            extra={"order_id": order_id, "payment_id": payment.id, "intent_id": intent.intent_id,
                   "gateway_amount": f"{amount:.2f}", "gateway_currency": currency},
        )
        fresh = await orders_repo.load_payment(session, payment.id)
        return GatewayPaymentOpened(
            order=await self.orders.get_order(session, order_id),
            payment=PaymentRead.model_validate(fresh),
            approval_link=intent.approval_link,
        )

    # ---------------------------------------------------------------- capture

    def _result(self, order: Orders, payment: Payment, replayed: bool) -> CaptureResult:
        return CaptureResult(
            order_id=order.id,
            order_number=order.order_number,
            order_status=order.status,
            payment_id=payment.id,
            payment_status=payment.status,
            intent_id=payment.transaction_id,
            capture_id=payment.capture_id,
            gateway_status=payment.gateway_status,
            captured_amount=payment.gateway_amount,
            captured_currency=payment.gateway_currency,
            replayed=replayed,
            refund_required=payment.refund_required,
        )

    async def _replay(self, session: AsyncSession, order_id: int, payment_id: int) -> CaptureResult:
        order = await self._load_order(session, order_id)
        payment = await orders_repo.load_payment(session, payment_id)
        logger.info("payment.capture.replayed",
                    extra={"order_id": order_id, "payment_id": payment_id, "payment_status": payment.status})
        return self._result(order, payment, replayed=True)

    async def confirm_capture(self, session: AsyncSession, order_id: int, intent_id: str) -> CaptureResult:
        payment = await find_payment_by_intent(session, intent_id, order_id=order_id)
        if payment is None:
            raise NotFound(f"no payment for intent {intent_id} on order {order_id}",
                           order_id=order_id, intent_id=intent_id)
        if payment.status in TERMINAL_STATUS_VALUES:
            return await self._replay(session, order_id, payment.id)
        if payment.method != PaymentMethod.GATEWAY.value:
            raise ValidationError("payment is not a gateway payment", payment_id=payment.id)

        payment_id = payment.id
        # nothing was written; end the read transaction before waiting on the gateway
        await session.commit()

        try:
            capture = await asyncio.wait_for(self.gateway.capture(intent_id), timeout=self.config.capture_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            timed_out = isinstance(exc, asyncio.TimeoutError)
            logger.warning(
                "payment.capture.gateway_unavailable",
                extra={"order_id": order_id, "payment_id": payment_id, "intent_id": intent_id,
                       "timed_out": timed_out, "error": str(exc) or type(exc).__name__},
            )
            raise GatewayUnavailable(
                "payment gateway did not confirm the capture; try again later",
                order_id=order_id, intent_id=intent_id, timed_out=timed_out,
            ) from exc

        try:
            if (capture.status or "").lower() == "completed":
                result = await self._record_success(session, order_id, payment_id, intent_id, capture)
            else:
                result = await self._record_failure(session, order_id, payment_id, intent_id, capture)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return result

    def _capture_values(self, capture: CaptureResponse, status: PaymentStatus) -> Dict[str, Any]:
        values: Dict[str, Any] = {"status": status.value, "gateway_status": capture.status}
        if capture.capture_id:
            values["capture_id"] = capture.capture_id
        if capture.amount is not None:
            values["gateway_amount"] = str(capture.amount)
        if capture.currency:
            values["gateway_currency"] = capture.currency
        if status == PaymentStatus.PAID:
            values["paid_at"] = as_utc(capture.captured_at) or now()
        return values

    async def _record_success(self, session: AsyncSession, order_id: int, payment_id: int,
                              intent_id: str, capture: CaptureResponse) -> CaptureResult:
        values = self._capture_values(capture, PaymentStatus.PAID)
        message = f"Capture {capture.capture_id} completed by gateway"
        refund_required = False
        recovered = False
        order_state = None

        stored = await orders_repo.update_payment_if(session, payment_id, [PaymentStatus.PENDING.value], values, message=message)
        if not stored:
            # cancelled locally (order cancelled or payment retried) while the gateway held the money;
            # the capture still has to be recorded
            stored = await orders_repo.update_payment_if(
                session, payment_id, [PaymentStatus.CANCELLED.value], values,
                message=message + "; payment had been cancelled locally",
            )
            if not stored:
                return await self._replay(session, order_id, payment_id)
            recovered = True

        try:
            await self.orders.apply_event(session, order_id, OrderEvent.PAYMENT_SUCCEEDED)
        except IllegalTransition as exc:
            # a recovered capture on an order that already moved on (paid by another payment or cancelled)
            refund_required = recovered or exc.current_status == OrderStatus.CANCELLED.value
            if not refund_required:
                raise
            order_state = exc.current_status
        else:
            if recovered:
                # the replacement payment opened by a retry is superseded by this capture
                await orders_repo.cancel_open_payments(session, order_id, "Cancelled: earlier payment captured")
                logger.warning("payment.capture.recovered",
                               extra={"order_id": order_id, "payment_id": payment_id, "intent_id": intent_id})

        if refund_required:
            reason = ("Captured after order cancellation" if order_state == OrderStatus.CANCELLED.value
                      else f"Captured while order was already {order_state}")
            await orders_repo.mark_refund_required(session, payment_id, f"{reason}; refund required")
            logger.error(
                "payment.capture.refund_required",
                extra={"order_id": order_id, "payment_id": payment_id, "intent_id": intent_id,
                       "capture_id": capture.capture_id, "amount": capture.amount},
            )
        else:
            logger.info(
                "payment.capture.completed",
                extra={"order_id": order_id, "payment_id": payment_id, "intent_id": intent_id,
                       "capture_id": capture.capture_id},
            )

        order = await self._load_order(session, order_id)
        payment = await orders_repo.load_payment(session, payment_id)
        return self._result(order, payment, replayed=False)

    async def _record_failure(self, session: AsyncSession, order_id: int, payment_id: int,
                              intent_id: str, capture: CaptureResponse) -> CaptureResult:
        values = self._capture_values(capture, PaymentStatus.FAILED)
        stored = await orders_repo.update_payment_if(
            session, payment_id, [PaymentStatus.PENDING.value], values,
            message=f"Capture failed with gateway status {capture.status}",
        )
        if not stored:
            return await self._replay(session, order_id, payment_id)

        try:
            await self.orders.apply_event(session, order_id, OrderEvent.PAYMENT_FAILED,
                                          reason=f"payment failed ({capture.status})")
        except IllegalTransition as exc:
            logger.warning("payment.capture.order_moved",
                           extra={"order_id": order_id, "payment_id": payment_id, "current_status": exc.current_status})

        logger.info("payment.capture.failed",
                    extra={"order_id": order_id, "payment_id": payment_id, "intent_id": intent_id,
                           "gateway_status": capture.status})
        order = await self._load_order(session, order_id)
        payment = await orders_repo.load_payment(session, payment_id)
        return self._result(order, payment, replayed=False)

    # ---------------------------------------------------------------- retry / history

    async def retry_payment(self, session: AsyncSession, order_id: int,
                            method: PaymentMethod = PaymentMethod.GATEWAY) -> RetryResult:
        order = await self._load_order(session, order_id)
        self._ensure_awaiting_payment(order)

        try:
            await orders_repo.cancel_open_payments(session, order_id, "Cancelled due to payment retry")
            payment = await orders_repo.insert_payment(
                session, order_id,
                method=method.value,
                status=PaymentStatus.UNPAID.value if method == PaymentMethod.COD else PaymentStatus.PENDING.value,
                amount=order.total,
                currency=order.currency,
                note="Payment created on retry",
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        logger.info("payment.retry.created", extra={"order_id": order_id, "payment_id": payment.id, "method": method.value})

        if method == PaymentMethod.GATEWAY:
            opened = await self.open_gateway_payment(session, order_id)
            return RetryResult(order=opened.order, payment=opened.payment, approval_link=opened.approval_link)

        fresh = await orders_repo.load_payment(session, payment.id)
        return RetryResult(order=await self.orders.get_order(session, order_id), payment=PaymentRead.model_validate(fresh))

    async def payment_history(self, session: AsyncSession, order_id: int) -> PaymentHistory:
        await self._load_order(session, order_id)
        payments = [PaymentRead.model_validate(p) for p in await orders_repo.load_payments(session, order_id)]
        return PaymentHistory(order_id=order_id, latest=payments[0] if payments else None, history=payments)

    # ---------------------------------------------------------------- webhook

    async def handle_gateway_callback(self, session: AsyncSession, payload: Dict[str, Any]) -> Optional[CaptureResult]:
        event_type = payload.get("event_type")
        if event_type not in CAPTURE_EVENTS:
            logger.info("gateway_webhook.ignored", extra={"event_type": event_type})
            return None

        resource = payload.get("resource") or {}
        intent_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        if event_type.startswith("CHECKOUT.ORDER"):
            intent_id = resource.get("id")
        if not intent_id:
            logger.warning("gateway_webhook.missing_intent", extra={"event_type": event_type})
            return None

        payment = await find_payment_by_intent(session, intent_id)
        if payment is None:
            logger.warning("gateway_webhook.unknown_intent", extra={"event_type": event_type, "intent_id": intent_id})
            return None

        logger.info("gateway_webhook.received",
                    extra={"event_type": event_type, "intent_id": intent_id, "order_id": payment.order_id})
        return await self.confirm_capture(session, payment.order_id, intent_id)
