from decimal import Decimal
import httpx
import pytest
from orderflow.common.custom_exceptions import GatewayUnavailable, NotFound, ValidationError
from orderflow.inventory.ledger import stock_levels
from orderflow.orders import repository as orders_repo
from orderflow.payments.utils import PaymentConfig, convert_for_gateway, sign_payload, verify_signature
from orderflow.schema.full_schema import PaymentMethod
from tests.helpers import PRICE_X, PRICE_Y, order_payload


async def gateway_order(session_factory, order_service, reconciler, lines):
    async with session_factory() as session:
        order = await order_service.create_order(session, order_payload(lines, payment_method="GATEWAY"))
    async with session_factory() as session:
        opened = await reconciler.open_gateway_payment(session, order.id)
    return opened


async def levels(session_factory, variant_id):
    async with session_factory() as session:
        lv = await stock_levels(session, [variant_id])
    return lv[variant_id].available, lv[variant_id].reserved


@pytest.mark.parametrize("amount, config, expected", [
    (480000, PaymentConfig(), Decimal("20.00")),
    (36000, PaymentConfig(), Decimal("1.50")),
    (360, PaymentConfig(), Decimal("0.02")),      # 0.015 rounds half up
    (100, PaymentConfig(), Decimal("0.01")),      # clamped to the gateway minimum
    (0, PaymentConfig(), Decimal("0.01")),
    (1999, PaymentConfig(store_currency="USD", store_currency_exponent=2, exchange_rate=Decimal("1")), Decimal("19.99")),
])
def test_convert_for_gateway(amount, config, expected):
    assert convert_for_gateway(amount, config) == expected


def test_signature_helpers():
    sig = sign_payload("s3cret", b'{"a": 1}')
    assert verify_signature("s3cret", b'{"a": 1}', sig)
    assert not verify_signature("s3cret", b'{"a": 2}', sig)
    assert not verify_signature("s3cret", b'{"a": 1}', None)


@pytest.mark.asyncio
async def test_open_gateway_payment_stores_intent(session_factory, catalog, order_service, reconciler, gateway):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["x"], 1, PRICE_X)])

    payment = opened.payment
    assert payment.status == "PENDING"
    assert payment.transaction_id == "INTENT-1"
    # (240000 + 30000) / 24000 = 11.25
    assert payment.gateway_amount == "11.25"
    assert payment.gateway_currency == "USD"
    assert opened.approval_link == "https://gateway.test/approve/INTENT-1"
    assert gateway.intents["INTENT-1"]["amount"] == Decimal("11.25")
    assert gateway.intents["INTENT-1"]["reference"].startswith(opened.order.order_number)
    # the payment created with the order is reused, not duplicated
    assert payment.id == opened.order.payment.id


@pytest.mark.asyncio
async def test_capture_completed_commits_stock(session_factory, catalog, order_service, reconciler, gateway):
    x = catalog["x"]
    opened = await gateway_order(session_factory, order_service, reconciler, [(x, 2, PRICE_X)])
    assert await levels(session_factory, x) == (0, 2)

    async with session_factory() as session:
        result = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")

    assert result.payment_status == "PAID"
    assert result.order_status == "PROCESSING"
    assert result.capture_id == "CAP-INTENT-1"
    assert result.replayed is False
    assert result.refund_required is False
    assert await levels(session_factory, x) == (0, 0)

    async with session_factory() as session:
        order = await order_service.get_order(session, opened.order.id)
    assert order.is_paid is True
    assert order.paid_at is not None
    assert order.stock_state == "COMMITTED"
    assert order.payment.paid_at is not None


@pytest.mark.asyncio
async def test_second_capture_is_replayed_without_gateway_call(session_factory, catalog, order_service, reconciler, gateway):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])

    async with session_factory() as session:
        first = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    async with session_factory() as session:
        second = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")

    assert gateway.capture_calls == 1
    assert second.replayed is True
    assert (second.payment_status, second.order_status) == (first.payment_status, first.order_status)
    assert second.capture_id == first.capture_id


@pytest.mark.asyncio
async def test_capture_declined_releases_stock(session_factory, catalog, order_service, reconciler, gateway):
    x = catalog["x"]
    opened = await gateway_order(session_factory, order_service, reconciler, [(x, 2, PRICE_X)])
    gateway.capture_status = "DECLINED"

    async with session_factory() as session:
        result = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")

    assert result.payment_status == "FAILED"
    assert result.order_status == "CANCELLED"
    assert result.gateway_status == "DECLINED"
    assert await levels(session_factory, x) == (2, 0)

    async with session_factory() as session:
        replay = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert replay.replayed is True
    assert replay.payment_status == "FAILED"
    assert gateway.capture_calls == 1


@pytest.mark.asyncio
async def test_gateway_error_leaves_payment_pending(session_factory, catalog, order_service, reconciler, gateway):
    x = catalog["x"]
    opened = await gateway_order(session_factory, order_service, reconciler, [(x, 1, PRICE_X)])
    gateway.capture_error = httpx.ConnectError("connection refused")

    async with session_factory() as session:
        with pytest.raises(GatewayUnavailable) as exc_info:
            await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert exc_info.value.details["retryable"] is True

    async with session_factory() as session:
        order = await order_service.get_order(session, opened.order.id)
    assert order.status == "PENDING"
    assert order.payment.status == "PENDING"
    assert await levels(session_factory, x) == (1, 1)

    # the gateway recovers and the same intent is captured
    gateway.capture_error = None
    async with session_factory() as session:
        result = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert result.payment_status == "PAID"


@pytest.mark.asyncio
async def test_gateway_timeout_leaves_payment_pending(session_factory, catalog, order_service, reconciler, gateway):
    x = catalog["x"]
    opened = await gateway_order(session_factory, order_service, reconciler, [(x, 1, PRICE_X)])
    gateway.capture_delay = 1.0

    async with session_factory() as session:
        with pytest.raises(GatewayUnavailable) as exc_info:
            await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert exc_info.value.details["timed_out"] is True

    async with session_factory() as session:
        order = await order_service.get_order(session, opened.order.id)
    assert order.status == "PENDING"
    assert order.payment.status == "PENDING"
    assert await levels(session_factory, x) == (1, 1)


@pytest.mark.asyncio
async def test_capture_after_cancellation_requires_refund(session_factory, catalog, order_service, reconciler, gateway):
    x = catalog["x"]
    opened = await gateway_order(session_factory, order_service, reconciler, [(x, 1, PRICE_X)])

    async def buyer_cancels_meanwhile(intent_id):
        async with session_factory() as session:
            await order_service.cancel_order(session, opened.order.id, reason="changed my mind")

    gateway.on_capture = buyer_cancels_meanwhile

    async with session_factory() as session:
        result = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")

    assert result.payment_status == "PAID"
    assert result.order_status == "CANCELLED"
    assert result.refund_required is True
    assert await levels(session_factory, x) == (2, 0)

    async with session_factory() as session:
        history = await reconciler.payment_history(session, opened.order.id)
    assert "refund required" in history.latest.note

    async with session_factory() as session:
        replay = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert replay.replayed is True
    assert replay.refund_required is True


@pytest.mark.asyncio
async def test_capture_of_payment_replaced_by_retry_settles_order(session_factory, catalog, order_service, reconciler, gateway):
    x = catalog["x"]
    opened = await gateway_order(session_factory, order_service, reconciler, [(x, 1, PRICE_X)])

    async def buyer_retries_meanwhile(intent_id):
        async with session_factory() as session:
            await reconciler.retry_payment(session, opened.order.id, PaymentMethod.GATEWAY)

    gateway.on_capture = buyer_retries_meanwhile

    async with session_factory() as session:
        first = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert (first.payment_status, first.order_status) == ("PAID", "PROCESSING")
    assert first.refund_required is False

    gateway.on_capture = None
    async with session_factory() as session:
        replay = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert replay.replayed is True
    assert (replay.payment_status, replay.order_status, replay.refund_required) == ("PAID", "PROCESSING", False)
    assert gateway.capture_calls == 1

    async with session_factory() as session:
        history = await reconciler.payment_history(session, opened.order.id)
        order = await order_service.get_order(session, opened.order.id)
    assert [(p.status, p.transaction_id) for p in history.history] == [("CANCELLED", "INTENT-2"), ("PAID", "INTENT-1")]
    assert "earlier payment captured" in history.history[0].note
    assert order.is_paid is True
    assert order.stock_state == "COMMITTED"
    assert await levels(session_factory, x) == (1, 0)


@pytest.mark.asyncio
async def test_refund_flag_survives_replay_after_paid_order_is_cancelled(session_factory, catalog, order_service, reconciler):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])
    async with session_factory() as session:
        captured = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert captured.refund_required is False

    async with session_factory() as session:
        await order_service.cancel_order(session, opened.order.id, actor="admin")
    async with session_factory() as session:
        replay = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert replay.replayed is True
    assert (replay.payment_status, replay.order_status) == ("PAID", "CANCELLED")
    assert replay.refund_required is True


@pytest.mark.asyncio
async def test_unknown_intent_is_not_found(session_factory, catalog, order_service, reconciler):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])
    async with session_factory() as session:
        with pytest.raises(NotFound):
            await reconciler.confirm_capture(session, opened.order.id, "INTENT-404")


@pytest.mark.asyncio
async def test_transient_intent_failure_is_retried(session_factory, catalog, order_service, reconciler, gateway):
    gateway.create_errors = [httpx.ConnectError("flaky")]
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])

    assert gateway.create_calls == 2
    assert opened.payment.transaction_id == "INTENT-1"


@pytest.mark.asyncio
async def test_intent_outage_keeps_order_pending(session_factory, catalog, order_service, reconciler, gateway):
    y = catalog["y"]
    gateway.create_errors = [httpx.ConnectError("down"), httpx.ConnectError("down")]
    async with session_factory() as session:
        order = await order_service.create_order(session, order_payload([(y, 1, PRICE_Y)], payment_method="GATEWAY"))

    async with session_factory() as session:
        with pytest.raises(GatewayUnavailable):
            await reconciler.open_gateway_payment(session, order.id)

    async with session_factory() as session:
        fresh = await order_service.get_order(session, order.id)
    assert fresh.status == "PENDING"
    assert fresh.payment.status == "PENDING"
    assert fresh.payment.transaction_id is None
    assert await levels(session_factory, y) == (4, 1)


@pytest.mark.asyncio
async def test_retry_payment_replaces_open_payment(session_factory, catalog, order_service, reconciler, gateway):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])

    async with session_factory() as session:
        retried = await reconciler.retry_payment(session, opened.order.id, PaymentMethod.GATEWAY)
    assert retried.payment.transaction_id == "INTENT-2"
    assert retried.payment.status == "PENDING"
    assert retried.approval_link.endswith("INTENT-2")

    async with session_factory() as session:
        history = await reconciler.payment_history(session, opened.order.id)
    assert [p.status for p in history.history] == ["PENDING", "CANCELLED"]
    assert "Cancelled due to payment retry" in history.history[1].note
    assert history.latest.id == retried.payment.id

    # the superseded intent is a terminal payment; capturing it replays without the gateway
    async with session_factory() as session:
        replay = await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")
    assert replay.replayed is True
    assert replay.payment_status == "CANCELLED"
    assert gateway.capture_calls == 0


@pytest.mark.asyncio
async def test_retry_payment_as_cod(session_factory, catalog, order_service, reconciler):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])
    async with session_factory() as session:
        retried = await reconciler.retry_payment(session, opened.order.id, PaymentMethod.COD)
    assert retried.payment.method == "COD"
    assert retried.payment.status == "UNPAID"
    assert retried.approval_link is None


@pytest.mark.asyncio
async def test_open_gateway_payment_on_cod_order_switches_method(session_factory, catalog, order_service, reconciler):
    async with session_factory() as session:
        order = await order_service.create_order(session, order_payload([(catalog["y"], 1, PRICE_Y)]))
    async with session_factory() as session:
        opened = await reconciler.open_gateway_payment(session, order.id)
    assert opened.payment.method == "GATEWAY"

    async with session_factory() as session:
        payments = await orders_repo.load_payments(session, order.id)
    assert [(p.method, p.status) for p in payments] == [("GATEWAY", "PENDING"), ("COD", "CANCELLED")]


@pytest.mark.asyncio
async def test_paid_order_cannot_open_payment(session_factory, catalog, order_service, reconciler):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])
    async with session_factory() as session:
        await reconciler.confirm_capture(session, opened.order.id, "INTENT-1")

    async with session_factory() as session:
        with pytest.raises(ValidationError):
            await reconciler.open_gateway_payment(session, opened.order.id)
    async with session_factory() as session:
        with pytest.raises(ValidationError):
            await reconciler.retry_payment(session, opened.order.id, PaymentMethod.GATEWAY)


@pytest.mark.asyncio
async def test_gateway_callback_delegates_to_capture(session_factory, catalog, order_service, reconciler, gateway):
    opened = await gateway_order(session_factory, order_service, reconciler, [(catalog["y"], 1, PRICE_Y)])
    payload = {"id": "WH-1", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "INTENT-1"}}

    async with session_factory() as session:
        result = await reconciler.handle_gateway_callback(session, payload)
    assert result.payment_status == "PAID"
    assert result.order_id == opened.order.id

    # redelivery of the same event settles on the stored outcome
    async with session_factory() as session:
        again = await reconciler.handle_gateway_callback(session, payload)
    assert again.replayed is True
    assert gateway.capture_calls == 1

    async with session_factory() as session:
        assert await reconciler.handle_gateway_callback(session, {"event_type": "BILLING.PLAN.CREATED"}) is None
        assert await reconciler.handle_gateway_callback(
            session, {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "INTENT-999"}}) is None
