import asyncio
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from orderflow.api import cur_version
from orderflow.api.routers import admin_routers, public_routers
from orderflow.background_workers.abandonment_sweeper import AbandonmentSweeper
from orderflow.common.custom_exceptions import register_all_exceptions
from orderflow.common.logging_setup import get_logger, setup_logging, shutdown_logging
from orderflow.config.admin_config import admin_config
from orderflow.config.settings import config_settings
from orderflow.db.connection import build_engine, build_session_factory
from orderflow.middlewares.request_id_middleware import RequestIdMiddleware
from orderflow.orders.services import OrderService
from orderflow.payments.gateway import GatewayClient, PayPalGatewayClient
from orderflow.payments.services import PaymentReconciler
from orderflow.payments.utils import PaymentConfig

logger = get_logger("orderflow.app")


def build_gateway() -> GatewayClient:
    return PayPalGatewayClient(
        client_id=config_settings.GATEWAY_CLIENT_ID,
        client_secret=config_settings.GATEWAY_CLIENT_SECRET,
        environment=config_settings.GATEWAY_ENVIRONMENT,
        timeout=config_settings.GATEWAY_REQUEST_TIMEOUT,
        return_url=f"{config_settings.FRONTEND_URL}/order-success",
        cancel_url=f"{config_settings.FRONTEND_URL}/checkout",
        brand_name=config_settings.BRAND_NAME,
    )


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    setup_logging()
    sweeper_task: Optional[asyncio.Task] = None
    if app.state.sweeper_enabled:
        sweeper_task = asyncio.create_task(app.state.sweeper.run(), name="abandonment-sweeper")

    try:
        yield
    finally:
        # new requests are no longer accepted at this point
        if sweeper_task is not None:
            app.state.sweeper.stop()
            await sweeper_task
        await app.state.gateway.aclose()
        if app.state.engine is not None:
            await app.state.engine.dispose()
        shutdown_logging()


def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[GatewayClient] = None,
    payment_config: Optional[PaymentConfig] = None,
    sweeper_enabled: Optional[bool] = None,
) -> FastAPI:
    app = FastAPI(
        title="Orderflow",
        version=cur_version,
        lifespan=app_lifespan)

    # an injected session factory belongs to the caller, who disposes its engine
    engine = None
    if session_factory is None:
        engine = build_engine()
        session_factory = build_session_factory(engine)

    orders = OrderService()
    gateway = gateway or build_gateway()
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.order_service = orders
    app.state.reconciler = PaymentReconciler(gateway, config=payment_config or PaymentConfig.from_settings(), orders=orders)
    app.state.sweeper = AbandonmentSweeper(
        session_factory,
        threshold_minutes=config_settings.SWEEPER_THRESHOLD_MINUTES,
        poll_interval=config_settings.SWEEPER_POLL_SECONDS,
        batch_size=config_settings.SWEEPER_BATCH_SIZE,
        include_cod=config_settings.SWEEPER_INCLUDE_COD,
        orders=orders,
    )
    app.state.sweeper_enabled = config_settings.SWEEPER_ENABLED if sweeper_enabled is None else sweeper_enabled
    app.state.webhook_secret = config_settings.GATEWAY_WEBHOOK_SECRET

    app.include_router(public_routers)
    if admin_config.ENABLE_ADMIN:
        app.include_router(admin_routers)      # mounts /api/v1/admin

    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    return app
