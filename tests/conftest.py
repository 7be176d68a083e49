import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient
from orderflow.db.connection import build_engine, build_session_factory, create_all_tables
from orderflow.main import create_app
from orderflow.orders.services import OrderService
from orderflow.payments.services import PaymentReconciler
from orderflow.payments.utils import PaymentConfig
from orderflow.schema.full_schema import Product, ProductVariant, Voucher
from tests.helpers import PRICE_X, PRICE_Y, FakeGateway


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'orderflow_test.db'}", echo=False)
    await create_all_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db_session(session_factory):

    async with session_factory() as session:
        yield session


@pytest.fixture
async def catalog(session_factory):
    """Variant X (2 in stock) and variant Y (5 in stock)."""
    async with session_factory() as session:
        shirt = Product(name="Oxford Shirt")
        chinos = Product(name="Slim Chinos")
        session.add_all([shirt, chinos])
        await session.flush()
        x = ProductVariant(product_id=shirt.id, sku="OXF-WHT-M", color_name="White", size_name="M",
                           price=PRICE_X, available=2, reserved=0)
        y = ProductVariant(product_id=chinos.id, sku="CHN-KHK-32", color_name="Khaki", size_name="32",
                           price=PRICE_Y, available=5, reserved=0)
        session.add_all([x, y])
        await session.commit()
        return {"x": x.id, "y": y.id}


@pytest.fixture
async def voucher(session_factory):
    async with session_factory() as session:
        v = Voucher(code="WELCOME10", discount_type="PERCENT", value=10, min_order_amount=100000,
                    max_discount=50000, usage_limit=1, used_count=0, is_active=True)
        session.add(v)
        await session.commit()
        return v.id


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payment_config():
    return PaymentConfig(capture_timeout=0.2, max_retries=2, backoff_base=0.0)


@pytest.fixture
def order_service():
    return OrderService(price_tolerance=1, currency="VND")


@pytest.fixture
def reconciler(gateway, payment_config, order_service):
    return PaymentReconciler(gateway, config=payment_config, orders=order_service)


@pytest.fixture
def app(session_factory, gateway, payment_config):
    return create_app(session_factory=session_factory, gateway=gateway,
                      payment_config=payment_config, sweeper_enabled=False)


@pytest.fixture
async def ac_client(app):
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
