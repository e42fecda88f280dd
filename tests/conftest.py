import pytest
import pytest_asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

from storefront.database import create_session_factory, engine_of, init_db
from storefront.inventory import InventoryStore
from storefront.lifecycle import OrderLifecycleManager
from storefront.models import Product
from storefront.orders import OrderStore
from storefront.reservation import ReservationCoordinator
from storefront.schemas import LineItem, OrderCreate, PaymentConfirmation
from storefront.signature import compute_signature
from storefront.verification import PaymentVerificationService

GATEWAY_SECRET = "test-gateway-secret"


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test"""
    factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await init_db(engine_of(factory))
    yield factory
    await engine_of(factory).dispose()


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def inventory(session_factory):
    return InventoryStore(session_factory)


@pytest.fixture
def orders(session_factory):
    return OrderStore(session_factory, id_prefix="TST", shipping_fee=Decimal("50"))


@pytest.fixture
def coordinator(session_factory, inventory):
    return ReservationCoordinator(session_factory, inventory, max_attempts=3, retry_wait=0)


@pytest.fixture
def lifecycle(orders, coordinator, notifier):
    return OrderLifecycleManager(orders, coordinator, notifier)


@pytest.fixture
def service(orders, coordinator, lifecycle):
    return PaymentVerificationService(GATEWAY_SECRET, orders, coordinator, lifecycle)


@pytest.fixture
def seed_products(session_factory):
    """Returns a coroutine that creates stock records from ``{product_id: stock}``."""
    async def _seed(stock_by_product):
        async with session_factory() as session:
            session.add_all([
                Product(id=product_id, name=f"Product {product_id}", stock=stock)
                for product_id, stock in stock_by_product.items()
            ])
            await session.commit()
    return _seed


@pytest.fixture
def place_order(orders):
    """Returns a coroutine creating a pending order from ``[(product_id, quantity), ...]``."""
    counter = {"n": 0}

    async def _place(lines, gateway_order_id=None):
        counter["n"] += 1
        order_data = OrderCreate(
            gateway_order_id=gateway_order_id or f"gw_order_{counter['n']}",
            customer_email="jane@example.com",
            customer_name="Jane",
            items=[
                LineItem(product_id=product_id, name=f"Product {product_id}", price=Decimal("12.50"), quantity=quantity)
                for product_id, quantity in lines
            ],
        )
        return await orders.create_order(order_data)
    return _place


@pytest.fixture
def confirmation_for():
    """Returns a function building a correctly signed confirmation for an order."""
    def _confirm(order, gateway_payment_id="pay_001", secret=GATEWAY_SECRET):
        return PaymentConfirmation(
            gateway_order_id=order.gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            signature=compute_signature(secret, order.gateway_order_id, gateway_payment_id),
            internal_order_id=order.id,
        )
    return _confirm
