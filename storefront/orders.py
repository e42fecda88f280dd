import time
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront import config
from storefront.exceptions import StorageFailure
from storefront.models import Order, OrderStatus, PaymentStatus, utcnow
from storefront.schemas import OrderCreate

logger = structlog.get_logger(__name__)


def generate_order_id(prefix: str) -> str:
    """Human-readable order id, e.g. ``ORD-1718000000000-3f9a1``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid4().hex[:5]}"


class OrderStore:
    def __init__(self, session_factory: async_sessionmaker,
                 id_prefix: str = config.ORDER_ID_PREFIX,
                 shipping_fee: Decimal = config.SHIPPING_FEE):
        self.session_factory = session_factory
        self.id_prefix = id_prefix
        self.shipping_fee = shipping_fee

    async def create_order(self, order_data: OrderCreate) -> Order:
        """Record a new order in pending/pending once the gateway order exists.

        Line items are snapshotted as given; later catalog changes do not
        touch them.
        """
        subtotal = sum((item.price * item.quantity for item in order_data.items), Decimal("0"))
        new_order = Order(
            id=generate_order_id(self.id_prefix),
            gateway_order_id=order_data.gateway_order_id,
            customer_id=order_data.customer_id,
            customer_email=order_data.customer_email,
            customer_name=order_data.customer_name,
            items=[item.model_dump(mode="json") for item in order_data.items],
            total_amount=subtotal + self.shipping_fee,
            payment_status=PaymentStatus.PENDING,
            order_status=OrderStatus.PENDING,
        )
        try:
            async with self.session_factory() as session:
                session.add(new_order)
                await session.commit()
        except IntegrityError as e:
            raise ValueError(f"Gateway order {order_data.gateway_order_id} is already attached to an order") from e
        except SQLAlchemyError as e:
            raise StorageFailure("Could not save order") from e

        logger.info("Order created", order_id=new_order.id, gateway_order_id=new_order.gateway_order_id)
        return new_order

    async def find_by_references(self, order_id: str, gateway_order_id: str) -> Optional[Order]:
        """Look an order up by both its internal id and its gateway reference."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Order).where(Order.id == order_id, Order.gateway_order_id == gateway_order_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not look up order {order_id}") from e

    async def get(self, order_id: str) -> Optional[Order]:
        try:
            async with self.session_factory() as session:
                return await session.get(Order, order_id)
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not load order {order_id}") from e

    async def list_orders(self, order_status: Optional[OrderStatus] = None) -> List[Order]:
        statement = select(Order).order_by(Order.created_at.desc())
        if order_status is not None:
            statement = statement.where(Order.order_status == order_status)
        try:
            async with self.session_factory() as session:
                result = await session.execute(statement)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageFailure("Could not list orders") from e

    async def update_status(self, order_id: str, payment_status: PaymentStatus,
                            order_status: OrderStatus, expected_status: OrderStatus,
                            **extra) -> int:
        """Set both statuses only if the order is still in ``expected_status``.

        Runs as one conditional UPDATE and returns the number of rows changed:
        0 means another writer moved the order first.
        """
        values = dict(extra, payment_status=payment_status, order_status=order_status, updated_at=utcnow())
        statement = (
            update(Order)
            .where(Order.id == order_id, Order.order_status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Order status update failed", order_id=order_id, error=str(e))
            raise StorageFailure(f"Could not update order {order_id}") from e

        if result.rowcount:
            logger.info(
                "Order status updated",
                order_id=order_id,
                from_status=expected_status.value,
                order_status=order_status.value,
                payment_status=payment_status.value,
            )
        return result.rowcount
