from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.exceptions import StorageFailure
from storefront.models import Product

logger = structlog.get_logger(__name__)


def _check_quantity(quantity: int):
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"Quantity must be a positive integer, got {quantity!r}")


class InventoryStore:
    """Per-product stock counters, mutated only through single-row conditional writes.

    Methods accept an optional session so the reservation saga can commit a
    stock change and its log entry in one transaction. Without a session each
    call opens its own and commits.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def conditional_decrement(self, product_id: str, quantity: int,
                                    session: Optional[AsyncSession] = None) -> bool:
        """Take ``quantity`` units if and only if that many are in stock.

        Returns True when the decrement was applied.
        """
        _check_quantity(quantity)
        statement = (
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        try:
            if session is not None:
                result = await session.execute(statement)
                return result.rowcount == 1
            async with self.session_factory() as own_session:
                result = await own_session.execute(statement)
                await own_session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error("Stock decrement failed", product_id=product_id, quantity=quantity, error=str(e))
            raise StorageFailure(f"Could not decrement stock for {product_id}") from e

    async def increment(self, product_id: str, quantity: int,
                        session: Optional[AsyncSession] = None):
        """Put ``quantity`` units back. Raises StorageFailure if the product row is gone."""
        _check_quantity(quantity)
        statement = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        try:
            if session is not None:
                result = await session.execute(statement)
            else:
                async with self.session_factory() as own_session:
                    result = await own_session.execute(statement)
                    await own_session.commit()
        except SQLAlchemyError as e:
            logger.error("Stock increment failed", product_id=product_id, quantity=quantity, error=str(e))
            raise StorageFailure(f"Could not increment stock for {product_id}") from e

        if result.rowcount != 1:
            raise StorageFailure(f"Product {product_id} not found for stock increment")

    async def get_stock(self, product_id: str) -> Optional[int]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Product.stock).where(Product.id == product_id))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not read stock for {product_id}") from e
