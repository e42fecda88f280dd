import asyncio

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.database import engine_of, get_session_factory, init_db
from storefront.models import Product
from storefront.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

DEMO_PRODUCTS = [
    ("product-A", "Amigurumi Bunny", 10),
    ("product-B", "Crochet Whale", 5),
    ("product-C", "Knitted Fox", 0),  # for exercising insufficient stock
]


async def seed_inventory(session_factory: async_sessionmaker) -> bool:
    """Insert the demo stock records unless they are already there."""
    await init_db(engine_of(session_factory))
    async with session_factory() as session:
        if await session.get(Product, "product-A"):
            logger.info("Inventory already seeded")
            return False

        session.add_all([Product(id=pid, name=name, stock=stock) for pid, name, stock in DEMO_PRODUCTS])
        await session.commit()
        logger.info("Inventory seeded", products=len(DEMO_PRODUCTS))
        return True


if __name__ == "__main__":
    configure_logging()
    asyncio.run(seed_inventory(get_session_factory()))
