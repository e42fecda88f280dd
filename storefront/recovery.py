import asyncio
from datetime import timedelta
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.database import engine_of, get_session_factory
from storefront.inventory import InventoryStore
from storefront.reservation import ReservationCoordinator
from storefront.utils.logging import configure_logging

logger = structlog.get_logger(__name__)


async def run_recovery(session_factory: async_sessionmaker, grace: Optional[timedelta] = None) -> Dict[str, int]:
    """Resolve every stale reservation saga; safe to run next to a live service."""
    coordinator = ReservationCoordinator(session_factory, InventoryStore(session_factory))
    summary = await coordinator.recover_incomplete_sagas(grace)
    if summary["failed"]:
        logger.error("Some reservations could not be reversed, stock is still short", failed=summary["failed"])
    return summary


async def _main():
    session_factory = get_session_factory()
    try:
        await run_recovery(session_factory)
    finally:
        await engine_of(session_factory).dispose()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_main())
