from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from storefront import config
from storefront.models import Base

_session_factory: Optional[async_sessionmaker] = None


def create_session_factory(database_url: str, **engine_kwargs) -> async_sessionmaker:
    engine = create_async_engine(database_url, **engine_kwargs)
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> async_sessionmaker:
    """Session factory for the configured database, created on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(config.DATABASE_URL)
    return _session_factory


def engine_of(session_factory: async_sessionmaker) -> AsyncEngine:
    return session_factory.kw["bind"]


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
