"""
Database engine management

Only the database checkpoint backend needs a database, so the engine is
created on first use rather than at import time.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from orderbridge.core.config import settings

_engine: Optional[AsyncEngine] = None


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    """Return the shared engine, creating it from DATABASE_URL on first call."""
    global _engine

    if _engine is None:
        database_url = url or settings.DATABASE_URL
        if not database_url:
            raise RuntimeError("DATABASE_URL is not configured")

        pool_config = {"pool_pre_ping": True}
        if database_url.startswith("postgresql"):
            pool_config.update({"pool_size": 2, "max_overflow": 5})

        _engine = create_async_engine(
            database_url,
            echo=settings.DEBUG,
            **pool_config,
        )
    return _engine


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
