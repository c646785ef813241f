from functools import lru_cache
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from .config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def build_engine(url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.DATABASE_ECHO, **kwargs)
    if settings.is_testing():
        return create_async_engine(url, poolclass=NullPool, **kwargs)
    return create_async_engine(
        url,
        echo=settings.DATABASE_ECHO,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_pre_ping=True,
        **kwargs,
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    return build_engine()


async def init_db(engine: Optional[AsyncEngine] = None):
    """Initialize database, create tables if they don't exist."""
    # Importing the models registers their tables on Base.metadata
    from ..models import orm  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        # In production, use Alembic migrations instead
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def close_db():
    """Close database connections."""
    await get_engine().dispose()
