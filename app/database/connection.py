"""
Database connection management using async SQLAlchemy.

Provides the engine, the session factory used by the queue worker's
writer scopes, and startup/shutdown hooks.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy import text

from app.core.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        )
    return options


async_engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    **_engine_options(settings.DATABASE_URL),
)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """Verify connectivity on application startup."""
    logger.info("Initializing database connection...")

    try:
        async with async_engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("✅ Database connection established successfully")
    except Exception as e:
        logger.error(f"❌ Failed to connect to database: {e}")
        raise


async def close_db() -> None:
    logger.info("Closing database connections...")
    await async_engine.dispose()
    logger.info("✅ Database connections closed")


async def create_tables() -> None:
    """
    Create all tables defined in models.
    For development only; use Alembic migrations in production.
    """
    from app.database.models import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created")


async def check_health() -> dict:
    """Database health for the health endpoint."""
    try:
        async with async_engine.begin() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()
        return {
            "status": "healthy",
            "database": async_engine.dialect.name,
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": async_engine.dialect.name,
            "error": str(e),
        }
