"""
Database connection management.

A single lazily created SQLAlchemy async engine (asyncpg driver) is shared by
the whole service. Connections handed out by ``read_only_connection`` run in
read-only transactions: the service never writes to the stop-record store.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from config import DatabaseConfig
from core.structured_logging import get_logger

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            DatabaseConfig.URL,
            echo=DatabaseConfig.ECHO,
            pool_size=DatabaseConfig.POOL_SIZE,
            max_overflow=DatabaseConfig.MAX_OVERFLOW,
            pool_timeout=DatabaseConfig.POOL_TIMEOUT,
            pool_pre_ping=True,
            connect_args={"command_timeout": DatabaseConfig.QUERY_TIMEOUT_SECONDS},
        )
        logger.info(
            "Database engine created",
            context={"url": DatabaseConfig.URL.split("@")[-1]},
        )
    return _engine


@asynccontextmanager
async def read_only_connection() -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection inside a read-only transaction.

    Usage:
        async with read_only_connection() as conn:
            result = await conn.execute(text("SELECT 1"))
    """
    engine = get_engine()
    async with engine.connect() as conn:
        conn = await conn.execution_options(postgresql_readonly=True)
        async with conn.begin():
            yield conn


async def close_database() -> None:
    """Dispose the engine and its pool. Called on application shutdown."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Database engine disposed")
