"""PostgreSQL async database connection management."""

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from .config import settings

logger = logging.getLogger(__name__)

# Session rooms and study sessions live in this database; the realtime layer
# only needs the connection to be reachable.
engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_timeout=15,  # Fail fast - let clients retry rather than hang
    pool_pre_ping=True,
    pool_recycle=3600,
)

_database_ready = False


async def verify_database_connection(timeout: float | None = None) -> None:
    """
    Check that the database accepts connections.

    Called once at startup. A failure here is fatal: the exception
    propagates out of the application lifespan and aborts the process.

    Args:
        timeout: Seconds to wait for the check. Defaults to settings.db_connect_timeout.

    Raises:
        RuntimeError: If the database cannot be reached in time.
    """
    global _database_ready
    limit = timeout or settings.db_connect_timeout

    async def ping() -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(ping(), timeout=limit)
    except Exception as e:
        _database_ready = False
        logger.error(f"Database connection failed: {e}")
        raise RuntimeError(f"Could not connect to database: {e}") from e

    _database_ready = True
    logger.info(f"Database connected: {settings.db_server}:{settings.db_port}/{settings.db_name}")


def database_status() -> str:
    """Return 'connected' once startup verification succeeded."""
    return "connected" if _database_ready else "unavailable"


async def dispose_engine() -> None:
    """Close all pooled connections."""
    global _database_ready
    await engine.dispose()
    _database_ready = False
