import asyncio
import asyncpg
from contextlib import asynccontextmanager
from app.config import settings
import logging

logger = logging.getLogger(__name__)

class DatabasePool:
    _pool = None

    @classmethod
    async def create_pool(cls):
        if cls._pool is None:
            try:
                if settings.database_url:
                    cls._pool = await asyncpg.create_pool(
                        dsn=settings.database_url,
                        min_size=2,
                        max_size=20,
                        command_timeout=settings.store_timeout_seconds,
                        timeout=settings.store_timeout_seconds
                    )
                else:
                    cls._pool = await asyncpg.create_pool(
                        **settings.db_connection_params,
                        min_size=2,
                        max_size=20,
                        command_timeout=settings.store_timeout_seconds,
                        timeout=settings.store_timeout_seconds
                    )
                logger.info(f"Database pool created: {settings.db_name}@{settings.db_host}")
            except Exception as e:
                logger.error(f"Failed to create database pool: {e}")
                raise
        return cls._pool

    @classmethod
    async def close_pool(cls):
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            logger.info("Database pool closed")

@asynccontextmanager
async def get_db_connection(use_transaction: bool = True):
    """
    Get database connection from pool.

    Args:
        use_transaction: If True, wraps operations in a transaction.
                        Set to False for read-only operations.

    Usage:
    async with get_db_connection() as conn:
        result = await conn.fetchrow("SELECT * FROM invite_tokens WHERE id = $1", id)
    """
    pool = await DatabasePool.create_pool()
    async with pool.acquire() as connection:
        if use_transaction:
            async with connection.transaction():
                yield connection
        else:
            yield connection


async def check_database() -> str:
    """Health check for the postgres backend: 'ok' or 'unavailable'"""
    try:
        async with get_db_connection(use_transaction=False) as conn:
            await conn.fetchval("SELECT 1")
        return "ok"
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.warning(f"Database health check failed: {type(e).__name__}: {e}")
        return "unavailable"
