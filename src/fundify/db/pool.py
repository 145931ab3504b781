"""Database connection pool factory and health check."""

import asyncio
import logging

import asyncpg

from fundify.config.settings import AppConfig

logger = logging.getLogger(__name__)


async def create_pool(config: AppConfig) -> asyncpg.Pool:
    """
    Create a database connection pool and run a health check.

    The composing application owns the returned pool and must release it
    with close_pool() on shutdown.

    Args:
        config: Application configuration

    Returns:
        asyncpg.Pool: Initialized database connection pool

    Raises:
        RuntimeError: If the health check fails
        asyncio.TimeoutError: If connection attempt exceeds 5 seconds
    """
    dsn = str(config.db_dsn)

    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                dsn,
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
            ),
            timeout=5.0,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            "Database connection timed out after 5 seconds. "
            "Ensure PostgreSQL is running and accessible."
        )

    if pool is None:
        raise RuntimeError("Failed to create database pool")

    try:
        await health_check(pool)
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database health check failed: {e}") from e

    return pool


async def health_check(pool: asyncpg.Pool) -> None:
    """Run SELECT 1 against the pool.

    Raises:
        RuntimeError: If the database answers with anything but 1
        asyncpg.PostgresError: On database errors
    """
    async with pool.acquire() as conn:
        result = await conn.fetchval("SELECT 1")
        if result != 1:
            raise RuntimeError(f"Health check failed: expected 1, got {result}")


async def close_pool(pool: asyncpg.Pool | None) -> None:
    """
    Close the database connection pool.

    Attempts graceful close with a 5-second timeout. If the timeout occurs
    (e.g., due to leaked connections), forces termination to prevent hangs.
    """
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning(
            "Pool close timed out after 5 seconds. "
            "Forcing termination (likely leaked connection)."
        )
        pool.terminate()
