"""Pytest configuration and fixtures shared across tests."""

import asyncio
import os
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
import pytest_asyncio

from fundify.db.models import SubscriptionStatus, Table
from fundify.db.schema.migrate import migrate
from fundify.memberships.state import Subscription

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_subscription(**overrides) -> Subscription:
    """Build a Subscription with sensible defaults for unit tests."""
    fields = dict(
        id=uuid.uuid4(),
        subscriber_id=uuid.uuid4(),
        creator_id=uuid.uuid4(),
        tier_id=uuid.uuid4(),
        status=SubscriptionStatus.PENDING,
        external_ref="fsub_test",
        started_at=T0,
    )
    fields.update(overrides)
    return Subscription(**fields)


def make_mock_pool():
    """Return (pool, conn) mocks where ``async with pool.acquire()`` yields conn.

    ``conn.transaction()`` is an async context manager too, so code that
    opens transactions or savepoints runs unchanged.
    """
    mock_conn = AsyncMock()
    mock_transaction = MagicMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=None)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    mock_conn.transaction = MagicMock(return_value=mock_transaction)

    mock_acquire = MagicMock()
    mock_acquire.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_acquire.__aexit__ = AsyncMock(return_value=False)
    mock_pool = MagicMock()
    mock_pool.acquire.return_value = mock_acquire
    return mock_pool, mock_conn


@pytest.fixture
def mock_pool():
    """Mocked asyncpg pool; the connection is available as ``mock_pool.conn``."""
    pool, conn = make_mock_pool()
    pool.conn = conn
    return pool


@pytest_asyncio.fixture
async def pool():
    """
    Database pool for integration tests.

    Skipped unless TEST_DB_DSN points at a disposable PostgreSQL database.
    Migrations are applied and the membership tables emptied before each test.
    """
    dsn = os.environ.get("TEST_DB_DSN")
    if not dsn:
        pytest.skip("TEST_DB_DSN not set")

    pool = await asyncpg.create_pool(dsn, min_size=1, max_size=10)
    await migrate(pool)

    async with pool.acquire() as conn:
        await conn.execute(
            f"""
            TRUNCATE {Table.SUBSCRIPTION_EVENTS}, {Table.SUBSCRIPTIONS},
                     {Table.MEMBERSHIP_TIERS}, {Table.PROCESSED_EVENTS},
                     {Table.ONE_OFF_PAYMENTS}
            CASCADE
            """
        )

    yield pool

    try:
        await asyncio.wait_for(pool.close(), timeout=10.0)
    except asyncio.TimeoutError:
        pool.terminate()
