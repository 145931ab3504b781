"""Processed-event ledger for at-most-once webhook effects.

An event id is claimed with an insert inside the same transaction that
applies the event. A concurrent delivery of the same id blocks on the
primary key until the first transaction ends: it then sees the claim (and
reports a duplicate) if the first one committed, or takes the claim itself
if the first one rolled back. A failed transition therefore never leaves
its event marked as processed.
"""

import logging

import asyncpg

from fundify.db.models import Table

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """Records which processor event ids have taken effect."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def claim(self, conn: asyncpg.Connection, event_id: str, event_type: str) -> bool:
        """Claim event_id within the caller's transaction.

        Returns:
            True if this is the first delivery, False for a duplicate
        """
        claimed = await conn.fetchval(
            f"""
            INSERT INTO {Table.PROCESSED_EVENTS} (event_id, event_type)
            VALUES ($1, $2)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
            """,
            event_id,
            event_type,
        )
        if claimed is None:
            logger.info(f"Event {event_id} ({event_type}) already processed")
            return False
        return True

    async def record_outcome(self, conn: asyncpg.Connection, event_id: str, outcome: str) -> None:
        await conn.execute(
            f"""
            UPDATE {Table.PROCESSED_EVENTS}
            SET outcome = $2, processed_at = now()
            WHERE event_id = $1
            """,
            event_id,
            outcome,
        )

    async def is_processed(self, event_id: str) -> bool:
        async with self._pool.acquire() as conn:
            found = await conn.fetchval(
                f"SELECT 1 FROM {Table.PROCESSED_EVENTS} WHERE event_id = $1",
                event_id,
            )
        return found is not None

    async def outcome(self, event_id: str) -> str | None:
        """Stored outcome for an event id, or None if never processed."""
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT outcome FROM {Table.PROCESSED_EVENTS} WHERE event_id = $1",
                event_id,
            )
