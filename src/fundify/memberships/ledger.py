"""Subscription ledger: the only writer of subscription rows.

Each transition locks the row matching an external reference
(``external_ref`` or ``processor_subscription_id``) with SELECT ... FOR
UPDATE, applies the pure transition from fundify.memberships.state, and
writes the new row plus an audit entry in the same transaction.

When no row matches, the transition creates one from the identity carried
by the processor event, adopting the subscriber's open row for that creator
if there is one. The processor is the authority on subscription existence.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from functools import partial
from typing import AsyncIterator, Callable, Optional
from uuid import UUID

import asyncpg

from fundify.db.models import SubscriptionStatus, Table
from fundify.memberships import state
from fundify.memberships.errors import Conflict, NotFound
from fundify.memberships.state import Subscription, TransitionResult

logger = logging.getLogger(__name__)

_SUBSCRIPTION_COLUMNS = """
    id, subscriber_id, creator_id, tier_id, status, external_ref,
    processor_subscription_id, started_at, current_period_end, cancelled_at,
    ends_at, paused_at, past_due_since, checkout_session_id, checkout_url,
    checkout_expires_at
"""

_OPEN_STATUS_SQL = "('PENDING', 'ACTIVE', 'PAUSED')"


@dataclass(frozen=True)
class SubscriptionIdentity:
    """Who subscribes to whom, as recorded in processor metadata."""

    subscriber_id: UUID
    creator_id: UUID
    tier_id: UUID | None = None


def subscription_from_row(row) -> Subscription:
    """Build a Subscription from an asyncpg record."""
    return Subscription(
        id=row["id"],
        subscriber_id=row["subscriber_id"],
        creator_id=row["creator_id"],
        tier_id=row["tier_id"],
        status=SubscriptionStatus(row["status"]),
        external_ref=row["external_ref"],
        processor_subscription_id=row["processor_subscription_id"],
        started_at=row["started_at"],
        current_period_end=row["current_period_end"],
        cancelled_at=row["cancelled_at"],
        ends_at=row["ends_at"],
        paused_at=row["paused_at"],
        past_due_since=row["past_due_since"],
        checkout_session_id=row["checkout_session_id"],
        checkout_url=row["checkout_url"],
        checkout_expires_at=row["checkout_expires_at"],
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionLedger:
    """Subscription transitions and reads backed by PostgreSQL.

    Every method accepts an optional ``conn``. When given, the work joins
    the caller's transaction (as a savepoint); otherwise a connection is
    acquired from the pool and committed on return.
    """

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _transaction(self, conn: asyncpg.Connection | None) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            async with conn.transaction():
                yield conn
            return

        async with self._pool.acquire() as acquired:
            async with acquired.transaction():
                yield acquired

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def open_pending(
        self,
        subscriber_id: UUID,
        creator_id: UUID,
        tier_id: UUID | None,
        external_ref: str,
        conn: asyncpg.Connection | None = None,
    ) -> Subscription:
        """Insert a PENDING row, or return the pair's existing open row unchanged.

        The partial unique index on (subscriber_id, creator_id) makes the
        insert itself the concurrency gate: a losing insert falls through to
        reading the winner's row.
        """
        async with self._transaction(conn) as c:
            row = await c.fetchrow(
                f"""
                INSERT INTO {Table.SUBSCRIPTIONS}
                    (subscriber_id, creator_id, tier_id, status, external_ref)
                VALUES ($1, $2, $3, 'PENDING', $4)
                ON CONFLICT (subscriber_id, creator_id) WHERE status IN {_OPEN_STATUS_SQL}
                DO NOTHING
                RETURNING {_SUBSCRIPTION_COLUMNS}
                """,
                subscriber_id,
                creator_id,
                tier_id,
                external_ref,
            )

            if row is not None:
                created = subscription_from_row(row)
                await self._audit(c, created.id, "open_pending", None, created.status)
                logger.info(
                    f"Opened pending subscription {created.id} ({external_ref}) "
                    f"for subscriber {subscriber_id} -> creator {creator_id}"
                )
                return created

            existing = await self._lock_open_pair(c, subscriber_id, creator_id)

        if existing is None:
            # The conflicting row turned terminal between INSERT and SELECT
            raise Conflict(
                f"Open subscription for {subscriber_id} -> {creator_id} changed concurrently"
            )

        logger.info(
            f"Reusing {existing.status.value} subscription {existing.id} "
            f"for subscriber {subscriber_id} -> creator {creator_id}"
        )
        return existing

    async def activate(
        self,
        external_ref: str,
        period_end: datetime | None,
        *,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """PENDING -> ACTIVE, binding the processor subscription id."""
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "activate",
            partial(state.activate, period_end=period_end, now=now, processor_ref=processor_ref),
            identity=identity,
            seed_status=SubscriptionStatus.PENDING,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def renew(
        self,
        external_ref: str,
        new_period_end: datetime,
        *,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """ACTIVE -> ACTIVE with a later period end; stale renewals are no-ops."""
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "renew",
            partial(state.renew, new_period_end=new_period_end, now=now),
            identity=identity,
            seed_status=SubscriptionStatus.ACTIVE,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def pause(
        self,
        external_ref: str,
        *,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """ACTIVE -> PAUSED."""
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "pause",
            partial(state.pause, now=now),
            identity=identity,
            seed_status=SubscriptionStatus.ACTIVE,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def resume(
        self,
        external_ref: str,
        *,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """PAUSED -> ACTIVE."""
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "resume",
            partial(state.resume, now=now),
            identity=identity,
            seed_status=SubscriptionStatus.PAUSED,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def cancel(
        self,
        external_ref: str,
        effective_at: datetime,
        *,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """ACTIVE/PAUSED -> CANCELLED; access lasts until effective_at."""
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "cancel",
            partial(state.cancel, effective_at=effective_at, now=now),
            identity=identity,
            seed_status=SubscriptionStatus.ACTIVE,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def expire(
        self,
        external_ref: str,
        *,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Move to EXPIRED; calling twice is a no-op."""
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "expire",
            partial(state.expire, now=now),
            identity=identity,
            seed_status=SubscriptionStatus.ACTIVE,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def mark_past_due(
        self,
        external_ref: str,
        *,
        period_end: datetime | None = None,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Start the grace window after a failed recurring payment.

        period_end is the end of the period the failed invoice was billing;
        a failure for a period already paid is a no-op.
        """
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "mark_past_due",
            partial(state.mark_past_due, now=now, period_end=period_end),
            identity=identity,
            seed_status=SubscriptionStatus.ACTIVE,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def abandon_checkout(
        self,
        external_ref: str,
        session_id: str | None,
        *,
        processor_ref: str | None = None,
        identity: SubscriptionIdentity | None = None,
        conn: asyncpg.Connection | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """PENDING -> EXPIRED if session_id is the row's current checkout session."""
        now = now or _utcnow()
        return await self._transition(
            external_ref,
            "abandon_checkout",
            partial(state.abandon_checkout, session_id=session_id, now=now),
            identity=identity,
            seed_status=SubscriptionStatus.PENDING,
            processor_ref=processor_ref,
            conn=conn,
            source_event_id=source_event_id,
        )

    async def attach_checkout(
        self,
        subscription_id: UUID,
        tier_id: UUID,
        checkout_session_id: str,
        checkout_url: str,
        checkout_expires_at: datetime | None,
        conn: asyncpg.Connection | None = None,
    ) -> Optional[Subscription]:
        """Store the processor session on a PENDING row for reuse.

        Returns None if the row is no longer PENDING (confirmed meanwhile).
        """
        async with self._transaction(conn) as c:
            row = await c.fetchrow(
                f"""
                UPDATE {Table.SUBSCRIPTIONS}
                SET tier_id = $2, checkout_session_id = $3, checkout_url = $4,
                    checkout_expires_at = $5, updated_at = now()
                WHERE id = $1 AND status = 'PENDING'
                RETURNING {_SUBSCRIPTION_COLUMNS}
                """,
                subscription_id,
                tier_id,
                checkout_session_id,
                checkout_url,
                checkout_expires_at,
            )
        return subscription_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, subscription_id: UUID) -> Optional[Subscription]:
        """Fetch a subscription by id."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM {Table.SUBSCRIPTIONS} WHERE id = $1",
                subscription_id,
            )
        return subscription_from_row(row) if row else None

    async def get_by_ref(self, ref: str) -> Optional[Subscription]:
        """Fetch a subscription by external ref or processor subscription id."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE external_ref = $1 OR processor_subscription_id = $1
                LIMIT 1
                """,
                ref,
            )
        return subscription_from_row(row) if row else None

    async def find_current(self, subscriber_id: UUID, creator_id: UUID) -> Optional[Subscription]:
        """Fetch the pair's PENDING/ACTIVE/PAUSED row, if any."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE subscriber_id = $1 AND creator_id = $2 AND status IN {_OPEN_STATUS_SQL}
                """,
                subscriber_id,
                creator_id,
            )
        return subscription_from_row(row) if row else None

    async def list_past_due(self, started_before: datetime) -> list[Subscription]:
        """ACTIVE subscriptions whose payment failure predates started_before."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE status = 'ACTIVE'
                  AND past_due_since IS NOT NULL
                  AND past_due_since <= $1
                ORDER BY past_due_since
                """,
                started_before,
            )
        return [subscription_from_row(row) for row in rows]

    async def list_lapsed_cancellations(self, now: datetime) -> list[Subscription]:
        """CANCELLED subscriptions whose access end has passed."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE status = 'CANCELLED' AND (ends_at IS NULL OR ends_at <= $1)
                ORDER BY ends_at
                """,
                now,
            )
        return [subscription_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _transition(
        self,
        ref: str,
        action: str,
        apply: Callable[[Subscription], TransitionResult],
        *,
        identity: SubscriptionIdentity | None,
        seed_status: SubscriptionStatus,
        processor_ref: str | None,
        conn: asyncpg.Connection | None,
        source_event_id: str | None,
    ) -> TransitionResult:
        async with self._transaction(conn) as c:
            current = await self._lock_by_ref(c, ref)
            if current is None and processor_ref and processor_ref != ref:
                current = await self._lock_by_ref(c, processor_ref)

            if current is None:
                if identity is None:
                    raise NotFound(f"No subscription for {ref} and no identity to create one")
                current = await self._adopt_or_insert(
                    c, ref, identity, seed_status, processor_ref, source_event_id
                )

            result = apply(current)

            if result.changed:
                await self._write(c, result.subscription)
                await self._audit(
                    c,
                    current.id,
                    action,
                    current.status,
                    result.status,
                    source_event_id,
                )

        logger.info(
            f"{action} {ref}: {current.status.value} -> {result.status.value} ({result.note})"
        )
        return result

    async def _lock_by_ref(self, conn: asyncpg.Connection, ref: str) -> Optional[Subscription]:
        row = await conn.fetchrow(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS}
            FROM {Table.SUBSCRIPTIONS}
            WHERE external_ref = $1 OR processor_subscription_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            ref,
        )
        return subscription_from_row(row) if row else None

    async def _lock_open_pair(
        self, conn: asyncpg.Connection, subscriber_id: UUID, creator_id: UUID
    ) -> Optional[Subscription]:
        row = await conn.fetchrow(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS}
            FROM {Table.SUBSCRIPTIONS}
            WHERE subscriber_id = $1 AND creator_id = $2 AND status IN {_OPEN_STATUS_SQL}
            FOR UPDATE
            """,
            subscriber_id,
            creator_id,
        )
        return subscription_from_row(row) if row else None

    async def _adopt_or_insert(
        self,
        conn: asyncpg.Connection,
        ref: str,
        identity: SubscriptionIdentity,
        seed_status: SubscriptionStatus,
        processor_ref: str | None,
        source_event_id: str | None,
    ) -> Subscription:
        """Create the row a processor event refers to, or adopt the pair's open row."""
        row = await conn.fetchrow(
            f"""
            INSERT INTO {Table.SUBSCRIPTIONS}
                (subscriber_id, creator_id, tier_id, status, external_ref, processor_subscription_id)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (subscriber_id, creator_id) WHERE status IN {_OPEN_STATUS_SQL}
            DO NOTHING
            RETURNING {_SUBSCRIPTION_COLUMNS}
            """,
            identity.subscriber_id,
            identity.creator_id,
            identity.tier_id,
            seed_status.value,
            ref,
            processor_ref,
        )
        if row is not None:
            created = subscription_from_row(row)
            await self._audit(conn, created.id, "create_from_event", None, created.status, source_event_id)
            logger.info(f"Created {seed_status.value} subscription {created.id} from processor ref {ref}")
            return created

        existing = await self._lock_open_pair(conn, identity.subscriber_id, identity.creator_id)
        if existing is None:
            raise Conflict(f"Open subscription for {identity.subscriber_id} changed concurrently")

        bound = existing.processor_subscription_id
        if processor_ref and bound and bound != processor_ref:
            raise Conflict(
                f"Subscriber {identity.subscriber_id} already has subscription {bound} "
                f"with creator {identity.creator_id}; refusing to adopt {processor_ref}"
            )

        if processor_ref and not bound:
            await conn.execute(
                f"""
                UPDATE {Table.SUBSCRIPTIONS}
                SET processor_subscription_id = $2, updated_at = now()
                WHERE id = $1
                """,
                existing.id,
                processor_ref,
            )
            existing = replace(existing, processor_subscription_id=processor_ref)

        logger.info(f"Adopted subscription {existing.id} for processor ref {ref}")
        return existing

    async def _write(self, conn: asyncpg.Connection, sub: Subscription) -> None:
        await conn.execute(
            f"""
            UPDATE {Table.SUBSCRIPTIONS}
            SET status = $2,
                tier_id = $3,
                processor_subscription_id = $4,
                started_at = $5,
                current_period_end = $6,
                cancelled_at = $7,
                ends_at = $8,
                paused_at = $9,
                past_due_since = $10,
                checkout_session_id = $11,
                checkout_url = $12,
                checkout_expires_at = $13,
                updated_at = now()
            WHERE id = $1
            """,
            sub.id,
            sub.status.value,
            sub.tier_id,
            sub.processor_subscription_id,
            sub.started_at,
            sub.current_period_end,
            sub.cancelled_at,
            sub.ends_at,
            sub.paused_at,
            sub.past_due_since,
            sub.checkout_session_id,
            sub.checkout_url,
            sub.checkout_expires_at,
        )

    async def _audit(
        self,
        conn: asyncpg.Connection,
        subscription_id: UUID,
        action: str,
        from_status: SubscriptionStatus | None,
        to_status: SubscriptionStatus,
        source_event_id: str | None = None,
    ) -> None:
        await conn.execute(
            f"""
            INSERT INTO {Table.SUBSCRIPTION_EVENTS}
                (subscription_id, action, from_status, to_status, source_event_id)
            VALUES ($1, $2, $3, $4, $5)
            """,
            subscription_id,
            action,
            from_status.value if from_status else None,
            to_status.value,
            source_event_id,
        )
