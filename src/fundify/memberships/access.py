"""Access evaluation for gated content.

Runs on every gated-content fetch, so it is a single read without locks
and never writes. Inconsistent rows are left for the reconciler to fix.

Rules:
    - a creator always sees their own content
    - content with a future publish time is hidden from everyone else
    - PUBLIC: everyone
    - SUPPORTERS: ACTIVE or PAUSED subscription to the creator, or a
      CANCELLED one whose access end is still ahead; a past-due ACTIVE
      subscription counts until its grace window closes
    - TIER: as SUPPORTERS, and the subscription's tier price is at least
      the content's minimum price
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import asyncpg

from fundify.db.models import ContentVisibility, SubscriptionStatus, Table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatedContent:
    """Visibility attributes of a content item owned by another service."""

    creator_id: UUID
    visibility: ContentVisibility = ContentVisibility.PUBLIC
    minimum_price: int | None = None  # minor units, TIER only
    published_at: datetime | None = None


@dataclass(frozen=True)
class AccessRow:
    """Subscription fields the access decision needs."""

    status: SubscriptionStatus
    ends_at: datetime | None
    past_due_since: datetime | None
    tier_price: int | None


def subscription_grants_access(
    row: AccessRow,
    now: datetime,
    grace: timedelta,
) -> bool:
    """Decide whether a subscription row currently confers supporter access."""
    if row.status == SubscriptionStatus.PAUSED:
        return True

    if row.status == SubscriptionStatus.ACTIVE:
        if row.past_due_since is None:
            return True
        return now < row.past_due_since + grace

    if row.status == SubscriptionStatus.CANCELLED:
        return row.ends_at is not None and now < row.ends_at

    # PENDING and EXPIRED
    return False


def meets_tier(row: AccessRow, minimum_price: int | None) -> bool:
    """Price-threshold tier ranking: a pricier tier unlocks cheaper content."""
    if minimum_price is None:
        return True
    return row.tier_price is not None and row.tier_price >= minimum_price


class AccessEvaluator:
    """Answers can_access(viewer, content) from current ledger state."""

    def __init__(self, pool: asyncpg.Pool, past_due_grace: timedelta):
        self._pool = pool
        self._grace = past_due_grace

    async def can_access(
        self,
        viewer_id: UUID | None,
        content: GatedContent,
        now: datetime | None = None,
    ) -> bool:
        """Return True if viewer_id may see content.

        Args:
            viewer_id: Authenticated viewer, or None for anonymous requests
            content: Visibility attributes of the item
            now: Evaluation time (defaults to current UTC time)
        """
        if viewer_id is not None and viewer_id == content.creator_id:
            return True

        now = now or datetime.now(timezone.utc)

        if content.published_at is not None and content.published_at > now:
            return False

        visibility = ContentVisibility(content.visibility)
        if visibility == ContentVisibility.PUBLIC:
            return True

        if viewer_id is None:
            return False

        rows = await self._load(viewer_id, content.creator_id)
        minimum_price = content.minimum_price if visibility == ContentVisibility.TIER else None

        if visibility == ContentVisibility.TIER and minimum_price is None:
            logger.warning(
                f"TIER content of creator {content.creator_id} has no minimum price; "
                f"treating as supporters-only"
            )

        return any(
            subscription_grants_access(row, now, self._grace) and meets_tier(row, minimum_price)
            for row in rows
        )

    async def _load(self, viewer_id: UUID, creator_id: UUID) -> list[AccessRow]:
        # CANCELLED rows are history except while their paid period runs out
        async with self._pool.acquire() as conn:
            records = await conn.fetch(
                f"""
                SELECT s.status, s.ends_at, s.past_due_since, t.price_minor AS tier_price
                FROM {Table.SUBSCRIPTIONS} s
                LEFT JOIN {Table.MEMBERSHIP_TIERS} t ON t.id = s.tier_id
                WHERE s.subscriber_id = $1
                  AND s.creator_id = $2
                  AND s.status IN ('ACTIVE', 'PAUSED', 'CANCELLED')
                """,
                viewer_id,
                creator_id,
            )

        return [
            AccessRow(
                status=SubscriptionStatus(record["status"]),
                ends_at=record["ends_at"],
                past_due_since=record["past_due_since"],
                tier_price=record["tier_price"],
            )
            for record in records
        ]
