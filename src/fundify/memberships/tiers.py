"""Membership tier store.

Tiers are priced membership levels owned by a creator. Prices are integer
minor-unit amounts. Deactivation is permissive: it only blocks new
checkouts, existing subscribers keep their access. Hard deletion is refused
while any open subscription still references the tier.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

import asyncpg

from fundify.db.models import OPEN_STATUSES, BillingInterval, SubscriptionStatus, Table
from fundify.memberships.errors import Conflict, Forbidden, NotFound, ValidationError

logger = logging.getLogger(__name__)

_TIER_COLUMNS = """
    id, creator_id, name, description, price_minor, currency, billing_interval,
    benefits, is_active, created_at, updated_at
"""

_EDITABLE_FIELDS = ("name", "description", "price_minor", "benefits", "interval")

# Field name -> column name where they differ
_FIELD_COLUMNS = {"interval": "billing_interval"}


@dataclass
class TierInput:
    """Fields supplied by a creator when defining a tier."""

    creator_id: UUID
    name: str
    price_minor: int
    currency: str = "usd"
    interval: BillingInterval = BillingInterval.MONTHLY
    description: str | None = None
    benefits: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MembershipTier:
    """Canonical membership tier row."""

    id: UUID
    creator_id: UUID
    name: str
    price_minor: int
    currency: str
    interval: BillingInterval
    benefits: tuple[str, ...]
    is_active: bool
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def tier_from_row(row) -> MembershipTier:
    """Build a MembershipTier from an asyncpg record."""
    return MembershipTier(
        id=row["id"],
        creator_id=row["creator_id"],
        name=row["name"],
        description=row["description"],
        price_minor=row["price_minor"],
        currency=row["currency"].strip(),
        interval=BillingInterval(row["billing_interval"]),
        benefits=tuple(row["benefits"] or ()),
        is_active=row["is_active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _validate_price(price_minor) -> None:
    # bool is an int subclass; reject it along with floats and strings
    if not isinstance(price_minor, int) or isinstance(price_minor, bool):
        raise ValidationError("price_minor must be an integer minor-unit amount")
    if price_minor <= 0:
        raise ValidationError("price_minor must be greater than zero")


class TierStore:
    """Creates, edits and lists membership tiers."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def create(self, acting_user_id: UUID, tier: TierInput) -> MembershipTier:
        """Create a tier owned by the acting creator.

        Raises:
            Forbidden: If acting_user_id is not the tier's creator
            ValidationError: If the price or name is invalid
        """
        if acting_user_id != tier.creator_id:
            raise Forbidden("Only the creator can define their tiers")
        _validate_price(tier.price_minor)
        if not tier.name or not tier.name.strip():
            raise ValidationError("name is required")

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.MEMBERSHIP_TIERS}
                    (creator_id, name, description, price_minor, currency, billing_interval, benefits)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING {_TIER_COLUMNS}
                """,
                tier.creator_id,
                tier.name.strip(),
                tier.description,
                tier.price_minor,
                tier.currency.lower(),
                BillingInterval(tier.interval).value,
                list(tier.benefits),
            )

        created = tier_from_row(row)
        logger.info(
            f"Created tier {created.id} for creator {created.creator_id}: "
            f"price={created.price_minor} {created.currency}"
        )
        return created

    async def get(self, tier_id: UUID, conn: asyncpg.Connection | None = None) -> MembershipTier | None:
        """Return the tier, active or not, or None if it does not exist."""
        query = f"SELECT {_TIER_COLUMNS} FROM {Table.MEMBERSHIP_TIERS} WHERE id = $1"
        if conn is not None:
            row = await conn.fetchrow(query, tier_id)
        else:
            async with self._pool.acquire() as acquired:
                row = await acquired.fetchrow(query, tier_id)
        return tier_from_row(row) if row else None

    async def list(self, creator_id: UUID, include_inactive: bool = False) -> list[MembershipTier]:
        """List a creator's tiers ordered by price ascending."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_TIER_COLUMNS}
                FROM {Table.MEMBERSHIP_TIERS}
                WHERE creator_id = $1 AND ($2 OR is_active)
                ORDER BY price_minor ASC, created_at ASC
                """,
                creator_id,
                include_inactive,
            )
        return [tier_from_row(row) for row in rows]

    async def update(self, acting_user_id: UUID, tier_id: UUID, **changes) -> MembershipTier:
        """Edit a tier's name, description, price, benefits or interval.

        Raises:
            NotFound: If the tier does not exist
            Forbidden: If the acting user does not own the tier
            ValidationError: If no editable field is given or a value is invalid
        """
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValidationError("No fields provided for update")
        if "price_minor" in changes:
            _validate_price(changes["price_minor"])
        if "interval" in changes:
            changes["interval"] = BillingInterval(changes["interval"]).value
        if "benefits" in changes:
            changes["benefits"] = list(changes["benefits"])

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_owned(conn, acting_user_id, tier_id)

                fields = list(changes)
                assignments = ", ".join(
                    f"{_FIELD_COLUMNS.get(field, field)} = ${index}"
                    for index, field in enumerate(fields, start=2)
                )
                row = await conn.fetchrow(
                    f"""
                    UPDATE {Table.MEMBERSHIP_TIERS}
                    SET {assignments}, updated_at = now()
                    WHERE id = $1
                    RETURNING {_TIER_COLUMNS}
                    """,
                    tier_id,
                    *(changes[field] for field in fields),
                )

        logger.info(f"Updated tier {tier_id}: {', '.join(sorted(changes))}")
        return tier_from_row(row)

    async def deactivate(self, acting_user_id: UUID, tier_id: UUID) -> MembershipTier:
        """Soft-deactivate a tier.

        Existing subscribers keep access; new checkouts are refused.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_owned(conn, acting_user_id, tier_id)
                row = await conn.fetchrow(
                    f"""
                    UPDATE {Table.MEMBERSHIP_TIERS}
                    SET is_active = FALSE, updated_at = now()
                    WHERE id = $1
                    RETURNING {_TIER_COLUMNS}
                    """,
                    tier_id,
                )

        logger.info(f"Deactivated tier {tier_id}")
        return tier_from_row(row)

    async def delete(self, acting_user_id: UUID, tier_id: UUID) -> None:
        """Hard-delete a tier nobody is subscribed to.

        Ended subscriptions keep their history with tier_id set to NULL. A
        cancelled subscription still inside its paid period counts as
        subscribed.

        Raises:
            Conflict: If a subscription still entitled to the tier references it
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_owned(conn, acting_user_id, tier_id)
                entitled = await self._entitled_subscription_count(conn, tier_id)
                if entitled:
                    raise Conflict(
                        f"Tier {tier_id} has {entitled} subscriptions with access; deactivate it instead"
                    )
                await conn.execute(f"DELETE FROM {Table.MEMBERSHIP_TIERS} WHERE id = $1", tier_id)

        logger.info(f"Deleted tier {tier_id}")

    async def _lock_owned(self, conn: asyncpg.Connection, acting_user_id: UUID, tier_id: UUID) -> None:
        creator_id = await conn.fetchval(
            f"SELECT creator_id FROM {Table.MEMBERSHIP_TIERS} WHERE id = $1 FOR UPDATE",
            tier_id,
        )
        if creator_id is None:
            raise NotFound(f"Tier {tier_id} not found")
        if creator_id != acting_user_id:
            raise Forbidden("Only the creator can modify this tier")

    async def _entitled_subscription_count(self, conn: asyncpg.Connection, tier_id: UUID) -> int:
        return await conn.fetchval(
            f"""
            SELECT COUNT(*)
            FROM {Table.SUBSCRIPTIONS}
            WHERE tier_id = $1
              AND (status = ANY($2::text[])
                   OR (status = $3 AND (ends_at IS NULL OR ends_at > now())))
            """,
            tier_id,
            [status.value for status in OPEN_STATUSES],
            SubscriptionStatus.CANCELLED.value,
        )
