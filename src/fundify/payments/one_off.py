"""Persistence for one-off payments (donations and purchases)."""

import logging

import asyncpg

from fundify.db.models import Table
from fundify.payments.events import OneOffPayment

logger = logging.getLogger(__name__)


async def record_one_off_payment(conn: asyncpg.Connection, payment: OneOffPayment) -> bool:
    """Insert a completed one-off payment.

    The processor session id is unique, so a replayed payment is a no-op.

    Args:
        conn: Connection inside the reconciler's transaction
        payment: Completed payment

    Returns:
        True if a new row was written
    """
    inserted = await conn.fetchval(
        f"""
        INSERT INTO {Table.ONE_OFF_PAYMENTS}
            (external_ref, payer_id, creator_id, kind, product_id, amount_minor, currency)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
        ON CONFLICT (external_ref) DO NOTHING
        RETURNING id
        """,
        payment.external_ref,
        payment.payer_id,
        payment.creator_id,
        payment.kind.value,
        payment.product_id,
        payment.amount_minor,
        payment.currency,
    )

    if inserted is None:
        logger.info(f"One-off payment {payment.external_ref} already recorded")
        return False

    logger.info(
        f"Recorded {payment.kind.value} {payment.external_ref}: "
        f"{payment.amount_minor} {payment.currency} from {payment.payer_id} to {payment.creator_id}"
    )
    return True
