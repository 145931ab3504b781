"""Expiry sweep for lapsed subscriptions.

Run periodically by an external scheduler (cron, a Kubernetes CronJob).
Each run is safe to repeat: every transition it applies is idempotent.

Two kinds of row are expired:
    - ACTIVE rows whose past-due grace window has elapsed; a Stripe
      subscription behind one is cancelled first so billing stops, then
      the row is cancelled and expired through the ledger
    - CANCELLED rows past their access end that have no processor
      subscription behind them (processor-backed rows are expired by
      ``customer.subscription.deleted``)
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe

from fundify.memberships.errors import MembershipError
from fundify.memberships.ledger import SubscriptionLedger
from fundify.payments.processor import StripeProcessor

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts from one sweep run."""

    expired_past_due: int = 0
    expired_cancellations: int = 0
    failures: int = 0


async def run_sweep(
    ledger: SubscriptionLedger,
    processor: StripeProcessor,
    past_due_grace: timedelta,
    now: Optional[datetime] = None,
) -> SweepReport:
    """Expire subscriptions whose access has run out.

    Args:
        ledger: Subscription ledger
        processor: Stripe client used to stop billing on expired rows
        past_due_grace: Grace window after the first failed payment
        now: Sweep time (defaults to UTC now)

    Returns:
        SweepReport with per-category counts
    """
    now = now or datetime.now(timezone.utc)
    report = SweepReport()

    for subscription in await ledger.list_past_due(now - past_due_grace):
        if subscription.processor_subscription_id:
            try:
                await processor.cancel_immediately(subscription.processor_subscription_id)
            except stripe.StripeError as e:
                # Row stays ACTIVE and past due; the next run retries
                logger.error(
                    f"Failed to cancel Stripe subscription {subscription.processor_subscription_id}: {e}"
                )
                report.failures += 1
                continue

        try:
            await ledger.cancel(subscription.external_ref, now, now=now)
            await ledger.expire(subscription.external_ref, now=now)
            report.expired_past_due += 1
        except MembershipError as e:
            logger.error(f"Failed to expire past-due subscription {subscription.id}: {e.message}")
            report.failures += 1

    for subscription in await ledger.list_lapsed_cancellations(now):
        if subscription.processor_subscription_id:
            continue
        try:
            await ledger.expire(subscription.external_ref, now=now)
            report.expired_cancellations += 1
        except MembershipError as e:
            logger.error(f"Failed to expire cancelled subscription {subscription.id}: {e.message}")
            report.failures += 1

    logger.info(
        f"Sweep complete: {report.expired_past_due} past-due expired, "
        f"{report.expired_cancellations} cancellations expired, {report.failures} failures"
    )
    return report


def main() -> None:
    """CLI entry point for one sweep run."""
    from fundify.config import get_config
    from fundify.db.pool import close_pool, create_pool

    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    async def _run() -> SweepReport:
        pool = await create_pool(config)
        try:
            return await run_sweep(
                SubscriptionLedger(pool),
                StripeProcessor(config.stripe_secret.get_secret_value()),
                timedelta(hours=config.past_due_grace_hours),
            )
        finally:
            await close_pool(pool)

    report = asyncio.run(_run())
    if report.failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
