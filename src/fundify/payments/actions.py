"""Subscriber-initiated cancel, pause and resume.

The processor is told first, outside any database transaction; the ledger
transition runs afterwards and the caller sees success only once it has
committed. The webhook Stripe sends back for the same change is then a
no-op against the ledger.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fundify.memberships import state
from fundify.memberships.errors import Forbidden, NotFound
from fundify.memberships.ledger import SubscriptionLedger
from fundify.memberships.state import Subscription
from fundify.payments.processor import StripeProcessor

logger = logging.getLogger(__name__)


class SubscriptionActions:
    """Owner-only subscription changes requested through the API."""

    def __init__(self, ledger: SubscriptionLedger, processor: StripeProcessor):
        self._ledger = ledger
        self._processor = processor

    async def _owned(self, user_id: UUID, subscription_id: UUID) -> Subscription:
        subscription = await self._ledger.get(subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        if subscription.subscriber_id != user_id:
            raise Forbidden("Only the subscriber can change this subscription")
        return subscription

    async def cancel(
        self, user_id: UUID, subscription_id: UUID, now: Optional[datetime] = None
    ) -> Subscription:
        """Cancel at the end of the paid period.

        Raises:
            NotFound: If the subscription does not exist
            Forbidden: If user_id is not the subscriber
            InvalidState: If the subscription is PENDING or EXPIRED
        """
        now = now or datetime.now(timezone.utc)
        subscription = await self._owned(user_id, subscription_id)
        effective_at = subscription.current_period_end or now

        # Reject illegal transitions before touching the processor
        if not state.cancel(subscription, effective_at, now).changed:
            return subscription

        if subscription.processor_subscription_id:
            await self._processor.cancel_at_period_end(subscription.processor_subscription_id)

        result = await self._ledger.cancel(subscription.external_ref, effective_at, now=now)
        logger.info(f"Subscriber {user_id} cancelled {subscription.id} effective {effective_at}")
        return result.subscription

    async def pause(
        self, user_id: UUID, subscription_id: UUID, now: Optional[datetime] = None
    ) -> Subscription:
        """Pause billing and keep access while paused."""
        now = now or datetime.now(timezone.utc)
        subscription = await self._owned(user_id, subscription_id)

        if not state.pause(subscription, now).changed:
            return subscription

        if subscription.processor_subscription_id:
            await self._processor.pause_collection(subscription.processor_subscription_id)

        result = await self._ledger.pause(subscription.external_ref, now=now)
        logger.info(f"Subscriber {user_id} paused {subscription.id}")
        return result.subscription

    async def resume(
        self, user_id: UUID, subscription_id: UUID, now: Optional[datetime] = None
    ) -> Subscription:
        """Resume a paused subscription."""
        now = now or datetime.now(timezone.utc)
        subscription = await self._owned(user_id, subscription_id)

        if not state.resume(subscription, now).changed:
            return subscription

        if subscription.processor_subscription_id:
            await self._processor.resume_collection(subscription.processor_subscription_id)

        result = await self._ledger.resume(subscription.external_ref, now=now)
        logger.info(f"Subscriber {user_id} resumed {subscription.id}")
        return result.subscription
