"""Stripe API client used for outbound processor calls.

The API key is passed per request rather than assigned to the module-level
``stripe.api_key``, so several clients (and tests) can coexist. Stripe's
client is blocking; every call runs in a worker thread to keep the event
loop free. Callers must not hold a database transaction open across these
calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe

from fundify.db.models import BillingInterval

logger = logging.getLogger(__name__)

_STRIPE_INTERVALS = {
    BillingInterval.MONTHLY: "month",
    BillingInterval.YEARLY: "year",
}


@dataclass(frozen=True)
class CheckoutSession:
    """Subset of a Stripe Checkout Session the platform keeps."""

    id: str
    url: str
    expires_at: datetime | None


def _session_from_stripe(session) -> CheckoutSession:
    expires_at = session.get("expires_at")
    return CheckoutSession(
        id=session["id"],
        url=session["url"],
        expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
    )


class StripeProcessor:
    """Thin async wrapper over the Stripe API calls the platform makes."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("stripe_secret not configured")
        self._api_key = api_key

    async def create_subscription_checkout(
        self,
        *,
        external_ref: str,
        product_name: str,
        price_minor: int,
        currency: str,
        interval: BillingInterval,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
    ) -> CheckoutSession:
        """Create a subscription-mode Checkout Session.

        The external ref travels as client_reference_id and, together with
        the subscriber/creator/tier ids, as subscription metadata so every
        later invoice and subscription event can be matched to the ledger.

        Raises:
            stripe.StripeError: On Stripe API errors
        """
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self._api_key,
            mode="subscription",
            client_reference_id=external_ref,
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": price_minor,
                        "product_data": {"name": product_name},
                        "recurring": {"interval": _STRIPE_INTERVALS[BillingInterval(interval)]},
                    },
                    "quantity": 1,
                }
            ],
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
            expires_at=int(expires_at.timestamp()),
        )

        logger.info(f"Created subscription checkout session {session['id']} for {external_ref}")
        return _session_from_stripe(session)

    async def create_payment_checkout(
        self,
        *,
        product_name: str,
        amount_minor: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create a one-off payment Checkout Session (donation or purchase).

        Raises:
            stripe.StripeError: On Stripe API errors
        """
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self._api_key,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount_minor,
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
        )

        logger.info(f"Created payment checkout session {session['id']}")
        return _session_from_stripe(session)

    async def cancel_at_period_end(self, processor_subscription_id: str) -> None:
        """Stop renewal; Stripe ends the subscription when the period runs out."""
        await asyncio.to_thread(
            stripe.Subscription.modify,
            processor_subscription_id,
            api_key=self._api_key,
            cancel_at_period_end=True,
        )
        logger.info(f"Requested cancel_at_period_end for {processor_subscription_id}")

    async def cancel_immediately(self, processor_subscription_id: str) -> None:
        """End the subscription now, without proration or a final invoice.

        A subscription Stripe no longer knows about is treated as already
        cancelled.
        """
        try:
            await asyncio.to_thread(
                stripe.Subscription.cancel,
                processor_subscription_id,
                api_key=self._api_key,
            )
        except stripe.InvalidRequestError as e:
            if e.code != "resource_missing":
                raise
            logger.warning(f"Subscription {processor_subscription_id} not found on Stripe; treating as cancelled")
            return
        logger.info(f"Cancelled {processor_subscription_id} immediately")

    async def pause_collection(self, processor_subscription_id: str) -> None:
        """Pause billing; invoices are voided while paused."""
        await asyncio.to_thread(
            stripe.Subscription.modify,
            processor_subscription_id,
            api_key=self._api_key,
            pause_collection={"behavior": "void"},
        )
        logger.info(f"Paused collection for {processor_subscription_id}")

    async def resume_collection(self, processor_subscription_id: str) -> None:
        """Resume billing after a pause."""
        # An empty string unsets pause_collection in the Stripe API
        await asyncio.to_thread(
            stripe.Subscription.modify,
            processor_subscription_id,
            api_key=self._api_key,
            pause_collection="",
        )
        logger.info(f"Resumed collection for {processor_subscription_id}")
