"""Stripe Checkout Session creation for memberships and one-off payments."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

from fundify.config.settings import AppConfig
from fundify.db.models import NON_TERMINAL_STATUSES, PaymentKind, SubscriptionStatus
from fundify.memberships.errors import NotFound, ValidationError
from fundify.memberships.ledger import SubscriptionLedger
from fundify.memberships.tiers import TierStore
from fundify.payments.processor import StripeProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    """Where to send the buyer next."""

    redirect_url: str
    external_ref: str
    subscription_id: UUID
    reused: bool = False
    already_subscribed: bool = False


@dataclass(frozen=True)
class PaymentCheckout:
    redirect_url: str
    session_id: str


def new_external_ref() -> str:
    """Client reference handed to Stripe and echoed back in its events."""
    return f"fsub_{uuid4().hex}"


class CheckoutInitiator:
    """Starts subscription and one-off payment checkouts."""

    def __init__(
        self,
        tiers: TierStore,
        ledger: SubscriptionLedger,
        processor: StripeProcessor,
        config: AppConfig,
    ):
        self._tiers = tiers
        self._ledger = ledger
        self._processor = processor
        self._config = config

    async def start_checkout(
        self,
        subscriber_id: UUID,
        tier_id: UUID,
        now: Optional[datetime] = None,
    ) -> CheckoutResult:
        """Open (or reuse) a checkout for subscriber_id on tier_id.

        A subscriber already holding an ACTIVE or PAUSED subscription to the
        creator is sent to their subscriptions page instead. A PENDING row
        with an unexpired session for the same tier hands back the stored
        session URL.

        Args:
            subscriber_id: Authenticated buyer
            tier_id: Tier being purchased
            now: Current time (defaults to UTC now)

        Returns:
            CheckoutResult with the redirect URL

        Raises:
            NotFound: If the tier does not exist or is inactive
            ValidationError: If the buyer is the tier's creator
            stripe.StripeError: On Stripe API errors
        """
        now = now or datetime.now(timezone.utc)

        tier = await self._tiers.get(tier_id)
        if tier is None or not tier.is_active:
            raise NotFound(f"Tier {tier_id} not found")
        if tier.creator_id == subscriber_id:
            raise ValidationError("Creators cannot subscribe to their own tiers")

        external_ref = new_external_ref()
        subscription = await self._ledger.open_pending(
            subscriber_id, tier.creator_id, tier.id, external_ref
        )
        reused = subscription.external_ref != external_ref

        if subscription.status in NON_TERMINAL_STATUSES:
            logger.info(
                f"Subscriber {subscriber_id} already has {subscription.status.value} "
                f"subscription {subscription.id} to creator {tier.creator_id}"
            )
            return CheckoutResult(
                redirect_url=self._config.subscriptions_url,
                external_ref=subscription.external_ref,
                subscription_id=subscription.id,
                reused=True,
                already_subscribed=True,
            )

        if (
            reused
            and subscription.status == SubscriptionStatus.PENDING
            and subscription.checkout_url
            and subscription.tier_id == tier.id
            and subscription.checkout_expires_at is not None
            and subscription.checkout_expires_at > now
        ):
            logger.info(f"Reusing checkout session for pending subscription {subscription.id}")
            return CheckoutResult(
                redirect_url=subscription.checkout_url,
                external_ref=subscription.external_ref,
                subscription_id=subscription.id,
                reused=True,
            )

        metadata = {
            "subscriber_id": str(subscriber_id),
            "creator_id": str(tier.creator_id),
            "tier_id": str(tier.id),
            "external_ref": subscription.external_ref,
        }
        session = await self._processor.create_subscription_checkout(
            external_ref=subscription.external_ref,
            product_name=tier.name,
            price_minor=tier.price_minor,
            currency=tier.currency,
            interval=tier.interval,
            metadata=metadata,
            success_url=self._config.checkout_success_url,
            cancel_url=self._config.checkout_cancel_url,
            expires_at=now + timedelta(minutes=self._config.checkout_session_ttl_minutes),
        )

        attached = await self._ledger.attach_checkout(
            subscription.id, tier.id, session.id, session.url, session.expires_at
        )
        if attached is None:
            # Confirmed between open_pending and now; the session stays unused
            logger.warning(f"Subscription {subscription.id} left PENDING before session was stored")

        logger.info(
            f"Created checkout for subscriber {subscriber_id} on tier {tier.id} "
            f"({subscription.external_ref})"
        )
        return CheckoutResult(
            redirect_url=session.url,
            external_ref=subscription.external_ref,
            subscription_id=subscription.id,
            reused=reused,
        )

    async def start_one_off_payment(
        self,
        payer_id: UUID,
        creator_id: UUID,
        amount_minor: int,
        kind: PaymentKind,
        product_id: Optional[UUID] = None,
        currency: Optional[str] = None,
    ) -> PaymentCheckout:
        """Open a payment-mode checkout for a donation or purchase.

        The payment is recorded by the webhook reconciler once Stripe
        reports the session as paid.

        Raises:
            ValidationError: If the amount is not a positive integer or the
                payer is the creator
            stripe.StripeError: On Stripe API errors
        """
        kind = PaymentKind(kind)
        if not isinstance(amount_minor, int) or isinstance(amount_minor, bool) or amount_minor <= 0:
            raise ValidationError("amount_minor must be a positive integer minor-unit amount")
        if payer_id == creator_id:
            raise ValidationError("Creators cannot pay themselves")
        if kind == PaymentKind.PURCHASE and product_id is None:
            raise ValidationError("product_id is required for purchases")

        metadata = {
            "payer_id": str(payer_id),
            "creator_id": str(creator_id),
            "kind": kind.value,
        }
        if product_id is not None:
            metadata["product_id"] = str(product_id)

        session = await self._processor.create_payment_checkout(
            product_name="Donation" if kind == PaymentKind.DONATION else "Purchase",
            amount_minor=amount_minor,
            currency=(currency or self._config.default_currency).lower(),
            metadata=metadata,
            success_url=self._config.checkout_success_url,
            cancel_url=self._config.checkout_cancel_url,
        )

        logger.info(
            f"Created {kind.value} checkout {session.id} for payer {payer_id} "
            f"to creator {creator_id}: {amount_minor}"
        )
        return PaymentCheckout(redirect_url=session.url, session_id=session.id)
