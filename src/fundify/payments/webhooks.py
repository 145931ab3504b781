"""Stripe webhook reconciliation.

Turns verified processor notifications into ledger transitions. Delivery is
at-least-once and unordered, so every event is claimed in the processed
events table inside the transaction that applies it: a redelivery after a
commit is acknowledged as a duplicate, and a failure rolls the claim back
so the processor's retry gets a fresh attempt.
"""

import logging
from dataclasses import dataclass

import asyncpg
import stripe

from fundify.memberships.errors import (
    Conflict,
    InvalidState,
    MalformedPayload,
    NotFound,
    TransientStoreError,
    Unauthorized,
)
from fundify.memberships.ledger import SubscriptionLedger
from fundify.memberships.state import TransitionResult
from fundify.payments.events import BillingEvent, EventKind, parse_event
from fundify.payments.idempotency import IdempotencyLedger
from fundify.payments.one_off import record_one_off_payment

logger = logging.getLogger(__name__)

# Database failures worth a processor retry
_TRANSIENT_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


@dataclass(frozen=True)
class ReconcileResult:
    """What happened to one delivery."""

    event_id: str
    event_type: str
    outcome: str

    @property
    def duplicate(self) -> bool:
        return self.outcome == "duplicate"


def verify_event(payload: bytes, signature: str | None, webhook_secret: str):
    """Verify the Stripe-Signature header and parse the event.

    Raises:
        Unauthorized: If the signature is missing or does not match
        MalformedPayload: If the body is not a Stripe event
    """
    if not webhook_secret:
        logger.error("stripe_webhook_secret not configured; rejecting webhook")
        raise Unauthorized("Webhook secret not configured")
    if not signature:
        raise Unauthorized("Missing signature")

    try:
        return stripe.Webhook.construct_event(payload, signature, webhook_secret)
    except ValueError as e:
        logger.error("Invalid webhook payload")
        raise MalformedPayload("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        logger.error("Invalid webhook signature")
        raise Unauthorized("Invalid signature") from e


class WebhookReconciler:
    """Applies processor notifications to the subscription ledger."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        ledger: SubscriptionLedger,
        idempotency: IdempotencyLedger,
        webhook_secret: str,
    ):
        self._pool = pool
        self._ledger = ledger
        self._idempotency = idempotency
        self._webhook_secret = webhook_secret

    async def handle(self, payload: bytes, signature: str | None) -> ReconcileResult:
        """Verify, deduplicate and apply one webhook delivery.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Returns:
            ReconcileResult with outcome "duplicate", "ignored",
            "skipped: ..." or "rejected: ...", or the applied transition

        Raises:
            Unauthorized: Bad or missing signature; nothing is recorded
            MalformedPayload: Unparseable or incomplete event; nothing is recorded
            TransientStoreError: Database failure; nothing is recorded, retry
        """
        event = verify_event(payload, signature, self._webhook_secret)
        billing_event = parse_event(event)

        if billing_event is None:
            logger.info(f"Unhandled event type: {event['type']} ({event['id']})")
            return ReconcileResult(event["id"], event["type"], "ignored")

        logger.info(f"Received webhook: {billing_event.event_type} ({billing_event.event_id})")

        try:
            return await self.apply(billing_event)
        except _TRANSIENT_ERRORS as e:
            logger.warning(
                f"Store failure applying {billing_event.event_type} {billing_event.event_id}: {e}"
            )
            raise TransientStoreError(f"Could not apply {billing_event.event_id}: {e}") from e

    async def apply(self, billing_event: BillingEvent) -> ReconcileResult:
        """Claim and apply an already verified event in one transaction."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                claimed = await self._idempotency.claim(
                    conn, billing_event.event_id, billing_event.event_type
                )
                if not claimed:
                    return ReconcileResult(
                        billing_event.event_id, billing_event.event_type, "duplicate"
                    )

                outcome = await self._dispatch(conn, billing_event)
                await self._idempotency.record_outcome(conn, billing_event.event_id, outcome)

        return ReconcileResult(billing_event.event_id, billing_event.event_type, outcome)

    async def _dispatch(self, conn: asyncpg.Connection, billing_event: BillingEvent) -> str:
        try:
            return await self._route(conn, billing_event)
        except (InvalidState, Conflict) as e:
            # Retrying cannot make an illegal transition legal; acknowledge it
            logger.error(
                f"Rejected {billing_event.event_type} {billing_event.event_id} "
                f"for {billing_event.ref}: {e.message}"
            )
            return f"rejected: {e.message}"
        except NotFound as e:
            logger.warning(
                f"Skipped {billing_event.event_type} {billing_event.event_id}: {e.message}"
            )
            return f"skipped: {e.message}"

    async def _route(self, conn: asyncpg.Connection, billing_event: BillingEvent) -> str:
        kind = billing_event.kind

        if kind == EventKind.ONE_OFF_PAID:
            inserted = await record_one_off_payment(conn, billing_event.payment)
            return "recorded" if inserted else "payment already recorded"

        if not billing_event.ref:
            raise MalformedPayload(f"{billing_event.event_id} has no subscription reference")

        common = dict(
            processor_ref=billing_event.processor_ref,
            identity=billing_event.identity,
            conn=conn,
            source_event_id=billing_event.event_id,
        )
        ref = billing_event.ref

        if kind == EventKind.CHECKOUT_CONFIRMED:
            result = await self._ledger.activate(ref, billing_event.period_end, **common)
        elif kind == EventKind.RENEWED:
            result = await self._ledger.renew(ref, billing_event.period_end, **common)
        elif kind == EventKind.PAYMENT_FAILED:
            result = await self._ledger.mark_past_due(ref, period_end=billing_event.period_end, **common)
        elif kind == EventKind.PAUSED:
            result = await self._ledger.pause(ref, **common)
        elif kind == EventKind.RESUMED:
            result = await self._ledger.resume(ref, **common)
            if billing_event.period_end is not None:
                result = await self._ledger.renew(ref, billing_event.period_end, **common)
        elif kind == EventKind.CANCELLED:
            result = await self._ledger.cancel(ref, billing_event.effective_at, **common)
        elif kind == EventKind.EXPIRED:
            result = await self._ledger.expire(ref, **common)
        elif kind == EventKind.CHECKOUT_EXPIRED:
            result = await self._ledger.abandon_checkout(ref, billing_event.session_id, **common)
        else:
            raise MalformedPayload(f"Unsupported event kind {kind}")

        return _describe(result)


def _describe(result: TransitionResult) -> str:
    if result.changed:
        return f"applied: {result.note} -> {result.status.value}"
    return f"no-op: {result.note} ({result.status.value})"
