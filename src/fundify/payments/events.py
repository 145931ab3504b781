"""Translation of Stripe events into billing events the ledger understands.

Stripe names several notifications for what is one lifecycle fact (an
invoice is both ``invoice.paid`` and ``invoice.payment_succeeded``; a
pause is a ``customer.subscription.updated`` with ``pause_collection``
set). parse_event folds them into a small EventKind vocabulary and pulls
out the references, identity and timestamps the ledger needs.

Event types that carry nothing for the ledger map to None.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID

from fundify.db.models import PaymentKind
from fundify.memberships.errors import MalformedPayload
from fundify.memberships.ledger import SubscriptionIdentity


class EventKind(str, Enum):
    """Lifecycle facts reported by the processor."""

    CHECKOUT_CONFIRMED = "checkout_confirmed"
    RENEWED = "renewed"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAUSED = "paused"
    RESUMED = "resumed"
    ONE_OFF_PAID = "one_off_paid"
    CHECKOUT_EXPIRED = "checkout_expired"


@dataclass(frozen=True)
class OneOffPayment:
    """A completed donation or purchase."""

    external_ref: str
    payer_id: UUID
    creator_id: UUID
    kind: PaymentKind
    amount_minor: int
    currency: str
    product_id: Optional[UUID] = None


@dataclass(frozen=True)
class BillingEvent:
    """Normalized processor notification."""

    event_id: str
    event_type: str
    kind: EventKind
    external_ref: Optional[str] = None
    processor_ref: Optional[str] = None
    identity: Optional[SubscriptionIdentity] = None
    period_end: Optional[datetime] = None
    effective_at: Optional[datetime] = None
    payment: Optional[OneOffPayment] = None
    session_id: Optional[str] = None

    @property
    def ref(self) -> str:
        """Reference used to find the ledger row; our own ref wins."""
        return self.external_ref or self.processor_ref


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedPayload(f"Invalid timestamp {value!r}") from e


def _uuid(value: Any, field: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError as e:
        raise MalformedPayload(f"Invalid {field} {value!r}") from e


def _object_id(value: Any) -> Optional[str]:
    """Return the id of a field that may be a string or an expanded object."""
    if value is None or isinstance(value, str):
        return value or None
    return value.get("id")


def _identity(metadata: Optional[Mapping]) -> Optional[SubscriptionIdentity]:
    """Identity stamped into subscription metadata at checkout, if present."""
    if not metadata:
        return None
    subscriber_id = metadata.get("subscriber_id")
    creator_id = metadata.get("creator_id")
    if not subscriber_id or not creator_id:
        return None
    tier_id = metadata.get("tier_id")
    return SubscriptionIdentity(
        subscriber_id=_uuid(subscriber_id, "subscriber_id"),
        creator_id=_uuid(creator_id, "creator_id"),
        tier_id=_uuid(tier_id, "tier_id") if tier_id else None,
    )


def _subscription_period_end(subscription: Mapping) -> Optional[datetime]:
    # Newer Stripe API versions moved the period onto subscription items
    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = (subscription.get("items") or {}).get("data") or []
        ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
        period_end = max(ends) if ends else None
    return _timestamp(period_end)


def _invoice_subscription(invoice: Mapping) -> tuple[Optional[str], Mapping]:
    """Return (subscription id, subscription metadata) for an invoice."""
    subscription_id = _object_id(invoice.get("subscription"))
    details = invoice.get("subscription_details") or {}

    parent = invoice.get("parent") or {}
    parent_details = parent.get("subscription_details") or {}
    if subscription_id is None:
        subscription_id = _object_id(parent_details.get("subscription"))

    metadata = details.get("metadata") or parent_details.get("metadata") or {}
    return subscription_id, metadata


def _invoice_period_end(invoice: Mapping) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    ends = [
        (line.get("period") or {}).get("end")
        for line in lines
        if (line.get("period") or {}).get("end")
    ]
    if ends:
        return _timestamp(max(ends))
    return _timestamp(invoice.get("period_end"))


def _parse_checkout_completed(event_id: str, event_type: str, session: Mapping) -> Optional[BillingEvent]:
    mode = session.get("mode")

    if mode == "payment":
        if session.get("payment_status") != "paid":
            # Delayed payment methods confirm later via async_payment_succeeded
            return None
        return _parse_one_off(event_id, event_type, session)

    if mode != "subscription":
        return None

    metadata = session.get("metadata") or {}
    external_ref = session.get("client_reference_id") or metadata.get("external_ref")
    processor_ref = _object_id(session.get("subscription"))
    if not external_ref and not processor_ref:
        raise MalformedPayload(f"{event_type} {event_id} has no subscription reference")

    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        kind=EventKind.CHECKOUT_CONFIRMED,
        external_ref=external_ref,
        processor_ref=processor_ref,
        identity=_identity(metadata),
    )


def _parse_one_off(event_id: str, event_type: str, session: Mapping) -> BillingEvent:
    metadata = session.get("metadata") or {}
    try:
        kind = PaymentKind(str(metadata.get("kind", "")).upper())
    except ValueError as e:
        raise MalformedPayload(f"{event_type} {event_id} has unknown payment kind") from e

    if not metadata.get("payer_id") or not metadata.get("creator_id"):
        raise MalformedPayload(f"{event_type} {event_id} is missing payer or creator")

    amount = session.get("amount_total")
    if not isinstance(amount, int) or amount <= 0:
        raise MalformedPayload(f"{event_type} {event_id} has invalid amount {amount!r}")

    product_id = metadata.get("product_id")
    payment = OneOffPayment(
        external_ref=session["id"],
        payer_id=_uuid(metadata["payer_id"], "payer_id"),
        creator_id=_uuid(metadata["creator_id"], "creator_id"),
        kind=kind,
        amount_minor=amount,
        currency=(session.get("currency") or "").lower(),
        product_id=_uuid(product_id, "product_id") if product_id else None,
    )
    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        kind=EventKind.ONE_OFF_PAID,
        external_ref=session["id"],
        payment=payment,
    )


def _parse_checkout_expired(event_id: str, event_type: str, session: Mapping) -> Optional[BillingEvent]:
    if session.get("mode") != "subscription":
        return None
    external_ref = session.get("client_reference_id") or (session.get("metadata") or {}).get("external_ref")
    if not external_ref:
        return None
    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        kind=EventKind.CHECKOUT_EXPIRED,
        external_ref=external_ref,
        session_id=session.get("id"),
    )


def _parse_invoice(event_id: str, event_type: str, invoice: Mapping, kind: EventKind) -> Optional[BillingEvent]:
    subscription_id, metadata = _invoice_subscription(invoice)
    if subscription_id is None:
        # Invoices outside a subscription are not membership events
        return None

    period_end = _invoice_period_end(invoice)
    if kind == EventKind.RENEWED and period_end is None:
        raise MalformedPayload(f"{event_type} {event_id} has no billing period")

    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        kind=kind,
        external_ref=metadata.get("external_ref"),
        processor_ref=subscription_id,
        identity=_identity(metadata),
        period_end=period_end,
    )


def _parse_subscription_updated(
    event_id: str,
    event_type: str,
    subscription: Mapping,
    previous: Mapping,
) -> Optional[BillingEvent]:
    status = subscription.get("status")
    period_end = _subscription_period_end(subscription)

    if status in ("canceled", "incomplete_expired"):
        kind = EventKind.EXPIRED
    elif subscription.get("cancel_at_period_end") or subscription.get("cancel_at"):
        kind = EventKind.CANCELLED
    elif status == "paused" or subscription.get("pause_collection"):
        kind = EventKind.PAUSED
    elif previous.get("status") == "paused" or previous.get("pause_collection"):
        kind = EventKind.RESUMED
    elif status in ("active", "trialing") and "status" in previous:
        # Stripe rolls the period forward before the invoice is paid
        kind = EventKind.RENEWED
    elif status in ("past_due", "unpaid"):
        kind = EventKind.PAYMENT_FAILED
    else:
        # incomplete, or an update that is not a lifecycle change
        return None

    if kind == EventKind.RENEWED and period_end is None:
        raise MalformedPayload(f"{event_type} {event_id} has no current period end")

    effective_at = None
    if kind == EventKind.CANCELLED:
        effective_at = _timestamp(subscription.get("cancel_at")) or period_end

    return _subscription_event(event_id, event_type, subscription, kind, period_end, effective_at)


def _subscription_event(
    event_id: str,
    event_type: str,
    subscription: Mapping,
    kind: EventKind,
    period_end: Optional[datetime] = None,
    effective_at: Optional[datetime] = None,
) -> BillingEvent:
    metadata = subscription.get("metadata") or {}
    processor_ref = subscription.get("id")
    if not processor_ref:
        raise MalformedPayload(f"{event_type} {event_id} has no subscription id")
    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        kind=kind,
        external_ref=metadata.get("external_ref"),
        processor_ref=processor_ref,
        identity=_identity(metadata),
        period_end=period_end,
        effective_at=effective_at,
    )


def parse_event(event: Mapping) -> Optional[BillingEvent]:
    """Normalize a verified Stripe event.

    Args:
        event: Stripe Event (or an equivalent dict)

    Returns:
        BillingEvent, or None if the event type is not a membership event

    Raises:
        MalformedPayload: If the event lacks the fields its type requires
    """
    try:
        event_id = event["id"]
        event_type = event["type"]
        obj = event["data"]["object"]
    except (KeyError, TypeError) as e:
        raise MalformedPayload("Event is missing id, type or data.object") from e

    previous = event["data"].get("previous_attributes") or {}

    if event_type == "checkout.session.completed":
        return _parse_checkout_completed(event_id, event_type, obj)
    if event_type == "checkout.session.async_payment_succeeded":
        if obj.get("mode") != "payment":
            return None
        return _parse_one_off(event_id, event_type, obj)
    if event_type == "checkout.session.expired":
        return _parse_checkout_expired(event_id, event_type, obj)
    if event_type in ("invoice.paid", "invoice.payment_succeeded"):
        return _parse_invoice(event_id, event_type, obj, EventKind.RENEWED)
    if event_type == "invoice.payment_failed":
        return _parse_invoice(event_id, event_type, obj, EventKind.PAYMENT_FAILED)
    if event_type == "customer.subscription.created":
        if obj.get("status") not in ("active", "trialing"):
            return None
        return _subscription_event(
            event_id, event_type, obj, EventKind.CHECKOUT_CONFIRMED, _subscription_period_end(obj)
        )
    if event_type == "customer.subscription.updated":
        return _parse_subscription_updated(event_id, event_type, obj, previous)
    if event_type == "customer.subscription.paused":
        return _subscription_event(event_id, event_type, obj, EventKind.PAUSED)
    if event_type == "customer.subscription.resumed":
        return _subscription_event(
            event_id, event_type, obj, EventKind.RESUMED, _subscription_period_end(obj)
        )
    if event_type == "customer.subscription.deleted":
        return _subscription_event(event_id, event_type, obj, EventKind.EXPIRED)

    return None
