"""Pure subscription state machine.

Every transition takes the current Subscription and returns a
TransitionResult describing the new record. Nothing here touches storage;
the ledger loads the row under a lock, applies one of these functions and
persists the result.

    PENDING -> ACTIVE <-> PAUSED
    ACTIVE/PAUSED -> CANCELLED -> EXPIRED
    PENDING -> EXPIRED            (abandoned checkout)

A terminal row (CANCELLED, EXPIRED) is never moved back to an open status.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from uuid import UUID

from fundify.db.models import SubscriptionStatus
from fundify.memberships.errors import InvalidState

S = SubscriptionStatus


@dataclass(frozen=True)
class Subscription:
    """Canonical subscription row."""

    id: UUID
    subscriber_id: UUID
    creator_id: UUID
    tier_id: UUID | None
    status: SubscriptionStatus
    external_ref: str
    started_at: datetime
    processor_subscription_id: str | None = None
    current_period_end: datetime | None = None
    cancelled_at: datetime | None = None
    ends_at: datetime | None = None  # cancellation effective date
    paused_at: datetime | None = None
    past_due_since: datetime | None = None
    checkout_session_id: str | None = None
    checkout_url: str | None = None
    checkout_expires_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of applying a transition."""

    subscription: Subscription
    changed: bool
    note: str

    @property
    def status(self) -> SubscriptionStatus:
        return self.subscription.status


def _unchanged(sub: Subscription, note: str) -> TransitionResult:
    return TransitionResult(subscription=sub, changed=False, note=note)


def _later(candidate: datetime | None, current: datetime | None) -> bool:
    """True if candidate strictly extends the stored period end."""
    if candidate is None:
        return False
    return current is None or candidate > current


def activate(
    sub: Subscription,
    period_end: datetime | None,
    now: datetime,
    processor_ref: str | None = None,
) -> TransitionResult:
    """PENDING -> ACTIVE.

    On an ACTIVE row this only extends the period end (duplicate or late
    confirmation). PAUSED rows are left alone. Terminal rows raise
    InvalidState: a returning subscriber gets a new row.
    """
    if sub.is_terminal:
        raise InvalidState(
            f"Cannot activate {sub.status.value} subscription {sub.external_ref}"
        )

    bind = processor_ref if processor_ref and not sub.processor_subscription_id else None

    if sub.status == S.PENDING:
        updated = replace(
            sub,
            status=S.ACTIVE,
            started_at=now,
            current_period_end=period_end or sub.current_period_end,
            processor_subscription_id=bind or sub.processor_subscription_id,
            checkout_session_id=None,
            checkout_url=None,
            checkout_expires_at=None,
        )
        return TransitionResult(updated, True, "activated")

    changes = {}
    if bind:
        changes["processor_subscription_id"] = bind
    if _later(period_end, sub.current_period_end):
        changes["current_period_end"] = period_end

    if not changes:
        return _unchanged(sub, f"already {sub.status.value}")
    return TransitionResult(replace(sub, **changes), True, "confirmation refreshed")


def renew(sub: Subscription, new_period_end: datetime, now: datetime) -> TransitionResult:
    """Extend the billing period after a successful recurring charge.

    Out-of-order delivery: a period end not later than the stored one is a
    no-op, except that paying the stored period again clears the past-due
    flag (a retried charge that succeeded). A paid invoice for a PENDING row
    activates it.
    """
    if sub.is_terminal:
        return _unchanged(sub, f"renewal ignored for {sub.status.value} subscription")

    if sub.status == S.PENDING:
        result = activate(sub, new_period_end, now)
        return replace(result, note="activated by renewal")

    if not _later(new_period_end, sub.current_period_end):
        if sub.past_due_since is not None and new_period_end == sub.current_period_end:
            return TransitionResult(replace(sub, past_due_since=None), True, "past-due cleared")
        return _unchanged(sub, "stale renewal")

    updated = replace(sub, current_period_end=new_period_end, past_due_since=None)
    return TransitionResult(updated, True, "renewed")


def pause(sub: Subscription, now: datetime) -> TransitionResult:
    """ACTIVE -> PAUSED."""
    if sub.status == S.PAUSED:
        return _unchanged(sub, "already paused")
    if sub.status != S.ACTIVE:
        raise InvalidState(f"Cannot pause {sub.status.value} subscription {sub.external_ref}")
    return TransitionResult(replace(sub, status=S.PAUSED, paused_at=now), True, "paused")


def resume(sub: Subscription, now: datetime) -> TransitionResult:
    """PAUSED -> ACTIVE."""
    if sub.status == S.ACTIVE:
        return _unchanged(sub, "already active")
    if sub.status != S.PAUSED:
        raise InvalidState(f"Cannot resume {sub.status.value} subscription {sub.external_ref}")
    return TransitionResult(replace(sub, status=S.ACTIVE, paused_at=None), True, "resumed")


def cancel(sub: Subscription, effective_at: datetime, now: datetime) -> TransitionResult:
    """ACTIVE/PAUSED -> CANCELLED.

    Access stays valid until effective_at; the stored status only moves on
    to EXPIRED when expire() is applied.
    """
    if sub.status == S.CANCELLED:
        return _unchanged(sub, "already cancelled")
    if sub.status not in (S.ACTIVE, S.PAUSED):
        raise InvalidState(f"Cannot cancel {sub.status.value} subscription {sub.external_ref}")

    updated = replace(
        sub,
        status=S.CANCELLED,
        cancelled_at=now,
        ends_at=effective_at,
    )
    return TransitionResult(updated, True, "cancelled")


def expire(sub: Subscription, now: datetime) -> TransitionResult:
    """Move any non-expired subscription to EXPIRED.

    CANCELLED and PENDING rows expire directly. ACTIVE/PAUSED rows were
    ended immediately on the processor side, so the cancellation is stamped
    at the same time.
    """
    if sub.status == S.EXPIRED:
        return _unchanged(sub, "already expired")

    if sub.status in (S.ACTIVE, S.PAUSED):
        sub = cancel(sub, now, now).subscription

    if sub.status == S.PENDING:
        ends_at = sub.ends_at
    elif sub.ends_at is not None and sub.ends_at <= now:
        ends_at = sub.ends_at
    else:
        # Expiry confirmed before the scheduled end: access stops now
        ends_at = now

    updated = replace(
        sub,
        status=S.EXPIRED,
        ends_at=ends_at,
        checkout_session_id=None,
        checkout_url=None,
        checkout_expires_at=None,
    )
    return TransitionResult(updated, True, "expired")


def mark_past_due(
    sub: Subscription,
    now: datetime,
    period_end: datetime | None = None,
) -> TransitionResult:
    """Flag a failed recurring charge on an ACTIVE subscription.

    The first failure starts the grace window; later failures keep the
    original timestamp so retries by the processor cannot extend it.
    A failure for a billing period that a renewal already paid for is a
    late delivery and changes nothing.

    Args:
        sub: Current subscription
        now: Failure time
        period_end: End of the period the failed invoice was billing, if known
    """
    if sub.status != S.ACTIVE:
        return _unchanged(sub, f"payment failure ignored for {sub.status.value} subscription")
    if (
        period_end is not None
        and sub.current_period_end is not None
        and sub.current_period_end >= period_end
    ):
        return _unchanged(sub, "payment failure for a period already paid")
    if sub.past_due_since is not None:
        return _unchanged(sub, "already past due")
    return TransitionResult(replace(sub, past_due_since=now), True, "past due")


def abandon_checkout(sub: Subscription, session_id: str | None, now: datetime) -> TransitionResult:
    """PENDING -> EXPIRED when the row's current checkout session expires.

    A PENDING row can be handed a new session (tier switch, expired link)
    under the same external ref, so the expiry only counts for the session
    stored on the row. Expiry of a superseded session, or of any session
    once the row has left PENDING, is a no-op.
    """
    if sub.status != S.PENDING:
        return _unchanged(sub, f"checkout expiry ignored for {sub.status.value} subscription")
    if session_id is None or sub.checkout_session_id != session_id:
        return _unchanged(sub, f"checkout session {session_id} superseded")
    return replace(expire(sub, now), note="checkout abandoned")
