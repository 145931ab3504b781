"""Membership tiers, the subscription ledger and access evaluation.

The ledger is the single writer of subscription state; tiers are owned by
creators; access evaluation is read-only.
"""

from fundify.memberships.access import AccessEvaluator, GatedContent
from fundify.memberships.ledger import SubscriptionIdentity, SubscriptionLedger
from fundify.memberships.state import Subscription, TransitionResult
from fundify.memberships.tiers import MembershipTier, TierInput, TierStore

__all__ = [
    "AccessEvaluator",
    "GatedContent",
    "MembershipTier",
    "Subscription",
    "SubscriptionIdentity",
    "SubscriptionLedger",
    "TierInput",
    "TierStore",
    "TransitionResult",
]
