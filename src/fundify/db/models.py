"""Lightweight table-name constants and column-name enums."""

from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    MEMBERSHIP_TIERS = "membership_tiers"
    SUBSCRIPTIONS = "subscriptions"
    SUBSCRIPTION_EVENTS = "subscription_events"
    PROCESSED_EVENTS = "processed_events"
    ONE_OFF_PAYMENTS = "one_off_payments"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Column name enums
class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


# Statuses covered by the one-row-per-(subscriber, creator) partial unique index
OPEN_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAUSED,
)

# Statuses that count as an ongoing membership
NON_TERMINAL_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAUSED,
)


class BillingInterval(str, Enum):
    """Tier billing interval."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class ContentVisibility(str, Enum):
    """Visibility rule attached to gated content."""

    PUBLIC = "PUBLIC"
    SUPPORTERS = "SUPPORTERS"
    TIER = "TIER"


class PaymentKind(str, Enum):
    """One-off payment kind."""

    DONATION = "DONATION"
    PURCHASE = "PURCHASE"
