"""Stripe integration: checkout, webhook reconciliation and subscriber actions."""

from fundify.payments.checkout import CheckoutInitiator, CheckoutResult
from fundify.payments.idempotency import IdempotencyLedger
from fundify.payments.webhooks import ReconcileResult, WebhookReconciler

__all__ = [
    "CheckoutInitiator",
    "CheckoutResult",
    "IdempotencyLedger",
    "ReconcileResult",
    "WebhookReconciler",
]
