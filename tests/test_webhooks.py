"""Tests for Stripe webhook reconciliation."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest
import stripe

from conftest import T0, make_subscription
from fundify.db.models import SubscriptionStatus as S
from fundify.memberships.errors import (
    InvalidState,
    MalformedPayload,
    NotFound,
    TransientStoreError,
    Unauthorized,
)
from fundify.memberships.ledger import SubscriptionLedger
from fundify.memberships import state
from fundify.memberships.state import TransitionResult
from fundify.payments.idempotency import IdempotencyLedger
from fundify.payments.webhooks import WebhookReconciler

PERIOD_END = 1735689600
SUBSCRIBER = uuid.uuid4()
CREATOR = uuid.uuid4()


def _checkout_completed(event_id="evt_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "mode": "subscription",
                "client_reference_id": "fsub_abc",
                "subscription": "sub_123",
                "metadata": {
                    "subscriber_id": str(SUBSCRIBER),
                    "creator_id": str(CREATOR),
                    "external_ref": "fsub_abc",
                },
            }
        },
    }


def _checkout_expired(session_id="cs_old", event_id="evt_7"):
    return {
        "id": event_id,
        "type": "checkout.session.expired",
        "data": {"object": {"id": session_id, "mode": "subscription", "client_reference_id": "fsub_abc"}},
    }


def _payment_failed(period_end=PERIOD_END, event_id="evt_3"):
    return {
        "id": event_id,
        "type": "invoice.payment_failed",
        "data": {
            "object": {
                "subscription": "sub_123",
                "lines": {"data": [{"period": {"end": period_end}}]},
            }
        },
    }


def _applied(status=S.ACTIVE, note="activated"):
    return TransitionResult(make_subscription(status=status), True, note)


@pytest.fixture
def ledger():
    return AsyncMock(spec=SubscriptionLedger)


@pytest.fixture
def idempotency():
    mock = AsyncMock(spec=IdempotencyLedger)
    mock.claim.return_value = True
    return mock


@pytest.fixture
def reconciler(mock_pool, ledger, idempotency):
    return WebhookReconciler(mock_pool, ledger, idempotency, "whsec_test")


class TestSignatureVerification:
    """Signature and payload failures write nothing."""

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, reconciler, mock_pool, ledger, idempotency):
        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.side_effect = stripe.SignatureVerificationError("Invalid signature", "t=1,v1=bad")

            with pytest.raises(Unauthorized):
                await reconciler.handle(b"{}", "t=1,v1=bad")

        mock_pool.acquire.assert_not_called()
        idempotency.claim.assert_not_called()
        ledger.activate.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, reconciler, mock_pool):
        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            with pytest.raises(Unauthorized):
                await reconciler.handle(b"{}", None)

            mock_verify.assert_not_called()
        mock_pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_secret_rejects_everything(self, mock_pool, ledger, idempotency):
        reconciler = WebhookReconciler(mock_pool, ledger, idempotency, "")

        with pytest.raises(Unauthorized):
            await reconciler.handle(b"{}", "t=1,v1=sig")

    @pytest.mark.asyncio
    async def test_unparseable_payload(self, reconciler, mock_pool):
        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.side_effect = ValueError("bad json")

            with pytest.raises(MalformedPayload):
                await reconciler.handle(b"not json", "sig")

        mock_pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_payload_passed_through_unmodified(self, reconciler):
        payload = b'{"id": "evt_1", "type": "ping"}'
        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = {"id": "evt_1", "type": "ping", "data": {"object": {}}}

            await reconciler.handle(payload, "t=1,v1=sig")

            mock_verify.assert_called_once_with(payload, "t=1,v1=sig", "whsec_test")


class TestDispatch:
    """Claim, apply and record in one transaction."""

    @pytest.mark.asyncio
    async def test_checkout_completed_activates(self, reconciler, mock_pool, ledger, idempotency):
        ledger.activate.return_value = _applied()

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_completed()
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "applied: activated -> ACTIVE"
        assert not result.duplicate
        idempotency.claim.assert_awaited_once_with(mock_pool.conn, "evt_1", "checkout.session.completed")

        args, kwargs = ledger.activate.call_args
        assert args == ("fsub_abc", None)
        assert kwargs["processor_ref"] == "sub_123"
        assert kwargs["identity"].subscriber_id == SUBSCRIBER
        assert kwargs["conn"] is mock_pool.conn
        assert kwargs["source_event_id"] == "evt_1"

        idempotency.record_outcome.assert_awaited_once_with(
            mock_pool.conn, "evt_1", "applied: activated -> ACTIVE"
        )
        mock_pool.conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_skips_transition(self, reconciler, ledger, idempotency):
        idempotency.claim.return_value = False

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_completed()
            result = await reconciler.handle(b"{}", "sig")

        assert result.duplicate
        ledger.activate.assert_not_called()
        idempotency.record_outcome.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(self, reconciler, mock_pool, ledger):
        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = {"id": "evt_9", "type": "customer.created", "data": {"object": {}}}
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "ignored"
        mock_pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_invoice_paid_renews(self, reconciler, ledger):
        ledger.renew.return_value = _applied(note="renewed")
        event = {
            "id": "evt_2",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "subscription": "sub_123",
                    "lines": {"data": [{"period": {"end": PERIOD_END}}]},
                }
            },
        }

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = event
            await reconciler.handle(b"{}", "sig")

        args, kwargs = ledger.renew.call_args
        assert args == ("sub_123", datetime.fromtimestamp(PERIOD_END, tz=timezone.utc))
        assert kwargs["processor_ref"] == "sub_123"

    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due(self, reconciler, ledger):
        ledger.mark_past_due.return_value = _applied(note="past due")

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _payment_failed()
            await reconciler.handle(b"{}", "sig")

        args, kwargs = ledger.mark_past_due.call_args
        assert args == ("sub_123",)
        assert kwargs["period_end"] == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_checkout_expired_names_session(self, reconciler, ledger):
        ledger.abandon_checkout.return_value = _applied(status=S.EXPIRED, note="checkout abandoned")

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_expired()
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "applied: checkout abandoned -> EXPIRED"
        args, _ = ledger.abandon_checkout.call_args
        assert args == ("fsub_abc", "cs_old")
        ledger.expire.assert_not_called()

    @pytest.mark.asyncio
    async def test_resume_also_applies_period(self, reconciler, ledger):
        ledger.resume.return_value = _applied(note="resumed")
        ledger.renew.return_value = _applied(note="renewed")
        event = {
            "id": "evt_4",
            "type": "customer.subscription.updated",
            "data": {
                "object": {"id": "sub_123", "status": "active", "current_period_end": PERIOD_END},
                "previous_attributes": {"pause_collection": {"behavior": "void"}},
            },
        }

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = event
            await reconciler.handle(b"{}", "sig")

        ledger.resume.assert_awaited_once()
        ledger.renew.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_one_off_payment_recorded(self, reconciler, mock_pool, ledger):
        mock_pool.conn.fetchval.return_value = uuid.uuid4()
        event = {
            "id": "evt_5",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_donation",
                    "mode": "payment",
                    "payment_status": "paid",
                    "amount_total": 700,
                    "currency": "usd",
                    "metadata": {"payer_id": str(SUBSCRIBER), "creator_id": str(CREATOR), "kind": "DONATION"},
                }
            },
        }

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = event
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "recorded"
        insert_args = mock_pool.conn.fetchval.call_args[0]
        assert "cs_donation" in insert_args
        assert 700 in insert_args
        ledger.activate.assert_not_called()


class TestLateDelivery:
    """Notifications that arrive after the row has moved on."""

    @pytest.mark.asyncio
    async def test_old_session_expiry_leaves_paid_row_active(self, reconciler, ledger, idempotency, mock_pool):
        paid = make_subscription(status=S.ACTIVE, processor_subscription_id="sub_123")
        ledger.abandon_checkout.side_effect = (
            lambda ref, session_id, **kwargs: state.abandon_checkout(paid, session_id, T0)
        )

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_expired()
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "no-op: checkout expiry ignored for ACTIVE subscription (ACTIVE)"
        ledger.expire.assert_not_called()
        idempotency.record_outcome.assert_awaited_once_with(mock_pool.conn, "evt_7", result.outcome)

    @pytest.mark.asyncio
    async def test_superseded_session_keeps_pending_row(self, reconciler, ledger):
        pending = make_subscription(checkout_session_id="cs_new")
        ledger.abandon_checkout.side_effect = (
            lambda ref, session_id, **kwargs: state.abandon_checkout(pending, session_id, T0)
        )

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_expired(session_id="cs_old")
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "no-op: checkout session cs_old superseded (PENDING)"

    @pytest.mark.asyncio
    async def test_failure_after_paid_renewal_is_noop(self, reconciler, ledger):
        paid_through = datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
        renewed = make_subscription(status=S.ACTIVE, current_period_end=paid_through)
        ledger.mark_past_due.side_effect = (
            lambda ref, period_end=None, **kwargs: state.mark_past_due(renewed, T0, period_end=period_end)
        )

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _payment_failed()
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "no-op: payment failure for a period already paid (ACTIVE)"

    @pytest.mark.asyncio
    async def test_failure_for_unpaid_period_marks_past_due(self, reconciler, ledger):
        paid_through = datetime.fromtimestamp(PERIOD_END, tz=timezone.utc) - timedelta(days=30)
        current = make_subscription(status=S.ACTIVE, current_period_end=paid_through)
        ledger.mark_past_due.side_effect = (
            lambda ref, period_end=None, **kwargs: state.mark_past_due(current, T0, period_end=period_end)
        )

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _payment_failed()
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome == "applied: past due -> ACTIVE"

    @pytest.mark.asyncio
    async def test_redelivered_failure_not_reapplied(self, reconciler, ledger, idempotency):
        idempotency.claim.return_value = False

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _payment_failed()
            result = await reconciler.handle(b"{}", "sig")

        assert result.duplicate
        ledger.mark_past_due.assert_not_called()
        idempotency.record_outcome.assert_not_called()


class TestFailures:
    """Failures either roll back the claim or are recorded and acknowledged."""

    @pytest.mark.asyncio
    async def test_invalid_transition_recorded_as_rejected(self, reconciler, ledger, idempotency, mock_pool):
        ledger.activate.side_effect = InvalidState("Cannot activate EXPIRED subscription fsub_abc")

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_completed()
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome.startswith("rejected:")
        idempotency.record_outcome.assert_awaited_once_with(mock_pool.conn, "evt_1", result.outcome)

    @pytest.mark.asyncio
    async def test_unknown_subscription_skipped(self, reconciler, ledger):
        ledger.abandon_checkout.side_effect = NotFound("No subscription for fsub_gone")
        event = {
            "id": "evt_6",
            "type": "checkout.session.expired",
            "data": {"object": {"mode": "subscription", "client_reference_id": "fsub_gone"}},
        }

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = event
            result = await reconciler.handle(b"{}", "sig")

        assert result.outcome.startswith("skipped:")

    @pytest.mark.asyncio
    async def test_store_failure_is_transient_and_unrecorded(self, reconciler, ledger, idempotency):
        ledger.activate.side_effect = asyncpg.exceptions.DeadlockDetectedError("deadlock detected")

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_completed()

            with pytest.raises(TransientStoreError) as exc_info:
                await reconciler.handle(b"{}", "sig")

        assert exc_info.value.retryable
        assert exc_info.value.status == 503
        idempotency.record_outcome.assert_not_called()

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self, reconciler, mock_pool):
        mock_pool.acquire.side_effect = OSError("connection refused")

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = _checkout_completed()

            with pytest.raises(TransientStoreError):
                await reconciler.handle(b"{}", "sig")

    @pytest.mark.asyncio
    async def test_malformed_event_not_recorded(self, reconciler, mock_pool, idempotency):
        event = {"id": "evt_7", "type": "checkout.session.completed", "data": {"object": {"mode": "subscription"}}}

        with patch("fundify.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = event

            with pytest.raises(MalformedPayload):
                await reconciler.handle(b"{}", "sig")

        idempotency.claim.assert_not_called()
        mock_pool.acquire.assert_not_called()


class TestIdempotencyLedger:
    """Claim semantics against a mocked connection."""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, mock_pool):
        mock_pool.conn.fetchval.return_value = "evt_1"

        assert await IdempotencyLedger(mock_pool).claim(mock_pool.conn, "evt_1", "invoice.paid")

        query = mock_pool.conn.fetchval.call_args[0][0]
        assert "ON CONFLICT (event_id) DO NOTHING" in query

    @pytest.mark.asyncio
    async def test_second_claim_is_duplicate(self, mock_pool):
        mock_pool.conn.fetchval.return_value = None

        assert not await IdempotencyLedger(mock_pool).claim(mock_pool.conn, "evt_1", "invoice.paid")

    @pytest.mark.asyncio
    async def test_is_processed(self, mock_pool):
        mock_pool.conn.fetchval.return_value = 1

        assert await IdempotencyLedger(mock_pool).is_processed("evt_1")
