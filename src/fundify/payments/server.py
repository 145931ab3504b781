"""HTTP server for the Stripe webhook endpoint and membership API."""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import asyncpg
import stripe
from aiohttp import web

from fundify.config.settings import AppConfig
from fundify.db.models import BillingInterval, ContentVisibility, PaymentKind
from fundify.db.pool import health_check
from fundify.memberships.access import AccessEvaluator, GatedContent
from fundify.memberships.errors import MembershipError, ReconcileError, Unauthorized, ValidationError
from fundify.memberships.ledger import SubscriptionLedger
from fundify.memberships.state import Subscription
from fundify.memberships.tiers import MembershipTier, TierInput, TierStore
from fundify.payments.actions import SubscriptionActions
from fundify.payments.checkout import CheckoutInitiator
from fundify.payments.idempotency import IdempotencyLedger
from fundify.payments.processor import StripeProcessor
from fundify.payments.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Components the request handlers use."""

    pool: asyncpg.Pool
    tiers: TierStore
    reconciler: WebhookReconciler
    checkout: CheckoutInitiator
    actions: SubscriptionActions
    access: AccessEvaluator

    @classmethod
    def from_config(cls, config: AppConfig, pool: asyncpg.Pool) -> "Services":
        """Wire the production components around one pool."""
        processor = StripeProcessor(config.stripe_secret.get_secret_value())
        tiers = TierStore(pool)
        ledger = SubscriptionLedger(pool)
        return cls(
            pool=pool,
            tiers=tiers,
            reconciler=WebhookReconciler(
                pool,
                ledger,
                IdempotencyLedger(pool),
                config.stripe_webhook_secret.get_secret_value(),
            ),
            checkout=CheckoutInitiator(tiers, ledger, processor, config),
            actions=SubscriptionActions(ledger, processor),
            access=AccessEvaluator(pool, timedelta(hours=config.past_due_grace_hours)),
        )


# ----------------------------------------------------------------------
# Middleware and request helpers
# ----------------------------------------------------------------------


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map domain and processor errors to JSON responses."""
    try:
        return await handler(request)
    except MembershipError as e:
        if e.status >= 500:
            logger.warning(f"{request.method} {request.path} failed: {e.message}")
        return web.json_response({"error": e.message}, status=e.status)
    except stripe.StripeError as e:
        logger.error(f"Stripe error on {request.method} {request.path}: {e}")
        return web.json_response({"error": "Payment processor unavailable"}, status=502)


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Read the user id set by the upstream gateway, if any."""
    raw = request.headers.get(request.app["auth_user_header"])
    request["user_id"] = None
    if raw:
        try:
            request["user_id"] = UUID(raw)
        except ValueError:
            raise Unauthorized("Invalid user id")
    return await handler(request)


def _require_user(request: web.Request) -> UUID:
    user_id = request["user_id"]
    if user_id is None:
        raise Unauthorized("Authentication required")
    return user_id


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _parse_uuid(value, field: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be a UUID")


def _parse_datetime(value, field: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO 8601 timestamp")
    if parsed.tzinfo is None:
        raise ValidationError(f"{field} must include a timezone")
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _subscription_json(subscription: Subscription) -> dict:
    return {
        "id": str(subscription.id),
        "subscriberId": str(subscription.subscriber_id),
        "creatorId": str(subscription.creator_id),
        "tierId": str(subscription.tier_id) if subscription.tier_id else None,
        "status": subscription.status.value,
        "currentPeriodEnd": _iso(subscription.current_period_end),
        "cancelledAt": _iso(subscription.cancelled_at),
        "endsAt": _iso(subscription.ends_at),
        "pastDue": subscription.past_due_since is not None,
    }


def _tier_json(tier: MembershipTier) -> dict:
    return {
        "id": str(tier.id),
        "creatorId": str(tier.creator_id),
        "name": tier.name,
        "description": tier.description,
        "priceMinor": tier.price_minor,
        "currency": tier.currency,
        "interval": tier.interval.value,
        "benefits": list(tier.benefits),
        "isActive": tier.is_active,
    }


_TIER_FIELDS = {
    "name": "name",
    "description": "description",
    "priceMinor": "price_minor",
    "benefits": "benefits",
    "interval": "interval",
}


def _tier_changes(body: dict) -> dict:
    changes = {_TIER_FIELDS[key]: value for key, value in body.items() if key in _TIER_FIELDS}
    if "interval" in changes:
        try:
            changes["interval"] = BillingInterval(str(changes["interval"]).upper())
        except ValueError:
            raise ValidationError("interval must be MONTHLY or YEARLY")
    return changes


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/webhooks/payments.

    The raw body is passed unparsed to signature verification.

    Returns:
        200 when processed (including duplicates and ignored events),
        400/401 for permanent failures, 503 or 500 to ask Stripe to retry
    """
    sig_header = request.headers.get("Stripe-Signature")
    payload = await request.read()
    services: Services = request.app["services"]

    try:
        result = await services.reconciler.handle(payload, sig_header)
    except ReconcileError:
        raise
    except Exception as e:
        logger.exception(f"Error processing webhook: {e}")
        # Return 500 so Stripe will retry
        return web.Response(status=500, text="Internal error")

    return web.json_response({"received": True, "outcome": result.outcome})


async def checkout_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/subscriptions/checkout with body {"tierId"}."""
    user_id = _require_user(request)
    body = await _json_body(request)
    if "tierId" not in body:
        raise ValidationError("tierId is required")
    tier_id = _parse_uuid(body["tierId"], "tierId")

    services: Services = request.app["services"]
    result = await services.checkout.start_checkout(user_id, tier_id)

    return web.json_response(
        {
            "redirectUrl": result.redirect_url,
            "subscriptionId": str(result.subscription_id),
            "alreadySubscribed": result.already_subscribed,
        },
        status=200 if result.reused else 201,
    )


async def payment_checkout_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/payments/checkout for donations and purchases."""
    user_id = _require_user(request)
    body = await _json_body(request)
    if "creatorId" not in body or "amountMinor" not in body:
        raise ValidationError("creatorId and amountMinor are required")

    try:
        kind = PaymentKind(str(body.get("kind", PaymentKind.DONATION.value)).upper())
    except ValueError:
        raise ValidationError("kind must be DONATION or PURCHASE")

    product_id = body.get("productId")
    services: Services = request.app["services"]
    result = await services.checkout.start_one_off_payment(
        user_id,
        _parse_uuid(body["creatorId"], "creatorId"),
        body["amountMinor"],
        kind,
        product_id=_parse_uuid(product_id, "productId") if product_id else None,
        currency=body.get("currency"),
    )
    return web.json_response({"redirectUrl": result.redirect_url}, status=201)


def _action_endpoint(action: str):
    async def endpoint(request: web.Request) -> web.Response:
        user_id = _require_user(request)
        subscription_id = _parse_uuid(request.match_info["subscription_id"], "subscription id")
        services: Services = request.app["services"]
        subscription = await getattr(services.actions, action)(user_id, subscription_id)
        return web.json_response(_subscription_json(subscription))

    endpoint.__name__ = f"{action}_endpoint"
    return endpoint


async def access_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/access/check for content services.

    Anonymous viewers are allowed; they only see PUBLIC content.
    """
    body = await _json_body(request)
    if "creatorId" not in body:
        raise ValidationError("creatorId is required")

    try:
        visibility = ContentVisibility(str(body.get("visibility", "PUBLIC")).upper())
    except ValueError:
        raise ValidationError("visibility must be PUBLIC, SUPPORTERS or TIER")

    minimum_price = body.get("minimumPrice")
    if minimum_price is not None and (not isinstance(minimum_price, int) or isinstance(minimum_price, bool)):
        raise ValidationError("minimumPrice must be an integer minor-unit amount")

    content = GatedContent(
        creator_id=_parse_uuid(body["creatorId"], "creatorId"),
        visibility=visibility,
        minimum_price=minimum_price,
        published_at=_parse_datetime(body.get("publishedAt"), "publishedAt"),
    )
    services: Services = request.app["services"]
    allowed = await services.access.can_access(request["user_id"], content)
    return web.json_response({"allowed": allowed})


async def list_tiers_endpoint(request: web.Request) -> web.Response:
    """Handle GET /api/creators/{creator_id}/tiers."""
    creator_id = _parse_uuid(request.match_info["creator_id"], "creator id")
    include_inactive = request["user_id"] == creator_id
    services: Services = request.app["services"]
    tiers = await services.tiers.list(creator_id, include_inactive=include_inactive)
    return web.json_response({"tiers": [_tier_json(tier) for tier in tiers]})


async def create_tier_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/tiers; the caller becomes the tier's creator."""
    user_id = _require_user(request)
    body = await _json_body(request)
    changes = _tier_changes(body)
    if "name" not in changes or "price_minor" not in changes:
        raise ValidationError("name and priceMinor are required")

    services: Services = request.app["services"]
    tier = await services.tiers.create(
        user_id,
        TierInput(
            creator_id=user_id,
            currency=str(body.get("currency", request.app["default_currency"])),
            **changes,
        ),
    )
    return web.json_response(_tier_json(tier), status=201)


async def update_tier_endpoint(request: web.Request) -> web.Response:
    """Handle PATCH /api/tiers/{tier_id}."""
    user_id = _require_user(request)
    tier_id = _parse_uuid(request.match_info["tier_id"], "tier id")
    changes = _tier_changes(await _json_body(request))

    services: Services = request.app["services"]
    tier = await services.tiers.update(user_id, tier_id, **changes)
    return web.json_response(_tier_json(tier))


async def deactivate_tier_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/tiers/{tier_id}/deactivate."""
    user_id = _require_user(request)
    tier_id = _parse_uuid(request.match_info["tier_id"], "tier id")
    services: Services = request.app["services"]
    tier = await services.tiers.deactivate(user_id, tier_id)
    return web.json_response(_tier_json(tier))


async def delete_tier_endpoint(request: web.Request) -> web.Response:
    """Handle DELETE /api/tiers/{tier_id}."""
    user_id = _require_user(request)
    tier_id = _parse_uuid(request.match_info["tier_id"], "tier id")
    services: Services = request.app["services"]
    await services.tiers.delete(user_id, tier_id)
    return web.Response(status=204)


async def health_endpoint(request: web.Request) -> web.Response:
    """Handle GET /health."""
    services: Services = request.app["services"]
    try:
        await health_check(services.pool)
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as e:
        logger.error(f"Health check failed: {e}")
        return web.json_response({"status": "unavailable"}, status=503)
    return web.json_response({"status": "ok"})


async def create_app(
    services: Services,
    auth_user_header: str = "X-User-Id",
    default_currency: str = "usd",
) -> web.Application:
    """Create aiohttp application with all routes.

    Args:
        services: Wired components
        auth_user_header: Header carrying the gateway-authenticated user id
        default_currency: Currency for tiers created without one

    Returns:
        Configured aiohttp Application
    """
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app["services"] = services
    app["auth_user_header"] = auth_user_header
    app["default_currency"] = default_currency

    app.router.add_post("/api/webhooks/payments", webhook_endpoint)
    app.router.add_post("/api/subscriptions/checkout", checkout_endpoint)
    app.router.add_post("/api/payments/checkout", payment_checkout_endpoint)
    for action in ("cancel", "pause", "resume"):
        app.router.add_post(
            f"/api/subscriptions/{{subscription_id}}/{action}", _action_endpoint(action)
        )
    app.router.add_post("/api/access/check", access_endpoint)
    app.router.add_get("/api/creators/{creator_id}/tiers", list_tiers_endpoint)
    app.router.add_post("/api/tiers", create_tier_endpoint)
    app.router.add_patch("/api/tiers/{tier_id}", update_tier_endpoint)
    app.router.add_post("/api/tiers/{tier_id}/deactivate", deactivate_tier_endpoint)
    app.router.add_delete("/api/tiers/{tier_id}", delete_tier_endpoint)
    app.router.add_get("/health", health_endpoint)

    return app


async def run_server(
    config: AppConfig,
    pool: asyncpg.Pool,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the HTTP server until shutdown signal.

    Args:
        config: Application configuration
        pool: Database pool owned by the caller
        shutdown_event: Optional event to signal shutdown
    """
    app = await create_app(
        Services.from_config(config, pool),
        auth_user_header=config.auth_user_header,
        default_currency=config.default_currency,
    )

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.server_host, config.server_port)
    await site.start()

    logger.info(f"HTTP server listening on {config.server_host}:{config.server_port}")

    # Wait for shutdown signal
    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down HTTP server...")
    await runner.cleanup()
