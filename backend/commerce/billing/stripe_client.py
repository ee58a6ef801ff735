"""Async Stripe API wrapper.

Every outbound call is bounded by ``gateway_timeout_seconds`` and retried with
exponential backoff on network-level failures only. Exhausted retries become
``GatewayUnavailableError``; any other Stripe error becomes
``GatewayRejectedError``. Callers must not hold a row lock while awaiting these.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import stripe
from stripe import StripeClient
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from commerce.config import settings
from commerce.errors import GatewayRejectedError, GatewayUnavailableError, SignatureError, ValidationError

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("commerce.security")

T = TypeVar("T")

_TRANSIENT = (stripe.APIConnectionError, stripe.RateLimitError, asyncio.TimeoutError)


def get_stripe_client() -> StripeClient:
    """Create a StripeClient with async HTTP support; retries are ours, not the SDK's."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
        max_network_retries=0,
    )


async def _call_gateway(description: str, call: Callable[[], Awaitable[T]]) -> T:
    """Run one gateway request under the timeout and retry policy."""
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(_TRANSIENT),
        stop=stop_after_attempt(settings.gateway_max_attempts),
        wait=wait_exponential(
            multiplier=settings.gateway_backoff_seconds,
            max=settings.gateway_backoff_max_seconds,
        ),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "Gateway call %s failed (attempt %s), retrying in %.2fs",
            description,
            rs.attempt_number,
            rs.next_action.sleep if rs.next_action else 0.0,
        ),
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await asyncio.wait_for(call(), timeout=settings.gateway_timeout_seconds)
    except _TRANSIENT as e:
        logger.error("Gateway call %s unavailable after %s attempts", description, settings.gateway_max_attempts)
        raise GatewayUnavailableError(f"Payment gateway unavailable during {description}") from e
    except stripe.StripeError as e:
        logger.error("Gateway rejected %s: %s", description, e)
        raise GatewayRejectedError(f"Payment gateway rejected {description}: {e.user_message or e}") from e
    raise AssertionError("unreachable")  # pragma: no cover


async def create_customer(email: str, name: str, user_id: str) -> stripe.Customer:
    """Create a Stripe customer linked to a platform user."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
    customer = await _call_gateway(
        "create_customer",
        lambda: client.v1.customers.create_async(
            params={
                "email": email,
                "name": name,
                "metadata": {"user_id": user_id},
            }
        ),
    )
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


async def create_checkout_session(
    customer_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> stripe.checkout.Session:
    """Create a Stripe Checkout Session for a new subscription."""
    client = get_stripe_client()
    logger.info("Creating subscription checkout for customer %s, price %s", customer_id, price_id)
    return await _call_gateway(
        "create_checkout_session",
        lambda: client.v1.checkout.sessions.create_async(
            params={
                "mode": "subscription",
                "customer": customer_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
                "allow_promotion_codes": True,
            }
        ),
    )


async def create_payment_checkout_session(
    customer_id: str,
    amount_cents: int,
    currency: str,
    product_name: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> stripe.checkout.Session:
    """Create a one-time payment Checkout Session (book purchases)."""
    client = get_stripe_client()
    logger.info("Creating payment checkout for customer %s (%s %s)", customer_id, amount_cents, currency)
    return await _call_gateway(
        "create_payment_checkout_session",
        lambda: client.v1.checkout.sessions.create_async(
            params={
                "mode": "payment",
                "customer": customer_id,
                "line_items": [
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {"name": product_name},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
            }
        ),
    )


async def retrieve_checkout_session(session_id: str) -> stripe.checkout.Session:
    client = get_stripe_client()
    return await _call_gateway(
        "retrieve_checkout_session",
        lambda: client.v1.checkout.sessions.retrieve_async(session_id),
    )


async def create_portal_session(customer_id: str, return_url: str) -> stripe.billing_portal.Session:
    """Create a Stripe Customer Portal session for subscription management."""
    client = get_stripe_client()
    logger.info("Creating portal session for customer %s", customer_id)
    return await _call_gateway(
        "create_portal_session",
        lambda: client.v1.billing_portal.sessions.create_async(
            params={
                "customer": customer_id,
                "return_url": return_url,
            }
        ),
    )


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await _call_gateway(
        "get_subscription",
        lambda: client.v1.subscriptions.retrieve_async(subscription_id),
    )


async def cancel_subscription(subscription_id: str) -> stripe.Subscription:
    """Cancel a subscription at the gateway right away."""
    client = get_stripe_client()
    logger.info("Canceling Stripe subscription %s immediately", subscription_id)
    return await _call_gateway(
        "cancel_subscription",
        lambda: client.v1.subscriptions.cancel_async(subscription_id),
    )


async def set_cancel_at_period_end(subscription_id: str, cancel_at_period_end: bool) -> stripe.Subscription:
    client = get_stripe_client()
    logger.info("Setting cancel_at_period_end=%s on %s", cancel_at_period_end, subscription_id)
    return await _call_gateway(
        "set_cancel_at_period_end",
        lambda: client.v1.subscriptions.update_async(
            subscription_id,
            params={"cancel_at_period_end": cancel_at_period_end},
        ),
    )


async def change_subscription_price(subscription_id: str, item_id: str, price_id: str) -> stripe.Subscription:
    """Swap the subscription's single item to a new price, letting Stripe invoice prorations."""
    client = get_stripe_client()
    logger.info("Changing price of %s to %s", subscription_id, price_id)
    return await _call_gateway(
        "change_subscription_price",
        lambda: client.v1.subscriptions.update_async(
            subscription_id,
            params={
                "items": [{"id": item_id, "price": price_id}],
                "proration_behavior": "create_prorations",
            },
        ),
    )


async def create_refund(payment_intent_id: str, amount_cents: int, idempotency_key: str) -> stripe.Refund:
    client = get_stripe_client()
    logger.info("Refunding %s of payment intent %s", amount_cents, payment_intent_id)
    return await _call_gateway(
        "create_refund",
        lambda: client.v1.refunds.create_async(
            params={"payment_intent": payment_intent_id, "amount": amount_cents},
            options={"idempotency_key": idempotency_key},
        ),
    )


def verify_webhook_payload(payload: bytes, sig_header: str) -> dict[str, Any]:
    """Check the signature and timestamp, then decode the event body.

    Runs before any database work. Raises ``SignatureError`` for forged or
    replayed requests and ``ValidationError`` for a body that is not JSON.
    """
    if not sig_header:
        security_logger.warning("Webhook rejected: missing signature header")
        raise SignatureError("Missing signature header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError("Webhook payload is not UTF-8") from e
    try:
        stripe.WebhookSignature.verify_header(
            text,
            sig_header,
            settings.stripe_webhook_secret,
            tolerance=settings.webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        security_logger.warning("Webhook rejected: signature verification failed (%s)", e)
        raise SignatureError("Invalid signature") from e
    try:
        body = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError("Webhook payload is not valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    return body
