"""Subscription service: user-facing billing actions.

Each action commits its local transition first and only then talks to the
gateway, so no row lock is ever held across a network call. If the gateway
stays unreachable after retries the local change is kept and the summary
comes back with ``pending=True``; the reconcile job converges both sides.
If the gateway answers with a refusal the local change is reverted and the
error propagates. Immediate cancellation is the exception to the ordering:
a canceled record cannot be revived, so the gateway is asked first.
"""

import logging
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing import stripe_client
from commerce.billing.clock import utcnow
from commerce.billing.events import checkout_snapshot, subscription_snapshot
from commerce.billing.ledger import PaymentLedger
from commerce.billing.outcomes import Outcome, TransitionResult
from commerce.billing.plans import PAID_TIERS, BillingPeriod, PlanTier, get_price_id
from commerce.billing.proration import ProrationQuote
from commerce.billing.state_machine import SubscriptionStateMachine
from commerce.billing.webhooks import confirm_subscription_checkout
from commerce.errors import (
    ConflictError,
    GatewayRejectedError,
    GatewayUnavailableError,
    NotFoundError,
    ValidationError,
)
from commerce.models.ledger import PaymentTransaction
from commerce.models.subscription import SubscriptionRecord
from commerce.models.user import User
from commerce.services.customer_service import ensure_gateway_customer
from commerce.services.subscription_store import get_live_subscription

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionSummary:
    plan_tier: str
    status: str | None
    billing_period: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    days_remaining: int
    pending: bool = False
    outcome: Outcome | None = None
    reason: str | None = None
    proration: ProrationQuote | None = None


@dataclass(frozen=True)
class CheckoutStart:
    session_id: str
    url: str


def summarize(
    subscription: SubscriptionRecord | None,
    *,
    pending: bool = False,
    result: TransitionResult | None = None,
    now: datetime | None = None,
) -> SubscriptionSummary:
    """Build the summary the billing endpoints return. No live record means Free."""
    outcome = result.outcome if result else None
    reason = result.reason if result else None
    proration = result.proration if result else None
    if subscription is None or not subscription.is_live:
        return SubscriptionSummary(
            plan_tier=PlanTier.FREE.value,
            status=None,
            billing_period=None,
            current_period_end=None,
            cancel_at_period_end=False,
            days_remaining=-1,
            pending=pending,
            outcome=outcome,
            reason=reason,
        )
    return SubscriptionSummary(
        plan_tier=subscription.plan_tier,
        status=subscription.status,
        billing_period=subscription.billing_period,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        days_remaining=subscription.days_remaining(now or utcnow()),
        pending=pending,
        outcome=outcome,
        reason=reason,
        proration=proration,
    )


async def _require_live(db: AsyncSession, user: User) -> SubscriptionRecord:
    subscription = await get_live_subscription(db, user.id)
    if subscription is None:
        raise NotFoundError("No active subscription", user_id=str(user.id))
    return subscription


async def get_summary(db: AsyncSession, user: User) -> SubscriptionSummary:
    return summarize(await get_live_subscription(db, user.id))


async def create_checkout_session(
    db: AsyncSession,
    user: User,
    plan_tier: PlanTier,
    billing_period: BillingPeriod,
    success_url: str,
    cancel_url: str,
) -> CheckoutStart:
    """Start a subscription checkout. Nothing about the subscription is stored yet."""
    if plan_tier not in PAID_TIERS:
        raise ValidationError("Choose a paid plan to check out", plan_tier=plan_tier.value)
    if await get_live_subscription(db, user.id) is not None:
        raise ConflictError("User already has an active subscription; change plan instead")
    price_id = get_price_id(plan_tier, billing_period)
    if not price_id:
        raise ValidationError(
            "Gateway price not configured for plan",
            plan_tier=plan_tier.value,
            billing_period=billing_period.value,
        )

    customer_id = await ensure_gateway_customer(db, user)
    await db.commit()

    session = await stripe_client.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={
            "user_id": str(user.id),
            "plan_tier": plan_tier.value,
            "billing_period": billing_period.value,
            "purpose": "subscription",
        },
    )
    logger.info(
        "Checkout session %s started for user %s (%s/%s)",
        session.id,
        user.id,
        plan_tier.value,
        billing_period.value,
    )
    return CheckoutStart(session_id=session.id, url=session.url)


async def confirm_checkout(db: AsyncSession, user: User, session_id: str) -> SubscriptionSummary:
    """Synchronous confirmation from the success redirect.

    Races the ``checkout.session.completed`` webhook; whichever arrives second
    is a no-op.
    """
    user_id = user.id
    session = await stripe_client.retrieve_checkout_session(session_id)
    checkout = checkout_snapshot(session)
    if checkout.metadata.get("user_id") != str(user_id):
        raise NotFoundError("Checkout session not found", session_id=session_id)
    if checkout.mode != "subscription":
        raise ValidationError("Checkout session is not a subscription checkout", session_id=session_id)

    live = None
    if checkout.gateway_subscription_id:
        live = subscription_snapshot(await stripe_client.get_subscription(checkout.gateway_subscription_id))

    machine = SubscriptionStateMachine(db)
    try:
        result = await confirm_subscription_checkout(machine, checkout, live)
        await db.commit()
    except IntegrityError:
        # The webhook created the record between our check and insert
        await db.rollback()
        logger.info("Checkout %s confirmed concurrently by webhook", session_id)
        result = TransitionResult(outcome=Outcome.NOOP, reason="checkout already confirmed")

    if result.outcome is Outcome.REJECTED:
        raise ConflictError(result.reason or "Checkout could not be confirmed", session_id=session_id)
    return summarize(await get_live_subscription(db, user_id), result=result)


async def _revert(
    db: AsyncSession, undo: Awaitable[TransitionResult], subscription_id: uuid.UUID, action: str
) -> None:
    """Put the local record back after the gateway refused ``action``."""
    result = await undo
    await db.commit()
    logger.warning("Gateway rejected %s of %s; local change reverted (%s)", action, subscription_id, result.reason)


async def cancel(db: AsyncSession, user: User, immediate: bool = False) -> SubscriptionSummary:
    subscription = await _require_live(db, user)
    gateway_id = subscription.gateway_subscription_id
    machine = SubscriptionStateMachine(db)

    if immediate:
        # Canceled is terminal locally, so the gateway has to agree first
        if gateway_id:
            await stripe_client.cancel_subscription(gateway_id)
        result = await machine.request_cancel(subscription.id, immediate=True)
        await db.commit()
        return summarize(result.subscription, result=result)

    result = await machine.request_cancel(subscription.id, immediate=False)
    await db.commit()

    pending = False
    if result.applied and gateway_id:
        try:
            await stripe_client.set_cancel_at_period_end(gateway_id, True)
        except GatewayUnavailableError:
            logger.warning("Cancel of %s saved locally; gateway sync pending", subscription.id)
            pending = True
        except GatewayRejectedError:
            await _revert(db, machine.reactivate(subscription.id), subscription.id, "scheduled cancel")
            raise
    return summarize(result.subscription, pending=pending, result=result)


async def reactivate(db: AsyncSession, user: User) -> SubscriptionSummary:
    subscription = await _require_live(db, user)
    machine = SubscriptionStateMachine(db)
    result = await machine.reactivate(subscription.id)
    await db.commit()

    pending = False
    if result.applied and subscription.gateway_subscription_id:
        try:
            await stripe_client.set_cancel_at_period_end(subscription.gateway_subscription_id, False)
        except GatewayUnavailableError:
            logger.warning("Reactivation of %s saved locally; gateway sync pending", subscription.id)
            pending = True
        except GatewayRejectedError:
            await _revert(
                db, machine.request_cancel(subscription.id, immediate=False), subscription.id, "reactivation"
            )
            raise
    return summarize(result.subscription, pending=pending, result=result)


async def change_plan(
    db: AsyncSession,
    user: User,
    plan_tier: PlanTier,
    billing_period: BillingPeriod,
) -> SubscriptionSummary:
    """Upgrade, downgrade or switch cadence. Downgrading to Free schedules a cancel."""
    if plan_tier is PlanTier.FREE:
        return await cancel(db, user, immediate=False)

    subscription = await _require_live(db, user)
    price_id = get_price_id(plan_tier, billing_period)
    if not price_id:
        raise ValidationError(
            "Gateway price not configured for plan",
            plan_tier=plan_tier.value,
            billing_period=billing_period.value,
        )

    # Read the gateway item before locking anything; failure here changes nothing
    item_id = None
    if subscription.gateway_subscription_id:
        live = subscription_snapshot(await stripe_client.get_subscription(subscription.gateway_subscription_id))
        item_id = live.item_id

    previous_tier = PlanTier(subscription.plan_tier)
    previous_period = BillingPeriod(subscription.billing_period)
    previous_price_id = subscription.gateway_price_id

    machine = SubscriptionStateMachine(db)
    result = await machine.change_plan(subscription.id, plan_tier, billing_period)
    await db.commit()
    if result.outcome is Outcome.REJECTED:
        raise ConflictError(result.reason or "Plan change not allowed", subscription_id=str(subscription.id))

    pending = False
    if result.applied and subscription.gateway_subscription_id and item_id:
        try:
            await stripe_client.change_subscription_price(subscription.gateway_subscription_id, item_id, price_id)
        except GatewayUnavailableError:
            logger.warning("Plan change of %s saved locally; gateway sync pending", subscription.id)
            pending = True
        except GatewayRejectedError:
            undo = machine.sync_plan(subscription.id, previous_tier, previous_period, previous_price_id)
            await _revert(db, undo, subscription.id, "plan change")
            raise
    return summarize(result.subscription, pending=pending, result=result)


async def create_portal_session(db: AsyncSession, user: User, return_url: str) -> str:
    if not user.gateway_customer_id:
        raise ValidationError("No billing account found. Subscribe first.")
    session = await stripe_client.create_portal_session(user.gateway_customer_id, return_url)
    return session.url


async def payment_history(db: AsyncSession, user_id: uuid.UUID, limit: int = 20) -> list[PaymentTransaction]:
    return await PaymentLedger(db).history(user_id, limit=limit)
