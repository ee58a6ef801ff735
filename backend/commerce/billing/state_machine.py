"""Subscription state machine: the only writer of subscription lifecycle state.

States::

    none --create / grant--> active | trialing
    active | trialing --mark_past_due--> past_due
    past_due | trialing --apply_renewal--> active
    any live --request_cancel(immediate) / terminate_from_gateway--> canceled

``cancel_at_period_end`` is a flag next to the status, not a state of its own.

Every operation is total. An event that does not fit the current state returns
a NOOP or REJECTED result with a reason instead of raising, so re-ordered or
duplicated gateway deliveries can never crash processing. Each mutation loads
its row under ``SELECT ... FOR UPDATE``; the ``version`` column catches any
writer that slipped past the lock. Methods only flush; the caller owns the
transaction and must commit before talking to the gateway.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.clock import utcnow
from commerce.billing.outcomes import Outcome, TransitionResult
from commerce.billing.plans import PAID_TIERS, BillingPeriod, PlanTier, get_price_cents, get_price_id
from commerce.billing.proration import quote_plan_change
from commerce.errors import NotFoundError, ValidationError
from commerce.models.subscription import SubscriptionRecord, SubscriptionStatus
from commerce.models.user import User
from commerce.services.subscription_store import (
    get_live_subscription,
    get_subscription_by_gateway_id,
    get_subscription_for_update,
)

logger = logging.getLogger(__name__)

_CHANGEABLE = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}
_PAST_DUE_FROM = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}


@dataclass(frozen=True)
class GatewayIds:
    customer_id: str | None
    subscription_id: str | None
    price_id: str | None = None


class SubscriptionStateMachine:
    """Legal transitions over ``SubscriptionRecord`` rows for one session."""

    def __init__(self, db: AsyncSession, now: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._now = now

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _result(
        self,
        outcome: Outcome,
        subscription: SubscriptionRecord | None,
        reason: str,
        **extra,
    ) -> TransitionResult:
        sub_id = subscription.id if subscription is not None else None
        if outcome is Outcome.APPLIED:
            logger.info("Subscription %s: %s", sub_id, reason)
        else:
            logger.info("Subscription %s: %s (%s)", sub_id, outcome.value, reason)
        return TransitionResult(outcome=outcome, subscription=subscription, reason=reason, **extra)

    async def _load(self, subscription_id: uuid.UUID) -> SubscriptionRecord | None:
        return await get_subscription_for_update(self.db, subscription_id)

    async def _set_user_tier(self, user_id: uuid.UUID, tier: PlanTier) -> None:
        user = await self.db.get(User, user_id)
        if user is not None:
            user.subscription_tier = tier.value

    def _missing(self, subscription_id: uuid.UUID) -> TransitionResult:
        logger.warning("Subscription %s not found", subscription_id)
        return TransitionResult(outcome=Outcome.REJECTED, reason="subscription not found")

    @staticmethod
    def _superseded(subscription: SubscriptionRecord, event_at: datetime | None) -> bool:
        """True when a newer gateway event has already been seen for this row.

        A current event moves ``last_gateway_event_at`` forward even if it ends
        up changing nothing else. Calls without an event time (user actions)
        are never superseded.
        """
        if event_at is None:
            return False
        seen = subscription.last_gateway_event_at
        if seen is not None and event_at < seen:
            return True
        subscription.last_gateway_event_at = event_at
        return False

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    async def create_from_checkout(
        self,
        user_id: uuid.UUID,
        plan_tier: PlanTier,
        billing_period: BillingPeriod,
        gateway_ids: GatewayIds,
        period_start: datetime | None,
        period_end: datetime | None,
        *,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        amount_cents: int | None = None,
        currency: str = "USD",
    ) -> TransitionResult:
        """Create the live record for a confirmed checkout.

        Both the synchronous success redirect and the asynchronous
        ``checkout.session.completed`` webhook land here; whichever comes
        second finds the record and is a no-op.
        """
        if plan_tier not in PAID_TIERS:
            raise ValidationError("Only paid tiers can be checked out", plan_tier=plan_tier.value)
        if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise ValidationError("A new subscription must start active or trialing", status=status.value)
        if period_start and period_end and period_end <= period_start:
            raise ValidationError("Billing period must end after it starts")
        if amount_cents is not None and amount_cents < 0:
            raise ValidationError("Amount must not be negative", amount_cents=amount_cents)

        if gateway_ids.subscription_id:
            existing = await get_subscription_by_gateway_id(self.db, gateway_ids.subscription_id)
            if existing is not None:
                if existing.is_live:
                    return self._result(Outcome.NOOP, existing, "checkout already confirmed")
                return self._result(Outcome.NOOP, existing, "gateway subscription already terminated")

        live = await get_live_subscription(self.db, user_id)
        if live is not None:
            return self._result(Outcome.REJECTED, live, "user already has a live subscription")

        subscription = SubscriptionRecord(
            user_id=user_id,
            gateway_customer_id=gateway_ids.customer_id,
            gateway_subscription_id=gateway_ids.subscription_id,
            gateway_price_id=gateway_ids.price_id
            or (get_price_id(plan_tier, billing_period) if gateway_ids.subscription_id else None),
            plan_tier=plan_tier.value,
            billing_period=billing_period.value,
            amount_cents=amount_cents if amount_cents is not None else get_price_cents(plan_tier, billing_period),
            currency=currency.upper(),
            status=status.value,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=False,
        )
        self.db.add(subscription)
        await self.db.flush()

        user = await self.db.get(User, user_id)
        if user is not None:
            user.subscription_tier = plan_tier.value
            if gateway_ids.customer_id and not user.gateway_customer_id:
                user.gateway_customer_id = gateway_ids.customer_id
        await self.db.flush()
        return self._result(
            Outcome.APPLIED, subscription, f"created {plan_tier.value}/{billing_period.value} ({status.value})"
        )

    async def grant_complimentary(
        self,
        user_id: uuid.UUID,
        plan_tier: PlanTier,
        duration_days: int,
    ) -> TransitionResult:
        """Start an unbilled paid-tier record with no gateway subscription behind it.

        Goes through the same one-live-record check as a checkout; the
        reconcile sweep ends it once the period has passed.
        """
        if duration_days <= 0:
            raise ValidationError("Grant must last at least one day", duration_days=duration_days)
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", user_id=str(user_id))
        now = self._now()
        period_end = now + timedelta(days=duration_days)
        result = await self.create_from_checkout(
            user_id,
            plan_tier,
            BillingPeriod.MONTHLY,
            GatewayIds(customer_id=None, subscription_id=None),
            now,
            period_end,
            amount_cents=0,
        )
        if result.applied:
            result.reason = f"complimentary {plan_tier.value} until {period_end.isoformat()}"
        return result

    async def apply_renewal(
        self,
        subscription_id: uuid.UUID,
        new_period_start: datetime | None,
        new_period_end: datetime,
        *,
        event_at: datetime | None = None,
    ) -> TransitionResult:
        """Advance the billing period and mark the record active.

        The period end is the monotonic guard: an event that does not move it
        forward is stale or a duplicate and leaves the record untouched. An
        event older than one already seen may still move the period forward,
        but the status is left to the newer event.
        """
        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if not subscription.is_live:
            return self._result(Outcome.NOOP, subscription, "renewal for terminated subscription")
        superseded = self._superseded(subscription, event_at)
        if subscription.current_period_end is not None and new_period_end <= subscription.current_period_end:
            return self._result(
                Outcome.NOOP,
                subscription,
                f"stale renewal: period end {new_period_end.isoformat()} does not advance "
                f"{subscription.current_period_end.isoformat()}",
            )

        previous = subscription.status
        subscription.current_period_start = new_period_start
        subscription.current_period_end = new_period_end
        if superseded:
            await self.db.flush()
            return self._result(
                Outcome.APPLIED,
                subscription,
                f"period advanced to {new_period_end.isoformat()}; status {previous} kept from a newer event",
            )
        subscription.status = SubscriptionStatus.ACTIVE.value
        await self._set_user_tier(subscription.user_id, PlanTier(subscription.plan_tier))
        await self.db.flush()
        return self._result(
            Outcome.APPLIED, subscription, f"renewed through {new_period_end.isoformat()} (was {previous})"
        )

    async def mark_past_due(
        self,
        subscription_id: uuid.UUID,
        *,
        event_at: datetime | None = None,
        period_end: datetime | None = None,
    ) -> TransitionResult:
        """Flag a failed renewal payment.

        ``period_end`` is the period the gateway says is overdue; a report
        about a period older than the stored one is stale.
        """
        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if self._superseded(subscription, event_at):
            return self._result(Outcome.NOOP, subscription, "stale past_due: a newer gateway event was applied")
        if (
            period_end is not None
            and subscription.current_period_end is not None
            and period_end < subscription.current_period_end
        ):
            return self._result(
                Outcome.NOOP,
                subscription,
                f"stale past_due for period ending {period_end.isoformat()}",
            )
        if subscription.status == SubscriptionStatus.PAST_DUE:
            return self._result(Outcome.NOOP, subscription, "already past_due")
        if subscription.status not in _PAST_DUE_FROM:
            return self._result(Outcome.NOOP, subscription, f"cannot mark {subscription.status} past_due")

        subscription.status = SubscriptionStatus.PAST_DUE.value
        await self.db.flush()
        return self._result(Outcome.APPLIED, subscription, "marked past_due")

    async def request_cancel(self, subscription_id: uuid.UUID, immediate: bool) -> TransitionResult:
        """Cancel now, or schedule cancellation at the end of the paid period."""
        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if not subscription.is_live:
            return self._result(Outcome.NOOP, subscription, "already canceled")

        now = self._now()
        if immediate:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = subscription.canceled_at or now
            subscription.ended_at = now
            await self._set_user_tier(subscription.user_id, PlanTier.FREE)
            await self.db.flush()
            return self._result(Outcome.APPLIED, subscription, "canceled immediately")

        if subscription.cancel_at_period_end:
            return self._result(Outcome.NOOP, subscription, "cancellation already scheduled")
        subscription.cancel_at_period_end = True
        subscription.canceled_at = now
        await self.db.flush()
        return self._result(Outcome.APPLIED, subscription, "cancellation scheduled at period end")

    async def reactivate(self, subscription_id: uuid.UUID) -> TransitionResult:
        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if not subscription.is_live:
            return self._result(Outcome.NOOP, subscription, "cannot reactivate a canceled subscription")
        if not subscription.cancel_at_period_end:
            return self._result(Outcome.NOOP, subscription, "no scheduled cancellation to undo")

        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        await self.db.flush()
        return self._result(Outcome.APPLIED, subscription, "scheduled cancellation withdrawn")

    async def change_plan(
        self,
        subscription_id: uuid.UUID,
        new_tier: PlanTier,
        new_period: BillingPeriod,
        at: datetime | None = None,
    ) -> TransitionResult:
        """Switch tier and/or cadence; the period end is kept as is."""
        if new_tier is PlanTier.FREE:
            result = await self.request_cancel(subscription_id, immediate=False)
            result.reason = f"downgrade to Free: {result.reason}"
            return result

        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if not subscription.is_live:
            return self._result(Outcome.NOOP, subscription, "cannot change plan of a canceled subscription")
        if subscription.status not in _CHANGEABLE:
            return self._result(
                Outcome.REJECTED, subscription, f"plan changes are not allowed while {subscription.status}"
            )
        if subscription.plan_tier == new_tier.value and subscription.billing_period == new_period.value:
            return self._result(Outcome.NOOP, subscription, "already on requested plan")
        if not subscription.gateway_subscription_id:
            return self._result(Outcome.REJECTED, subscription, "complimentary grants cannot change plan")

        quote = quote_plan_change(subscription, new_tier, new_period, at or self._now())
        previous = f"{subscription.plan_tier}/{subscription.billing_period}"
        subscription.plan_tier = new_tier.value
        subscription.billing_period = new_period.value
        subscription.amount_cents = get_price_cents(new_tier, new_period)
        subscription.gateway_price_id = get_price_id(new_tier, new_period)
        await self._set_user_tier(subscription.user_id, new_tier)
        await self.db.flush()
        return self._result(
            Outcome.APPLIED,
            subscription,
            f"plan changed {previous} -> {new_tier.value}/{new_period.value}, net {quote.net_due_cents}",
            proration=quote,
        )

    async def terminate_from_gateway(self, subscription_id: uuid.UUID) -> TransitionResult:
        """Gateway confirmed the subscription is gone. Always legal; canceled absorbs."""
        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if not subscription.is_live:
            return self._result(Outcome.NOOP, subscription, "already canceled")

        now = self._now()
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.canceled_at = subscription.canceled_at or now
        subscription.ended_at = now
        await self._set_user_tier(subscription.user_id, PlanTier.FREE)
        await self.db.flush()
        return self._result(Outcome.APPLIED, subscription, "terminated by gateway")

    # ------------------------------------------------------------------
    # reconciliation helpers: mirror changes made directly at the gateway
    # ------------------------------------------------------------------

    async def sync_cancel_flag(
        self,
        subscription_id: uuid.UUID,
        cancel_at_period_end: bool,
        *,
        event_at: datetime | None = None,
    ) -> TransitionResult:
        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if not subscription.is_live:
            return self._result(Outcome.NOOP, subscription, "terminal record keeps its flag")
        if self._superseded(subscription, event_at):
            return self._result(Outcome.NOOP, subscription, "stale cancel flag: a newer gateway event was applied")
        if subscription.cancel_at_period_end == cancel_at_period_end:
            return self._result(Outcome.NOOP, subscription, "cancel flag already in sync")

        subscription.cancel_at_period_end = cancel_at_period_end
        subscription.canceled_at = self._now() if cancel_at_period_end else None
        await self.db.flush()
        return self._result(Outcome.APPLIED, subscription, f"cancel_at_period_end synced to {cancel_at_period_end}")

    async def sync_plan(
        self,
        subscription_id: uuid.UUID,
        tier: PlanTier,
        period: BillingPeriod,
        price_id: str | None,
    ) -> TransitionResult:
        """Adopt a plan the gateway already switched (e.g. via the billing portal).

        No proration is computed here; the gateway has already invoiced it.
        """
        subscription = await self._load(subscription_id)
        if subscription is None:
            return self._missing(subscription_id)
        if not subscription.is_live:
            return self._result(Outcome.NOOP, subscription, "terminal record keeps its plan")
        if tier not in PAID_TIERS:
            return self._result(Outcome.REJECTED, subscription, "gateway reported a non-paid tier")
        if subscription.plan_tier == tier.value and subscription.billing_period == period.value:
            return self._result(Outcome.NOOP, subscription, "plan already in sync")

        subscription.plan_tier = tier.value
        subscription.billing_period = period.value
        subscription.amount_cents = get_price_cents(tier, period)
        subscription.gateway_price_id = price_id
        await self._set_user_tier(subscription.user_id, tier)
        await self.db.flush()
        return self._result(Outcome.APPLIED, subscription, f"plan synced to {tier.value}/{period.value}")
