"""Drift repair: pull gateway truth for live subscriptions and apply it locally.

Covers missed or permanently failed webhooks and changes made in the
billing portal. Every correction goes through the state machine, so running
this repeatedly is harmless.
"""

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing import stripe_client
from commerce.billing.clock import utcnow
from commerce.billing.events import SubscriptionSnapshot, subscription_snapshot
from commerce.billing.outcomes import Outcome, TransitionResult
from commerce.billing.plans import get_plan_by_price_id
from commerce.billing.state_machine import SubscriptionStateMachine
from commerce.errors import CommerceError, NotFoundError
from commerce.models.subscription import SubscriptionRecord, SubscriptionStatus
from commerce.services.subscription_store import list_live_subscriptions

logger = logging.getLogger(__name__)

_ENDED = {SubscriptionStatus.CANCELED.value, "incomplete_expired"}
_DELINQUENT = {SubscriptionStatus.PAST_DUE.value, "unpaid"}
_RENEWING = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}


@dataclass
class ReconcileReport:
    subscription_id: uuid.UUID
    changes: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.changes)


async def _apply_snapshot(
    machine: SubscriptionStateMachine, subscription_id: uuid.UUID, snap: SubscriptionSnapshot
) -> list[TransitionResult]:
    if snap.status in _ENDED:
        return [await machine.terminate_from_gateway(subscription_id)]

    # Gateway timestamps have second resolution; a fetch is as new as anything delivered so far
    seen_at = utcnow().replace(microsecond=0)
    results = []
    if snap.status in _DELINQUENT:
        results.append(await machine.mark_past_due(subscription_id, event_at=seen_at, period_end=snap.period_end))
    elif snap.status in _RENEWING and snap.period_end is not None:
        results.append(
            await machine.apply_renewal(subscription_id, snap.period_start, snap.period_end, event_at=seen_at)
        )

    results.append(await machine.sync_cancel_flag(subscription_id, snap.cancel_at_period_end, event_at=seen_at))
    if snap.price_id:
        plan = get_plan_by_price_id(snap.price_id)
        if plan is None:
            logger.warning("Gateway price %s on %s is not a known plan", snap.price_id, subscription_id)
        else:
            tier, period = plan
            results.append(await machine.sync_plan(subscription_id, tier, period, snap.price_id))
    return results


async def _expire_complimentary(
    machine: SubscriptionStateMachine, subscription: SubscriptionRecord
) -> TransitionResult | None:
    """Complimentary grants have no gateway side; they end when their period does."""
    if subscription.current_period_end is None or subscription.current_period_end > utcnow():
        return None
    result = await machine.request_cancel(subscription.id, immediate=True)
    if result.applied:
        result.reason = "complimentary grant expired"
    return result


async def reconcile_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> ReconcileReport:
    """Bring one record in line with the gateway and commit."""
    subscription = await db.get(SubscriptionRecord, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found", subscription_id=str(subscription_id))

    report = ReconcileReport(subscription_id=subscription_id)
    if not subscription.is_live:
        return report

    machine = SubscriptionStateMachine(db)
    if not subscription.gateway_subscription_id:
        result = await _expire_complimentary(machine, subscription)
        results = [result] if result is not None else []
    else:
        # Gateway read happens before any row lock is taken
        snap = subscription_snapshot(await stripe_client.get_subscription(subscription.gateway_subscription_id))
        results = await _apply_snapshot(machine, subscription_id, snap)

    for result in results:
        if result.outcome is Outcome.APPLIED:
            report.changes.append(result.reason or "updated")
    await db.commit()

    if report.changed:
        logger.info("Reconciled subscription %s: %s", subscription_id, "; ".join(report.changes))
    return report


async def reconcile_all(db: AsyncSession) -> list[ReconcileReport]:
    """Reconcile every live subscription; one failure does not stop the sweep."""
    subscription_ids = [s.id for s in await list_live_subscriptions(db)]
    logger.info("Reconciling %d live subscriptions", len(subscription_ids))

    reports = []
    for subscription_id in subscription_ids:
        try:
            reports.append(await reconcile_subscription(db, subscription_id))
        except CommerceError as e:
            await db.rollback()
            logger.error("Reconcile of %s failed: %s", subscription_id, e.message)
            reports.append(ReconcileReport(subscription_id=subscription_id, error=e.message))
    return reports
