"""Admin operations: revenue reporting, refunds, listings and complimentary grants."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing import stripe_client
from commerce.billing.clock import utcnow
from commerce.billing.ledger import PaymentLedger
from commerce.billing.outcomes import Outcome
from commerce.billing.plans import PlanTier
from commerce.billing.revenue import LedgerTotals, RevenueAggregator
from commerce.billing.state_machine import SubscriptionStateMachine
from commerce.errors import ConflictError, LedgerIntegrityError
from commerce.models.ledger import PaymentTransaction, TransactionStatus
from commerce.models.subscription import SubscriptionRecord
from commerce.services.subscription_store import list_subscriptions as _list_subscriptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevenueReport:
    start: datetime
    end: datetime
    mrr_cents: int
    arr_cents: int
    mrr_by_tier: dict[str, int]
    churn_rate: float
    totals: LedgerTotals


@dataclass(frozen=True)
class RefundOutcome:
    entry: PaymentTransaction
    gateway_refunded: bool = False


@dataclass(frozen=True)
class Page:
    items: list
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


@dataclass(frozen=True)
class SubscriptionStats:
    total: int
    by_status: dict[str, int]
    active_by_tier: dict[str, int]
    total_revenue_cents: int
    month_to_date_revenue_cents: int


async def revenue_report(
    db: AsyncSession, start: datetime | None = None, end: datetime | None = None
) -> RevenueReport:
    """Revenue rollup over ``[start, end)``; defaults to the last 30 days."""
    end = end or utcnow()
    start = start or end - timedelta(days=30)
    aggregator = RevenueAggregator(db)
    return RevenueReport(
        start=start,
        end=end,
        mrr_cents=await aggregator.mrr(),
        arr_cents=await aggregator.arr(),
        mrr_by_tier=await aggregator.mrr_by_tier(),
        churn_rate=await aggregator.churn_rate(start, end),
        totals=await aggregator.ledger_totals(start, end),
    )


async def refund_transaction(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    amount_cents: int,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> RefundOutcome:
    """Refund at the gateway, then book the refund in the ledger.

    The balance is checked before the gateway is asked, so an over-refund
    never leaves the building. Nothing is booked unless the gateway accepted
    the refund; a rejection or outage propagates with the ledger untouched.
    Retrying with the same ``idempotency_key`` is safe on both sides.
    """
    ledger = PaymentLedger(db)
    key = idempotency_key or f"refund:{transaction_id}:{uuid.uuid4().hex}"
    original, existing = await ledger.check_refund(transaction_id, amount_cents, key)
    reference = original.gateway_reference
    via_gateway = bool(reference and reference.startswith("pi_"))
    if existing is not None:
        logger.info("Refund key %s already booked as %s", key, existing.id)
        return RefundOutcome(entry=existing, gateway_refunded=via_gateway)

    # No transaction stays open across the gateway call
    await db.commit()
    if via_gateway:
        await stripe_client.create_refund(reference, amount_cents, idempotency_key=key)
    else:
        logger.info("Transaction %s has no gateway payment to refund; booking locally only", transaction_id)

    try:
        entry = await ledger.refund(transaction_id, amount_cents, reason, idempotency_key=key)
    except LedgerIntegrityError:
        await db.rollback()
        if via_gateway:
            logger.error(
                "Gateway refunded %s of %s (key=%s) but the ledger refused it", amount_cents, reference, key
            )
        raise
    await db.commit()
    return RefundOutcome(entry=entry, gateway_refunded=via_gateway)


async def list_subscriptions(
    db: AsyncSession,
    status: str | None = None,
    plan_tier: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> Page:
    rows, total = await _list_subscriptions(db, status=status, plan_tier=plan_tier, page=page, limit=limit)
    return Page(items=rows, total=total, page=page, limit=limit)


async def subscription_stats(db: AsyncSession, now: datetime | None = None) -> SubscriptionStats:
    """Counts by status, active records per tier, and collected revenue.

    Month-to-date runs from midnight UTC on the first of the current month.
    """
    now = now or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    aggregator = RevenueAggregator(db)
    by_status = await aggregator.status_counts()
    return SubscriptionStats(
        total=sum(by_status.values()),
        by_status=by_status,
        active_by_tier=await aggregator.active_by_tier(),
        total_revenue_cents=await aggregator.collected(),
        month_to_date_revenue_cents=await aggregator.collected(since=month_start),
    )


async def grant_subscription(
    db: AsyncSession, user_id: uuid.UUID, plan_tier: PlanTier, duration_days: int
) -> SubscriptionRecord:
    """Give a user a paid tier for ``duration_days`` without billing them."""
    result = await SubscriptionStateMachine(db).grant_complimentary(user_id, plan_tier, duration_days)
    if result.outcome is Outcome.REJECTED:
        await db.rollback()
        raise ConflictError(result.reason or "Grant rejected", user_id=str(user_id))
    await db.commit()
    logger.info("Granted user %s: %s", user_id, result.reason)
    return result.subscription


async def list_transactions(
    db: AsyncSession,
    *,
    user_id: uuid.UUID | None = None,
    status: TransactionStatus | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    min_amount_cents: int | None = None,
    max_amount_cents: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> Page:
    rows, total = await PaymentLedger(db).search(
        user_id=user_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
        page=page,
        limit=limit,
    )
    return Page(items=rows, total=total, page=page, limit=limit)
