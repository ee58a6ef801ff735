"""Revenue rollups (MRR, ARR, churn, ledger totals).

Reports only. Nothing computed here may feed back into the state machine.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.plans import MONTHS_PER_PERIOD, BillingPeriod, PlanTier
from commerce.models.ledger import PaymentTransaction, TransactionStatus
from commerce.models.subscription import SubscriptionRecord, SubscriptionStatus


@dataclass(frozen=True)
class LedgerTotals:
    gross_cents: int
    refunded_cents: int
    failed_count: int
    by_purpose: dict[str, int]

    @property
    def net_cents(self) -> int:
        return self.gross_cents - self.refunded_cents


def _to_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RevenueAggregator:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _monthly_by_tier(self) -> dict[str, Decimal]:
        result = await self.db.execute(
            select(
                SubscriptionRecord.plan_tier,
                SubscriptionRecord.billing_period,
                func.sum(SubscriptionRecord.amount_cents),
            )
            .where(SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value)
            .group_by(SubscriptionRecord.plan_tier, SubscriptionRecord.billing_period)
        )
        totals: dict[str, Decimal] = {}
        for tier, period, amount in result.all():
            months = MONTHS_PER_PERIOD[BillingPeriod(period)]
            totals[tier] = totals.get(tier, Decimal(0)) + Decimal(amount or 0) / months
        return totals

    async def mrr(self) -> int:
        """Monthly recurring revenue in cents; yearly plans count 1/12 of their amount."""
        return _to_cents(sum((await self._monthly_by_tier()).values(), Decimal(0)))

    async def arr(self) -> int:
        return _to_cents(sum((await self._monthly_by_tier()).values(), Decimal(0)) * 12)

    async def mrr_by_tier(self) -> dict[str, int]:
        by_tier = await self._monthly_by_tier()
        return {
            tier.value: _to_cents(by_tier.get(tier.value, Decimal(0)))
            for tier in (PlanTier.PRO, PlanTier.PREMIUM)
        }

    async def churn_rate(self, start: datetime, end: datetime) -> float:
        """canceled-in-window / (active + canceled-in-window); 0.0 when both are zero."""
        canceled = await self.db.scalar(
            select(func.count())
            .select_from(SubscriptionRecord)
            .where(
                SubscriptionRecord.status == SubscriptionStatus.CANCELED.value,
                SubscriptionRecord.ended_at >= start,
                SubscriptionRecord.ended_at < end,
            )
        )
        active = await self.db.scalar(
            select(func.count())
            .select_from(SubscriptionRecord)
            .where(SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value)
        )
        denominator = (active or 0) + (canceled or 0)
        if denominator == 0:
            return 0.0
        return (canceled or 0) / denominator

    async def ledger_totals(self, start: datetime, end: datetime) -> LedgerTotals:
        in_window = and_(PaymentTransaction.occurred_at >= start, PaymentTransaction.occurred_at < end)
        rows = await self.db.execute(
            select(
                PaymentTransaction.status,
                PaymentTransaction.purpose,
                func.count(),
                func.coalesce(func.sum(PaymentTransaction.amount_cents), 0),
            )
            .where(in_window)
            .group_by(PaymentTransaction.status, PaymentTransaction.purpose)
        )
        gross = refunded = failed = 0
        by_purpose: dict[str, int] = {}
        for status, purpose, count, amount in rows.all():
            if status == TransactionStatus.SUCCEEDED:
                gross += int(amount)
                by_purpose[purpose] = by_purpose.get(purpose, 0) + int(amount)
            elif status == TransactionStatus.REFUNDED:
                refunded += -int(amount)
                by_purpose[purpose] = by_purpose.get(purpose, 0) + int(amount)
            elif status == TransactionStatus.FAILED:
                failed += int(count)
        return LedgerTotals(gross_cents=gross, refunded_cents=refunded, failed_count=failed, by_purpose=by_purpose)

    async def status_counts(self) -> dict[str, int]:
        """Subscription records per status, every status listed."""
        rows = await self.db.execute(
            select(SubscriptionRecord.status, func.count()).group_by(SubscriptionRecord.status)
        )
        counts = {status.value: 0 for status in SubscriptionStatus}
        for status, count in rows.all():
            counts[status] = int(count)
        return counts

    async def active_by_tier(self) -> dict[str, int]:
        rows = await self.db.execute(
            select(SubscriptionRecord.plan_tier, func.count())
            .where(SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value)
            .group_by(SubscriptionRecord.plan_tier)
        )
        by_tier = {tier.value: 0 for tier in (PlanTier.PRO, PlanTier.PREMIUM)}
        for tier, count in rows.all():
            by_tier[tier] = int(count)
        return by_tier

    async def collected(self, since: datetime | None = None) -> int:
        """Sum of succeeded charges, from ``since`` on when given. Refunds are not netted out."""
        query = select(func.coalesce(func.sum(PaymentTransaction.amount_cents), 0)).where(
            PaymentTransaction.status == TransactionStatus.SUCCEEDED.value
        )
        if since is not None:
            query = query.where(PaymentTransaction.occurred_at >= since)
        return int(await self.db.scalar(query) or 0)
