"""Proration for mid-cycle plan and cadence changes.

All inputs are integer cents. Intermediate values stay unrounded ``Decimal``;
only the three reported figures are rounded (half-up, away from zero), and the
net is rounded from the unrounded difference so repeated plan changes do not
accumulate drift.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from commerce.billing.plans import BillingPeriod, PlanTier, get_price_cents
from commerce.errors import ValidationError
from commerce.models.subscription import SubscriptionRecord

_CENT = Decimal("1")
_MICROSECOND = timedelta(microseconds=1)


@dataclass(frozen=True)
class ProrationQuote:
    """Cost delta for switching plans at a given instant (all cents)."""

    unused_credit_cents: int
    new_charge_cents: int
    net_due_cents: int  # negative means a credit is owed to the customer
    remaining_fraction: Decimal
    resets_period: bool = False

    @property
    def is_credit(self) -> bool:
        return self.net_due_cents < 0


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def prorate(
    old_amount_cents: int,
    new_amount_cents: int,
    period_start: datetime,
    period_end: datetime,
    at: datetime,
    *,
    resets_period: bool = False,
) -> ProrationQuote:
    """Compute unused credit, new charge and net due for a switch at ``at``.

    When ``resets_period`` is set (cadence change), the gateway starts a fresh
    cycle, so the new plan is charged in full instead of pro rata.
    """
    if old_amount_cents < 0 or new_amount_cents < 0:
        raise ValidationError("Plan amounts must not be negative")
    if period_end <= period_start:
        raise ValidationError("Billing period must end after it starts")

    clamped = min(max(at, period_start), period_end)
    period = Decimal((period_end - period_start) // _MICROSECOND)
    remaining = Decimal((period_end - clamped) // _MICROSECOND)
    fraction = remaining / period

    credit = Decimal(old_amount_cents) * remaining / period
    if resets_period:
        charge = Decimal(new_amount_cents)
    else:
        charge = Decimal(new_amount_cents) * remaining / period

    return ProrationQuote(
        unused_credit_cents=_round_cents(credit),
        new_charge_cents=_round_cents(charge),
        net_due_cents=_round_cents(charge - credit),
        remaining_fraction=fraction,
        resets_period=resets_period,
    )


def quote_plan_change(
    subscription: SubscriptionRecord,
    new_tier: PlanTier,
    new_period: BillingPeriod,
    at: datetime,
) -> ProrationQuote | None:
    """Quote a switch of ``subscription`` to ``new_tier``/``new_period``.

    Returns None for a downgrade to Free: that is a cancellation and carries no
    new recurring charge.
    """
    if new_tier is PlanTier.FREE:
        return None
    if subscription.current_period_start is None or subscription.current_period_end is None:
        raise ValidationError(
            "Subscription has no billing period to prorate against",
            subscription_id=str(subscription.id),
        )
    return prorate(
        subscription.amount_cents,
        get_price_cents(new_tier, new_period),
        subscription.current_period_start,
        subscription.current_period_end,
        at,
        resets_period=new_period.value != subscription.billing_period,
    )
