"""Tests for mid-cycle proration quotes."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from commerce.billing.plans import BillingPeriod, PlanTier
from commerce.billing.proration import prorate, quote_plan_change
from commerce.errors import ValidationError
from commerce.models.subscription import SubscriptionRecord

START = datetime(2026, 3, 1)
END = datetime(2026, 3, 31)
MIDPOINT = datetime(2026, 3, 16)


class TestProrate:
    def test_pro_to_premium_at_midpoint(self):
        quote = prorate(2999, 4999, START, END, MIDPOINT)
        assert quote.unused_credit_cents == 1500  # 1499.5 rounds half-up
        assert quote.new_charge_cents == 2500  # 2499.5 rounds half-up
        assert quote.net_due_cents == 1000
        assert quote.remaining_fraction == Decimal("0.5")
        assert not quote.is_credit

    def test_downgrade_yields_credit(self):
        quote = prorate(4999, 2999, START, END, MIDPOINT)
        assert quote.net_due_cents == -1000
        assert quote.is_credit

    def test_at_period_start_charges_full_difference(self):
        quote = prorate(2999, 4999, START, END, START)
        assert quote.unused_credit_cents == 2999
        assert quote.new_charge_cents == 4999
        assert quote.net_due_cents == 2000

    def test_at_or_after_period_end_is_zero(self):
        quote = prorate(2999, 4999, START, END, END + timedelta(days=3))
        assert quote.unused_credit_cents == 0
        assert quote.new_charge_cents == 0
        assert quote.net_due_cents == 0

    def test_before_period_start_is_clamped(self):
        quote = prorate(2999, 4999, START, END, START - timedelta(days=1))
        assert quote.net_due_cents == 2000

    def test_net_is_rounded_from_unrounded_difference(self):
        # credit 33.33.., charge 66.66.. -> net 33.33.. rounds to 33, not 67 - 33 = 34
        quote = prorate(100, 200, START, START + timedelta(days=3), START + timedelta(days=2))
        assert quote.unused_credit_cents == 33
        assert quote.new_charge_cents == 67
        assert quote.net_due_cents == 33

    def test_resets_period_charges_full_new_amount(self):
        quote = prorate(2999, 29999, START, END, MIDPOINT, resets_period=True)
        assert quote.new_charge_cents == 29999
        assert quote.unused_credit_cents == 1500
        assert quote.resets_period is True

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            prorate(-1, 4999, START, END, MIDPOINT)

    def test_empty_period_rejected(self):
        with pytest.raises(ValidationError):
            prorate(2999, 4999, START, START, MIDPOINT)


class TestQuotePlanChange:
    def _subscription(self, **overrides) -> SubscriptionRecord:
        fields = dict(
            plan_tier="Pro",
            billing_period="monthly",
            amount_cents=2999,
            current_period_start=START,
            current_period_end=END,
        )
        fields.update(overrides)
        return SubscriptionRecord(**fields)

    def test_upgrade_same_cadence(self):
        quote = quote_plan_change(self._subscription(), PlanTier.PREMIUM, BillingPeriod.MONTHLY, MIDPOINT)
        assert quote is not None
        assert quote.net_due_cents == 1000
        assert quote.resets_period is False

    def test_downgrade_to_free_has_no_quote(self):
        assert quote_plan_change(self._subscription(), PlanTier.FREE, BillingPeriod.MONTHLY, MIDPOINT) is None

    def test_cadence_change_resets_period(self):
        quote = quote_plan_change(self._subscription(), PlanTier.PRO, BillingPeriod.YEARLY, MIDPOINT)
        assert quote.resets_period is True
        assert quote.new_charge_cents == 29999

    def test_missing_period_rejected(self):
        with pytest.raises(ValidationError):
            quote_plan_change(
                self._subscription(current_period_start=None),
                PlanTier.PREMIUM,
                BillingPeriod.MONTHLY,
                MIDPOINT,
            )
