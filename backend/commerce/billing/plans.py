"""Plan definitions: tiers, cadences, pricing and the feature matrix."""

from dataclasses import dataclass
from enum import Enum

from commerce.config import settings


class PlanTier(str, Enum):
    FREE = "Free"
    PRO = "Pro"
    PREMIUM = "Premium"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


PAID_TIERS: frozenset[PlanTier] = frozenset({PlanTier.PRO, PlanTier.PREMIUM})

# Minor units (cents). Free is never billed and has no stored record.
PLAN_PRICING_CENTS: dict[PlanTier, dict[BillingPeriod, int]] = {
    PlanTier.FREE: {BillingPeriod.MONTHLY: 0, BillingPeriod.YEARLY: 0},
    PlanTier.PRO: {BillingPeriod.MONTHLY: 2999, BillingPeriod.YEARLY: 29999},
    PlanTier.PREMIUM: {BillingPeriod.MONTHLY: 4999, BillingPeriod.YEARLY: 49999},
}

MONTHS_PER_PERIOD: dict[BillingPeriod, int] = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.YEARLY: 12,
}


@dataclass(frozen=True)
class PlanFeatures:
    """Usage limits and feature switches for a tier. ``-1`` means unlimited."""

    max_questions_per_day: int
    max_cat_tests: int
    max_flashcard_decks: int
    ai_tutor_access: bool
    ai_tutor_messages_per_day: int
    study_plan_generation: bool
    progress_analytics: bool
    advanced_analytics: bool
    offline_access: bool
    priority_support: bool
    custom_study_plans: bool
    group_study_features: bool
    export_features: bool


PLAN_FEATURES: dict[PlanTier, PlanFeatures] = {
    PlanTier.FREE: PlanFeatures(
        max_questions_per_day=25,
        max_cat_tests=1,
        max_flashcard_decks=3,
        ai_tutor_access=False,
        ai_tutor_messages_per_day=0,
        study_plan_generation=False,
        progress_analytics=True,
        advanced_analytics=False,
        offline_access=False,
        priority_support=False,
        custom_study_plans=False,
        group_study_features=False,
        export_features=False,
    ),
    PlanTier.PRO: PlanFeatures(
        max_questions_per_day=200,
        max_cat_tests=10,
        max_flashcard_decks=20,
        ai_tutor_access=True,
        ai_tutor_messages_per_day=50,
        study_plan_generation=True,
        progress_analytics=True,
        advanced_analytics=True,
        offline_access=True,
        priority_support=False,
        custom_study_plans=True,
        group_study_features=True,
        export_features=True,
    ),
    PlanTier.PREMIUM: PlanFeatures(
        max_questions_per_day=-1,
        max_cat_tests=-1,
        max_flashcard_decks=-1,
        ai_tutor_access=True,
        ai_tutor_messages_per_day=-1,
        study_plan_generation=True,
        progress_analytics=True,
        advanced_analytics=True,
        offline_access=True,
        priority_support=True,
        custom_study_plans=True,
        group_study_features=True,
        export_features=True,
    ),
}

PLAN_DESCRIPTIONS: dict[PlanTier, str] = {
    PlanTier.FREE: "Get started with basic features",
    PlanTier.PRO: "Perfect for serious NCLEX preparation",
    PlanTier.PREMIUM: "Complete access with priority support",
}


def get_price_cents(tier: PlanTier, period: BillingPeriod) -> int:
    """Recurring price for a tier and cadence, in cents."""
    return PLAN_PRICING_CENTS[tier][period]


def get_features(tier: PlanTier) -> PlanFeatures:
    return PLAN_FEATURES[tier]


def _price_ids() -> dict[tuple[PlanTier, BillingPeriod], str]:
    # Read at call time so tests and scripts can patch settings.
    configured = settings.stripe_price_ids
    return {
        (tier, period): configured[f"{tier.value.lower()}_{period.value}"]
        for tier in PAID_TIERS
        for period in BillingPeriod
    }


def get_price_id(tier: PlanTier, period: BillingPeriod) -> str | None:
    """Stripe price ID for a paid tier/cadence. None if Free or not configured."""
    return _price_ids().get((tier, period)) or None


def get_plan_by_price_id(price_id: str) -> tuple[PlanTier, BillingPeriod] | None:
    """Reverse lookup: Stripe price ID -> (tier, period). Returns None if not found."""
    for key, configured in _price_ids().items():
        if configured and configured == price_id:
            return key
    return None
