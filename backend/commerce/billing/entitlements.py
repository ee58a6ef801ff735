"""Entitlement resolution: what a user may access right now.

Entitlements are derived on every call from the live subscription record and
the user's one-off purchases; nothing here writes. A momentarily stale status
is acceptable because the webhook processor converges it.
"""

import uuid
from dataclasses import dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.plans import PAID_TIERS, PlanFeatures, PlanTier, get_features
from commerce.models.catalog import CatalogItem
from commerce.models.purchase import OneOffPurchase
from commerce.services.subscription_store import get_live_subscription


@dataclass(frozen=True)
class Entitlement:
    tier: PlanTier
    unlocked_item_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)

    @property
    def features(self) -> PlanFeatures:
        return get_features(self.tier)

    @property
    def is_paid(self) -> bool:
        return self.tier in PAID_TIERS


class EntitlementResolver:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def tier_for(self, user_id: uuid.UUID) -> PlanTier:
        """Tier of the live record, or Free when there is none."""
        subscription = await get_live_subscription(self.db, user_id)
        if subscription is None:
            return PlanTier.FREE
        return PlanTier(subscription.plan_tier)

    async def resolve(self, user_id: uuid.UUID) -> Entitlement:
        """Tier plus every item :meth:`has_access` would open for this user."""
        tier = await self.tier_for(user_id)

        purchased = await self.db.execute(
            select(OneOffPurchase.item_id).where(OneOffPurchase.user_id == user_id)
        )
        unlocked = set(purchased.scalars().all())

        open_to_tier = or_(CatalogItem.is_free.is_(True), CatalogItem.price_cents <= 0)
        if tier in PAID_TIERS:
            open_to_tier = or_(open_to_tier, CatalogItem.is_premium_inclusive.is_(True))
        included = await self.db.execute(select(CatalogItem.id).where(open_to_tier))
        unlocked.update(included.scalars().all())

        return Entitlement(tier=tier, unlocked_item_ids=frozenset(unlocked))

    async def has_access(self, user_id: uuid.UUID, item_id: uuid.UUID) -> bool:
        """Single-item check for content endpoints (book reader, feature gates)."""
        item = await self.db.get(CatalogItem, item_id)
        if item is None:
            return False
        if item.is_freely_accessible:
            return True

        owned = await self.db.execute(
            select(OneOffPurchase.id).where(
                OneOffPurchase.user_id == user_id,
                OneOffPurchase.item_id == item_id,
            )
        )
        if owned.scalar_one_or_none() is not None:
            return True

        if item.is_premium_inclusive:
            return await self.tier_for(user_id) in PAID_TIERS
        return False
