"""Tests for entitlement resolution."""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.entitlements import EntitlementResolver
from commerce.billing.plans import PlanTier
from commerce.services.purchase_service import grant_item_access
from factories import create_item, create_subscription, create_user


class TestTier:
    @pytest.mark.asyncio
    async def test_free_without_live_record(self, db_session: AsyncSession):
        user = await create_user(db_session)
        entitlement = await EntitlementResolver(db_session).resolve(user.id)
        assert entitlement.tier is PlanTier.FREE
        assert not entitlement.is_paid
        assert entitlement.features.ai_tutor_access is False

    @pytest.mark.asyncio
    async def test_free_when_only_canceled_records(self, db_session: AsyncSession):
        user = await create_user(db_session)
        await create_subscription(db_session, user, status="canceled")
        assert await EntitlementResolver(db_session).tier_for(user.id) is PlanTier.FREE

    @pytest.mark.asyncio
    async def test_past_due_keeps_paid_tier(self, db_session: AsyncSession):
        user = await create_user(db_session)
        await create_subscription(db_session, user, plan_tier="Premium", amount_cents=4999, status="past_due")
        entitlement = await EntitlementResolver(db_session).resolve(user.id)
        assert entitlement.tier is PlanTier.PREMIUM
        assert entitlement.features.max_questions_per_day == -1

    @pytest.mark.asyncio
    async def test_scheduled_cancel_keeps_tier_until_termination(self, db_session: AsyncSession):
        user = await create_user(db_session)
        await create_subscription(db_session, user, cancel_at_period_end=True)
        assert await EntitlementResolver(db_session).tier_for(user.id) is PlanTier.PRO


class TestItemAccess:
    @pytest.mark.asyncio
    async def test_free_item_always_accessible(self, db_session: AsyncSession):
        user = await create_user(db_session)
        item = await create_item(db_session, is_free=True, price_cents=0)
        assert await EntitlementResolver(db_session).has_access(user.id, item.id)

    @pytest.mark.asyncio
    async def test_paid_item_needs_purchase(self, db_session: AsyncSession):
        user = await create_user(db_session)
        item = await create_item(db_session)
        resolver = EntitlementResolver(db_session)
        assert not await resolver.has_access(user.id, item.id)

        await grant_item_access(db_session, user.id, item.id, 1999, "USD")
        assert await resolver.has_access(user.id, item.id)
        assert item.id in (await resolver.resolve(user.id)).unlocked_item_ids

    @pytest.mark.asyncio
    async def test_premium_inclusive_item_needs_paid_tier(self, db_session: AsyncSession):
        user = await create_user(db_session)
        item = await create_item(db_session, is_premium_inclusive=True)
        resolver = EntitlementResolver(db_session)
        assert not await resolver.has_access(user.id, item.id)

        await create_subscription(db_session, user)
        assert await resolver.has_access(user.id, item.id)
        assert item.id in (await resolver.resolve(user.id)).unlocked_item_ids

    @pytest.mark.asyncio
    async def test_purchase_survives_subscription_end(self, db_session: AsyncSession):
        user = await create_user(db_session)
        item = await create_item(db_session, is_premium_inclusive=True)
        await create_subscription(db_session, user, status="canceled")
        await grant_item_access(db_session, user.id, item.id, 1999, "USD")
        assert await EntitlementResolver(db_session).has_access(user.id, item.id)

    @pytest.mark.asyncio
    async def test_unknown_item(self, db_session: AsyncSession):
        user = await create_user(db_session)
        assert not await EntitlementResolver(db_session).has_access(user.id, uuid.uuid4())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan_tier", [None, "Pro", "Premium"])
    async def test_resolve_agrees_with_has_access(self, db_session: AsyncSession, plan_tier: str | None):
        user = await create_user(db_session)
        if plan_tier:
            await create_subscription(db_session, user, plan_tier=plan_tier)
        items = [
            await create_item(db_session, title="Flagged free", is_free=True, price_cents=0),
            await create_item(db_session, title="Zero price", price_cents=0),
            await create_item(db_session, title="Bought"),
            await create_item(db_session, title="Included", is_premium_inclusive=True),
            await create_item(db_session, title="Locked"),
        ]
        await grant_item_access(db_session, user.id, items[2].id, 1999, "USD")

        resolver = EntitlementResolver(db_session)
        unlocked = (await resolver.resolve(user.id)).unlocked_item_ids
        for item in items:
            assert await resolver.has_access(user.id, item.id) == (item.id in unlocked), item.title

        assert items[0].id in unlocked and items[1].id in unlocked
        assert items[4].id not in unlocked
        assert (items[3].id in unlocked) is (plan_tier is not None)
