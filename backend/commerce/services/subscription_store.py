"""Subscription store: lookups over the subscriptions table."""

import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.models.subscription import NON_TERMINAL_STATUSES, SubscriptionRecord
from commerce.models.user import User


async def get_live_subscription(db: AsyncSession, user_id: uuid.UUID) -> SubscriptionRecord | None:
    """The user's single non-terminal record, or None (meaning Free)."""
    result = await db.execute(
        select(SubscriptionRecord).where(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.status.in_(NON_TERMINAL_STATUSES),
        )
    )
    return result.scalar_one_or_none()


async def get_subscription_for_update(
    db: AsyncSession, subscription_id: uuid.UUID
) -> SubscriptionRecord | None:
    """Load a record with a row lock held until the surrounding transaction ends.

    ``populate_existing`` makes sure a record already in the identity map is
    refreshed from the locked row rather than served stale.
    """
    result = await db.execute(
        select(SubscriptionRecord)
        .where(SubscriptionRecord.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_gateway_id(
    db: AsyncSession, gateway_subscription_id: str
) -> SubscriptionRecord | None:
    """Look up a record by gateway subscription ID (used by webhooks)."""
    result = await db.execute(
        select(SubscriptionRecord).where(
            SubscriptionRecord.gateway_subscription_id == gateway_subscription_id
        )
    )
    return result.scalar_one_or_none()


async def list_subscriptions(
    db: AsyncSession,
    *,
    status: str | None = None,
    plan_tier: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[SubscriptionRecord], int]:
    """All records matching the filters, newest first, with the unpaged count."""
    conditions = []
    if status is not None:
        conditions.append(SubscriptionRecord.status == status)
    if plan_tier is not None:
        conditions.append(SubscriptionRecord.plan_tier == plan_tier)

    total = await db.scalar(select(func.count()).select_from(SubscriptionRecord).where(*conditions))
    result = await db.execute(
        select(SubscriptionRecord)
        .where(*conditions)
        .order_by(SubscriptionRecord.created_at.desc(), SubscriptionRecord.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)


async def list_live_subscriptions(db: AsyncSession) -> list[SubscriptionRecord]:
    result = await db.execute(
        select(SubscriptionRecord).where(SubscriptionRecord.status.in_(NON_TERMINAL_STATUSES))
    )
    return list(result.scalars().all())


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_gateway_customer(db: AsyncSession, gateway_customer_id: str) -> User | None:
    """Look up a user by gateway customer ID (used by webhooks)."""
    result = await db.execute(select(User).where(User.gateway_customer_id == gateway_customer_id))
    return result.scalar_one_or_none()
