"""Gateway customer linkage for platform users."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.stripe_client import create_customer
from commerce.models.user import User

logger = logging.getLogger(__name__)


async def ensure_gateway_customer(db: AsyncSession, user: User) -> str:
    """Ensure the user has a gateway customer ID. Create one if missing."""
    if user.gateway_customer_id:
        return user.gateway_customer_id

    customer = await create_customer(
        email=user.email,
        name=user.name or user.email,
        user_id=str(user.id),
    )
    user.gateway_customer_id = customer.id
    await db.flush()
    logger.info("Linked gateway customer %s to user %s", customer.id, user.id)
    return customer.id
