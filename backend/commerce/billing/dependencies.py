"""Plan gating dependencies: enforce feature access based on the resolved tier."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import fields

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.auth.dependencies import get_current_active_user
from commerce.billing.entitlements import Entitlement, EntitlementResolver
from commerce.billing.plans import PlanFeatures
from commerce.database import get_db
from commerce.models.user import User

logger = logging.getLogger(__name__)

_FEATURE_NAMES = {f.name for f in fields(PlanFeatures)}


async def get_entitlement(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
) -> Entitlement:
    """Resolve the current user's entitlement for this request."""
    return await EntitlementResolver(db).resolve(user.id)


def require_feature(name: str) -> Callable[..., Awaitable[Entitlement]]:
    """Build a dependency that raises 402 unless the user's plan enables ``name``.

    Boolean features must be true; numeric limits must be non-zero (``-1`` is
    unlimited)::

        @router.post("/tutor", dependencies=[Depends(require_feature("ai_tutor_access"))])
    """
    if name not in _FEATURE_NAMES:
        raise ValueError(f"Unknown plan feature: {name}")

    async def _check(entitlement: Entitlement = Depends(get_entitlement)) -> Entitlement:
        value = getattr(entitlement.features, name)
        if value is False or value == 0:
            logger.info("Feature %s denied on %s plan", name, entitlement.tier.value)
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "message": f"{name} is not included in the {entitlement.tier.value} plan. Upgrade to unlock it.",
                    "feature": name,
                    "plan": entitlement.tier.value,
                    "upgrade_url": "/api/v1/billing/checkout",
                },
            )
        return entitlement

    return _check
