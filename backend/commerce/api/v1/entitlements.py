"""Entitlement endpoints: resolved access for the authenticated user."""

import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.deps import get_current_active_user, get_db, get_entitlement
from commerce.billing.entitlements import Entitlement, EntitlementResolver
from commerce.models.user import User
from commerce.schemas.entitlements import EntitlementResponse, ItemAccessResponse

router = APIRouter(prefix="/api/v1/entitlements", tags=["entitlements"])


@router.get("", response_model=EntitlementResponse)
async def get_entitlements(
    entitlement: Entitlement = Depends(get_entitlement),
) -> EntitlementResponse:
    return EntitlementResponse(
        tier=entitlement.tier.value,
        is_paid=entitlement.is_paid,
        unlocked_item_ids=sorted(entitlement.unlocked_item_ids, key=str),
        features=asdict(entitlement.features),
    )


@router.get("/items/{item_id}", response_model=ItemAccessResponse)
async def check_item_access(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> ItemAccessResponse:
    """Whether the user may open this item right now."""
    has_access = await EntitlementResolver(db).has_access(current_user.id, item_id)
    return ItemAccessResponse(item_id=item_id, has_access=has_access)
