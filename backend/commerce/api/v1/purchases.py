"""One-off purchase endpoints (books)."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.deps import get_current_active_user, get_db
from commerce.config import settings
from commerce.models.user import User
from commerce.schemas.purchases import (
    PurchaseCheckoutRequest,
    PurchaseCheckoutResponse,
    PurchaseListResponse,
    PurchaseResponse,
)
from commerce.services import purchase_service

router = APIRouter(prefix="/api/v1/purchases", tags=["purchases"])


@router.post("/checkout", response_model=PurchaseCheckoutResponse)
async def create_purchase_checkout(
    body: PurchaseCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PurchaseCheckoutResponse:
    """Start a one-time checkout; free items are unlocked immediately."""
    result = await purchase_service.create_book_checkout(
        db,
        current_user,
        body.item_id,
        success_url=body.success_url or f"{settings.frontend_url}/books/purchase-success",
        cancel_url=body.cancel_url or f"{settings.frontend_url}/books",
    )
    return PurchaseCheckoutResponse(checkout_url=result.url, session_id=result.session_id, granted=result.granted)


@router.get("", response_model=PurchaseListResponse)
async def list_purchases(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PurchaseListResponse:
    rows = await purchase_service.list_purchases(db, current_user.id)
    return PurchaseListResponse(
        purchases=[
            PurchaseResponse(
                item_id=item.id,
                title=item.title,
                purchase_price_cents=purchase.purchase_price_cents,
                currency=purchase.currency,
                purchased_at=purchase.purchased_at,
            )
            for purchase, item in rows
        ]
    )
