"""Billing API endpoints: checkout, subscription lifecycle, portal and history."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.deps import get_current_active_user, get_db
from commerce.billing.plans import PLAN_DESCRIPTIONS, BillingPeriod, PlanTier, get_features, get_price_cents
from commerce.config import settings
from commerce.models.user import User
from commerce.schemas.billing import (
    BillingHistoryResponse,
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmCheckoutRequest,
    PlanResponse,
    PlansListResponse,
    PortalRequest,
    PortalResponse,
    ProrationResponse,
    SubscriptionSummaryResponse,
    TransactionResponse,
)
from commerce.services import subscription_service
from commerce.services.subscription_service import SubscriptionSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _summary_response(summary: SubscriptionSummary) -> SubscriptionSummaryResponse:
    proration = None
    if summary.proration is not None:
        proration = ProrationResponse.model_validate(summary.proration)
    return SubscriptionSummaryResponse(
        plan_tier=summary.plan_tier,
        status=summary.status,
        billing_period=summary.billing_period,
        current_period_end=summary.current_period_end,
        cancel_at_period_end=summary.cancel_at_period_end,
        days_remaining=summary.days_remaining,
        pending=summary.pending,
        outcome=summary.outcome.value if summary.outcome else None,
        reason=summary.reason,
        proration=proration,
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans (public, no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                tier=tier,
                description=PLAN_DESCRIPTIONS[tier],
                price_monthly_cents=get_price_cents(tier, BillingPeriod.MONTHLY),
                price_yearly_cents=get_price_cents(tier, BillingPeriod.YEARLY),
                features=asdict(get_features(tier)),
            )
            for tier in PlanTier
        ]
    )


@router.get("/subscription", response_model=SubscriptionSummaryResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionSummaryResponse:
    """Current plan and billing state for the authenticated user."""
    return _summary_response(await subscription_service.get_summary(db, current_user))


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CheckoutResponse:
    """Create a checkout session for a new subscription."""
    success_url = body.success_url or f"{settings.frontend_url}/billing?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = body.cancel_url or f"{settings.frontend_url}/pricing"
    session = await subscription_service.create_checkout_session(
        db,
        current_user,
        body.plan_tier,
        body.billing_period,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    return CheckoutResponse(checkout_url=session.url, session_id=session.session_id)


@router.post("/checkout/confirm", response_model=SubscriptionSummaryResponse)
async def confirm_checkout(
    body: ConfirmCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionSummaryResponse:
    """Confirm a completed checkout from the success redirect."""
    summary = await subscription_service.confirm_checkout(db, current_user, body.session_id)
    return _summary_response(summary)


@router.post("/cancel", response_model=SubscriptionSummaryResponse)
async def cancel_subscription(
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionSummaryResponse:
    summary = await subscription_service.cancel(db, current_user, immediate=body.immediate)
    return _summary_response(summary)


@router.post("/reactivate", response_model=SubscriptionSummaryResponse)
async def reactivate_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionSummaryResponse:
    """Undo a cancellation scheduled for the end of the period."""
    return _summary_response(await subscription_service.reactivate(db, current_user))


@router.post("/change-plan", response_model=SubscriptionSummaryResponse)
async def change_plan(
    body: ChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionSummaryResponse:
    summary = await subscription_service.change_plan(db, current_user, body.plan_tier, body.billing_period)
    return _summary_response(summary)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    body: PortalRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PortalResponse:
    """Create a customer portal session for payment method and invoice management."""
    return_url = body.return_url or f"{settings.frontend_url}/billing"
    url = await subscription_service.create_portal_session(db, current_user, return_url)
    return PortalResponse(portal_url=url)


@router.get("/history", response_model=BillingHistoryResponse)
async def billing_history(
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> BillingHistoryResponse:
    """Most recent payments, failures and refunds for the user."""
    entries = await subscription_service.payment_history(db, current_user.id, limit=min(max(limit, 1), 100))
    return BillingHistoryResponse(transactions=[TransactionResponse.model_validate(e) for e in entries])
