"""Admin endpoints: revenue, refunds, subscription and ledger listings, grants and reconciliation."""

import logging
import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.deps import get_db, require_admin
from commerce.billing.plans import PlanTier
from commerce.models.ledger import TransactionStatus
from commerce.models.subscription import SubscriptionStatus
from commerce.models.user import User
from commerce.schemas.admin import (
    AdminSubscriptionResponse,
    GrantSubscriptionRequest,
    LedgerTotalsResponse,
    ReconcileResponse,
    RefundRequest,
    RefundResponse,
    RevenueResponse,
    SubscriptionPageResponse,
    SubscriptionStatsResponse,
    TransactionPageResponse,
)
from commerce.schemas.billing import TransactionResponse
from commerce.services import admin_service, reconciliation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/revenue", response_model=RevenueResponse)
async def get_revenue(
    start: datetime | None = None,
    end: datetime | None = None,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> RevenueResponse:
    """MRR, ARR, churn and ledger totals over ``[start, end)`` (default: last 30 days)."""
    report = await admin_service.revenue_report(db, start, end)
    totals = report.totals
    return RevenueResponse(
        start=report.start,
        end=report.end,
        mrr_cents=report.mrr_cents,
        arr_cents=report.arr_cents,
        mrr_by_tier=report.mrr_by_tier,
        churn_rate=report.churn_rate,
        totals=LedgerTotalsResponse(
            gross_cents=totals.gross_cents,
            refunded_cents=totals.refunded_cents,
            net_cents=totals.net_cents,
            failed_count=totals.failed_count,
            by_purpose=totals.by_purpose,
        ),
    )


@router.post("/transactions/{transaction_id}/refund", response_model=RefundResponse)
async def refund_transaction(
    transaction_id: uuid.UUID,
    body: RefundRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> RefundResponse:
    logger.info("Admin %s refunding %s of %s", admin.id, body.amount_cents, transaction_id)
    outcome = await admin_service.refund_transaction(
        db,
        transaction_id,
        body.amount_cents,
        reason=body.reason,
        idempotency_key=body.idempotency_key,
    )
    return RefundResponse(
        refund=TransactionResponse.model_validate(outcome.entry), gateway_refunded=outcome.gateway_refunded
    )


@router.post("/subscriptions/{subscription_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> ReconcileResponse:
    """Pull gateway state for one subscription and apply any drift."""
    report = await reconciliation.reconcile_subscription(db, subscription_id)
    return ReconcileResponse(subscription_id=report.subscription_id, changes=report.changes, error=report.error)


@router.get("/subscriptions", response_model=SubscriptionPageResponse)
async def list_subscriptions(
    status_filter: SubscriptionStatus | None = Query(None, alias="status"),
    plan_tier: PlanTier | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> SubscriptionPageResponse:
    result = await admin_service.list_subscriptions(
        db,
        status=status_filter.value if status_filter else None,
        plan_tier=plan_tier.value if plan_tier else None,
        page=page,
        limit=limit,
    )
    return SubscriptionPageResponse(
        subscriptions=[AdminSubscriptionResponse.model_validate(s) for s in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )


@router.get("/subscriptions/stats", response_model=SubscriptionStatsResponse)
async def get_subscription_stats(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> SubscriptionStatsResponse:
    stats = await admin_service.subscription_stats(db)
    return SubscriptionStatsResponse(
        total=stats.total,
        by_status=stats.by_status,
        active_by_tier=stats.active_by_tier,
        total_revenue_cents=stats.total_revenue_cents,
        month_to_date_revenue_cents=stats.month_to_date_revenue_cents,
    )


@router.post(
    "/subscriptions/grant",
    response_model=AdminSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_subscription(
    body: GrantSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> AdminSubscriptionResponse:
    """Complimentary paid tier; 409 if the user already has a live subscription."""
    logger.info(
        "Admin %s granting %s for %d days to %s", admin.id, body.plan_tier.value, body.duration_days, body.user_id
    )
    subscription = await admin_service.grant_subscription(db, body.user_id, body.plan_tier, body.duration_days)
    return AdminSubscriptionResponse.model_validate(subscription)


@router.get("/transactions", response_model=TransactionPageResponse)
async def list_transactions(
    user_id: uuid.UUID | None = Query(None),
    status_filter: TransactionStatus | None = Query(None, alias="status"),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    min_amount_cents: int | None = Query(None),
    max_amount_cents: int | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> TransactionPageResponse:
    """Ledger entries matching every given filter, newest first. Date bounds are inclusive."""
    result = await admin_service.list_transactions(
        db,
        user_id=user_id,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
        page=page,
        limit=limit,
    )
    return TransactionPageResponse(
        transactions=[TransactionResponse.model_validate(t) for t in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )
