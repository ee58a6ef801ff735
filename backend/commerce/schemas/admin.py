"""Pydantic v2 schemas for admin endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from commerce.billing.plans import PlanTier
from commerce.schemas.billing import TransactionResponse


class LedgerTotalsResponse(BaseModel):
    gross_cents: int
    refunded_cents: int
    net_cents: int
    failed_count: int
    by_purpose: dict[str, int]


class RevenueResponse(BaseModel):
    start: datetime
    end: datetime
    mrr_cents: int
    arr_cents: int
    mrr_by_tier: dict[str, int]
    churn_rate: float
    totals: LedgerTotalsResponse


class RefundRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)
    reason: str | None = Field(None, max_length=500)
    idempotency_key: str | None = Field(None, max_length=255)


class RefundResponse(BaseModel):
    refund: TransactionResponse
    gateway_refunded: bool


class ReconcileResponse(BaseModel):
    subscription_id: uuid.UUID
    changes: list[str]
    error: str | None = None


class AdminSubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    plan_tier: str
    billing_period: str
    status: str
    amount_cents: int
    currency: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    gateway_subscription_id: str | None


class SubscriptionPageResponse(BaseModel):
    subscriptions: list[AdminSubscriptionResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class SubscriptionStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    active_by_tier: dict[str, int]
    total_revenue_cents: int
    month_to_date_revenue_cents: int


class GrantSubscriptionRequest(BaseModel):
    """Complimentary paid tier for a fixed number of days; nothing is billed."""

    user_id: uuid.UUID
    plan_tier: PlanTier
    duration_days: int = Field(..., gt=0, le=3650)


class TransactionPageResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    page: int
    limit: int
    total_pages: int
