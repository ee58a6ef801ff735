"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from commerce.billing.plans import BillingPeriod, PlanTier

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to create a subscription checkout session."""

    plan_tier: PlanTier
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    success_url: str | None = None
    cancel_url: str | None = None


class ConfirmCheckoutRequest(BaseModel):
    """Session id handed back on the checkout success redirect."""

    session_id: str = Field(..., min_length=1, max_length=255)


class CancelRequest(BaseModel):
    immediate: bool = False


class ChangePlanRequest(BaseModel):
    """Switch tier and/or cadence. ``Free`` schedules a cancellation."""

    plan_tier: PlanTier
    billing_period: BillingPeriod = BillingPeriod.MONTHLY


class PortalRequest(BaseModel):
    """Request to create a customer portal session."""

    return_url: str | None = None


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    tier: PlanTier
    description: str
    price_monthly_cents: int
    price_yearly_cents: int
    features: dict[str, int | bool]


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class CheckoutResponse(BaseModel):
    """Checkout session URL returned to the frontend."""

    checkout_url: str
    session_id: str


class ProrationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    unused_credit_cents: int
    new_charge_cents: int
    net_due_cents: int
    resets_period: bool


class SubscriptionSummaryResponse(BaseModel):
    """Subscription state as the user sees it. ``days_remaining`` is -1 on Free."""

    model_config = ConfigDict(from_attributes=True)

    plan_tier: str
    status: str | None
    billing_period: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    days_remaining: int
    pending: bool = False
    outcome: str | None = None
    reason: str | None = None
    proration: ProrationResponse | None = None


class PortalResponse(BaseModel):
    """Customer portal URL returned to the frontend."""

    portal_url: str


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    amount_cents: int
    currency: str
    status: str
    purpose: str
    occurred_at: datetime
    description: str | None
    refund_of_id: uuid.UUID | None


class BillingHistoryResponse(BaseModel):
    transactions: list[TransactionResponse]
