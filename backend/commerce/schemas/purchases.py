"""Pydantic v2 request/response schemas for one-off purchases."""

import uuid
from datetime import datetime

from pydantic import BaseModel


class PurchaseCheckoutRequest(BaseModel):
    item_id: uuid.UUID
    success_url: str | None = None
    cancel_url: str | None = None


class PurchaseCheckoutResponse(BaseModel):
    """``granted`` is true when a free item was unlocked without checkout."""

    checkout_url: str
    session_id: str | None = None
    granted: bool = False


class PurchaseResponse(BaseModel):
    item_id: uuid.UUID
    title: str
    purchase_price_cents: int
    currency: str
    purchased_at: datetime


class PurchaseListResponse(BaseModel):
    purchases: list[PurchaseResponse]
