"""Pydantic v2 response schemas for entitlement endpoints."""

import uuid

from pydantic import BaseModel


class EntitlementResponse(BaseModel):
    tier: str
    is_paid: bool
    unlocked_item_ids: list[uuid.UUID]
    features: dict[str, int | bool]


class ItemAccessResponse(BaseModel):
    item_id: uuid.UUID
    has_access: bool
