"""Row builders and request helpers shared by the test modules."""

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from commerce.auth.jwt import create_access_token
from commerce.models.catalog import CatalogItem
from commerce.models.subscription import SubscriptionRecord
from commerce.models.user import User

NOW = datetime(2026, 3, 16, 12, 0, 0)

WEBHOOK_SECRET = "whsec_test_secret"

PRICE_IDS = {
    "stripe_price_pro_monthly": "price_pro_monthly",
    "stripe_price_pro_yearly": "price_pro_yearly",
    "stripe_price_premium_monthly": "price_premium_monthly",
    "stripe_price_premium_yearly": "price_premium_yearly",
}


async def create_user(
    db: AsyncSession,
    role: str = "learner",
    gateway_customer_id: str | None = None,
) -> User:
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"{role}-{unique}@test.com",
        name=f"Test {role.title()}",
        is_active=True,
        role=role,
        gateway_customer_id=gateway_customer_id,
    )
    db.add(user)
    await db.flush()
    return user


async def create_subscription(
    db: AsyncSession,
    user: User,
    plan_tier: str = "Pro",
    billing_period: str = "monthly",
    amount_cents: int = 2999,
    status: str = "active",
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    gateway_subscription_id: str | None = None,
    cancel_at_period_end: bool = False,
    complimentary: bool = False,
) -> SubscriptionRecord:
    """A complimentary record carries no gateway identifiers."""
    subscription = SubscriptionRecord(
        user_id=user.id,
        gateway_customer_id=user.gateway_customer_id,
        gateway_subscription_id=None if complimentary else gateway_subscription_id or f"sub_{uuid.uuid4().hex[:12]}",
        gateway_price_id=None if complimentary else f"price_{plan_tier.lower()}_{billing_period}",
        plan_tier=plan_tier,
        billing_period=billing_period,
        amount_cents=amount_cents,
        currency="USD",
        status=status,
        current_period_start=period_start or NOW - timedelta(days=15),
        current_period_end=period_end or NOW + timedelta(days=15),
        cancel_at_period_end=cancel_at_period_end,
    )
    db.add(subscription)
    user.subscription_tier = plan_tier if status != "canceled" else "Free"
    await db.flush()
    return subscription


async def create_item(
    db: AsyncSession,
    title: str = "Fundamentals of Nursing",
    price_cents: int = 1999,
    is_free: bool = False,
    is_premium_inclusive: bool = False,
) -> CatalogItem:
    item = CatalogItem(
        title=title,
        price_cents=price_cents,
        currency="USD",
        is_free=is_free,
        is_premium_inclusive=is_premium_inclusive,
    )
    db.add(item)
    await db.flush()
    return item


def auth_headers_for(user: User) -> dict[str, str]:
    token = create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


def ts(dt: datetime) -> int:
    """Naive UTC datetime -> Unix timestamp, as the gateway sends it."""
    return int((dt - datetime(1970, 1, 1)).total_seconds())


def stripe_subscription(
    sub_id: str,
    status: str = "active",
    price_id: str = "price_pro_monthly",
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    customer: str = "cus_test",
    cancel_at_period_end: bool = False,
) -> dict:
    """Gateway subscription body with periods on the item (API 2025-08-27+)."""
    start = period_start or NOW - timedelta(days=15)
    end = period_end or NOW + timedelta(days=15)
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {},
        "items": {
            "data": [
                {
                    "id": f"si_{sub_id[4:]}",
                    "price": {"id": price_id},
                    "current_period_start": ts(start),
                    "current_period_end": ts(end),
                }
            ]
        },
    }


def make_event(event_type: str, data_object: dict, event_id: str | None = None, created: datetime = NOW) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": ts(created),
        "data": {"object": data_object},
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way the gateway does."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_request(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
    payload = json.dumps(event).encode("utf-8")
    return payload, {"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"}
