"""Tests for the billing endpoints."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient

from commerce.errors import GatewayUnavailableError
from commerce.models.subscription import SubscriptionRecord

pytestmark = pytest.mark.asyncio

GATEWAY = "commerce.billing.stripe_client"


class TestPlans:
    async def test_list_plans_is_public(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/billing/plans")
        assert response.status_code == 200
        plans = {p["tier"]: p for p in response.json()["plans"]}
        assert set(plans) == {"Free", "Pro", "Premium"}
        assert plans["Pro"]["price_monthly_cents"] == 2999
        assert plans["Premium"]["price_yearly_cents"] == 49999
        assert plans["Free"]["features"]["ai_tutor_access"] is False


class TestSubscription:
    async def test_requires_auth(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/billing/subscription")
        assert response.status_code in (401, 403)

    async def test_free_user(self, client: AsyncClient, auth_headers: dict) -> None:
        response = await client.get("/api/v1/billing/subscription", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["plan_tier"] == "Free"
        assert data["status"] is None
        assert data["days_remaining"] == -1

    async def test_pro_user(
        self, client: AsyncClient, auth_headers: dict, pro_subscription: SubscriptionRecord
    ) -> None:
        response = await client.get("/api/v1/billing/subscription", headers=auth_headers)
        data = response.json()
        assert data["plan_tier"] == "Pro"
        assert data["status"] == "active"
        assert data["billing_period"] == "monthly"


class TestCheckout:
    async def test_checkout_returns_url(self, client: AsyncClient, auth_headers: dict) -> None:
        session = MagicMock(id="cs_api", url="https://checkout.stripe.com/c/cs_api")
        with patch(f"{GATEWAY}.create_checkout_session", new_callable=AsyncMock, return_value=session):
            response = await client.post(
                "/api/v1/billing/checkout",
                json={"plan_tier": "Pro", "billing_period": "monthly"},
                headers=auth_headers,
            )
        assert response.status_code == 200
        assert response.json() == {"checkout_url": "https://checkout.stripe.com/c/cs_api", "session_id": "cs_api"}

    async def test_unknown_tier_is_422(self, client: AsyncClient, auth_headers: dict) -> None:
        response = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_tier": "Platinum", "billing_period": "monthly"},
            headers=auth_headers,
        )
        assert response.status_code == 422

    async def test_already_subscribed_is_409(
        self, client: AsyncClient, auth_headers: dict, pro_subscription: SubscriptionRecord
    ) -> None:
        response = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_tier": "Premium", "billing_period": "monthly"},
            headers=auth_headers,
        )
        assert response.status_code == 409
        assert response.json()["code"] == "conflict"

    async def test_gateway_down_is_503(self, client: AsyncClient, auth_headers: dict) -> None:
        with patch(f"{GATEWAY}.create_checkout_session", new_callable=AsyncMock,
                   side_effect=GatewayUnavailableError("down")):
            response = await client.post(
                "/api/v1/billing/checkout",
                json={"plan_tier": "Pro", "billing_period": "yearly"},
                headers=auth_headers,
            )
        assert response.status_code == 503
        assert response.json()["code"] == "gateway_unavailable"


class TestLifecycle:
    async def test_cancel_and_reactivate(
        self, client: AsyncClient, auth_headers: dict, pro_subscription: SubscriptionRecord
    ) -> None:
        with patch(f"{GATEWAY}.set_cancel_at_period_end", new_callable=AsyncMock):
            canceled = await client.post("/api/v1/billing/cancel", json={}, headers=auth_headers)
            restored = await client.post("/api/v1/billing/reactivate", headers=auth_headers)

        assert canceled.status_code == 200
        assert canceled.json()["cancel_at_period_end"] is True
        assert canceled.json()["outcome"] == "applied"
        assert restored.json()["cancel_at_period_end"] is False

    async def test_cancel_without_subscription_is_404(self, client: AsyncClient, auth_headers: dict) -> None:
        response = await client.post("/api/v1/billing/cancel", json={}, headers=auth_headers)
        assert response.status_code == 404

    async def test_portal_without_customer_is_400(self, client: AsyncClient, admin_headers: dict) -> None:
        response = await client.post("/api/v1/billing/portal", json={}, headers=admin_headers)
        assert response.status_code == 400

    async def test_history_empty(self, client: AsyncClient, auth_headers: dict) -> None:
        response = await client.get("/api/v1/billing/history", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"transactions": []}
