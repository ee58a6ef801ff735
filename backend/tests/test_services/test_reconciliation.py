"""Tests for pulling gateway state into local subscription records."""

import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.clock import utcnow
from commerce.errors import GatewayUnavailableError, NotFoundError
from commerce.models.subscription import SubscriptionStatus
from commerce.services.reconciliation import reconcile_all, reconcile_subscription
from factories import create_subscription, create_user, stripe_subscription

GET_SUBSCRIPTION = "commerce.billing.stripe_client.get_subscription"


class TestReconcileSubscription:
    @pytest.mark.asyncio
    async def test_gateway_cancellation_is_applied(self, db_session: AsyncSession):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, gateway_subscription_id="sub_gone")
        await db_session.commit()

        with patch(GET_SUBSCRIPTION, new_callable=AsyncMock,
                   return_value=stripe_subscription("sub_gone", status="canceled")):
            report = await reconcile_subscription(db_session, sub.id)

        assert report.changed
        assert sub.status == SubscriptionStatus.CANCELED
        assert user.subscription_tier == "Free"

    @pytest.mark.asyncio
    async def test_missed_renewal_and_portal_changes(self, db_session: AsyncSession):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, gateway_subscription_id="sub_drift")
        await db_session.commit()
        new_end = sub.current_period_end + timedelta(days=30)
        gateway = stripe_subscription(
            "sub_drift",
            price_id="price_premium_monthly",
            period_start=sub.current_period_end,
            period_end=new_end,
            cancel_at_period_end=True,
        )

        with patch(GET_SUBSCRIPTION, new_callable=AsyncMock, return_value=gateway):
            report = await reconcile_subscription(db_session, sub.id)

        assert len(report.changes) == 3
        assert sub.current_period_end == new_end
        assert sub.cancel_at_period_end is True
        assert sub.plan_tier == "Premium"

    @pytest.mark.asyncio
    async def test_in_sync_record_reports_nothing(self, db_session: AsyncSession):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, gateway_subscription_id="sub_same")
        await db_session.commit()
        gateway = stripe_subscription(
            "sub_same", period_start=sub.current_period_start, period_end=sub.current_period_end
        )

        with patch(GET_SUBSCRIPTION, new_callable=AsyncMock, return_value=gateway):
            report = await reconcile_subscription(db_session, sub.id)

        assert not report.changed

    @pytest.mark.asyncio
    async def test_gateway_past_due(self, db_session: AsyncSession):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, gateway_subscription_id="sub_late")
        await db_session.commit()

        with patch(GET_SUBSCRIPTION, new_callable=AsyncMock,
                   return_value=stripe_subscription("sub_late", status="unpaid")):
            await reconcile_subscription(db_session, sub.id)

        assert sub.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_terminal_record_is_skipped(self, db_session: AsyncSession):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, status="canceled")
        await db_session.commit()

        with patch(GET_SUBSCRIPTION, new_callable=AsyncMock) as mock_get:
            report = await reconcile_subscription(db_session, sub.id)

        mock_get.assert_not_awaited()
        assert not report.changed

    @pytest.mark.asyncio
    async def test_expired_complimentary_grant_is_ended(self, db_session: AsyncSession):
        user = await create_user(db_session)
        sub = await create_subscription(
            db_session, user, complimentary=True, amount_cents=0,
            period_start=datetime(2019, 12, 1), period_end=datetime(2020, 1, 1),
        )
        await db_session.commit()

        with patch(GET_SUBSCRIPTION, new_callable=AsyncMock) as mock_get:
            report = await reconcile_subscription(db_session, sub.id)

        mock_get.assert_not_awaited()
        assert report.changes == ["complimentary grant expired"]
        assert sub.status == SubscriptionStatus.CANCELED
        assert user.subscription_tier == "Free"

    @pytest.mark.asyncio
    async def test_running_complimentary_grant_is_left_alone(self, db_session: AsyncSession):
        user = await create_user(db_session)
        sub = await create_subscription(
            db_session, user, complimentary=True, amount_cents=0,
            period_start=utcnow(), period_end=utcnow() + timedelta(days=30),
        )
        await db_session.commit()

        with patch(GET_SUBSCRIPTION, new_callable=AsyncMock) as mock_get:
            report = await reconcile_subscription(db_session, sub.id)

        mock_get.assert_not_awaited()
        assert not report.changed
        assert sub.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await reconcile_subscription(db_session, uuid.uuid4())


class TestReconcileAll:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, db_session: AsyncSession):
        healthy_user = await create_user(db_session)
        broken_user = await create_user(db_session)
        healthy = await create_subscription(db_session, healthy_user, gateway_subscription_id="sub_ok")
        broken = await create_subscription(db_session, broken_user, gateway_subscription_id="sub_down")
        await db_session.commit()
        healthy_id, broken_id = healthy.id, broken.id

        async def fake_get(subscription_id: str):
            if subscription_id == "sub_down":
                raise GatewayUnavailableError("down")
            return stripe_subscription(subscription_id, status="canceled")

        with patch(GET_SUBSCRIPTION, new=fake_get):
            reports = {r.subscription_id: r for r in await reconcile_all(db_session)}

        assert reports[broken_id].error
        assert reports[healthy_id].changed
        assert reports[healthy_id].error is None
