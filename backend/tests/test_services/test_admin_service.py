"""Tests for admin refunds, listings, grants and revenue reporting."""

import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.clock import utcnow
from commerce.billing.ledger import PaymentLedger
from commerce.billing.plans import PlanTier
from commerce.errors import (
    ConflictError,
    GatewayRejectedError,
    GatewayUnavailableError,
    LedgerIntegrityError,
    NotFoundError,
    ValidationError,
)
from commerce.models.ledger import PaymentTransaction, TransactionPurpose, TransactionStatus
from commerce.models.user import User
from commerce.services import admin_service
from factories import NOW, create_subscription, create_user

CREATE_REFUND = "commerce.billing.stripe_client.create_refund"


async def _charge(
    db: AsyncSession,
    user: User,
    amount: int = 2999,
    reference: str | None = "pi_charge",
    status: TransactionStatus = TransactionStatus.SUCCEEDED,
    occurred_at: datetime | None = None,
) -> PaymentTransaction:
    result = await PaymentLedger(db).append(
        idempotency_key=f"invoice:{reference}",
        user_id=user.id,
        amount_cents=amount,
        currency="USD",
        status=status,
        purpose=TransactionPurpose.SUBSCRIPTION,
        gateway_reference=reference,
        occurred_at=occurred_at,
    )
    await db.commit()
    return result.entry


async def _refund_rows(db: AsyncSession, charge_id: uuid.UUID) -> int:
    return await db.scalar(
        select(func.count()).select_from(PaymentTransaction).where(PaymentTransaction.refund_of_id == charge_id)
    )


class TestRefundTransaction:
    @pytest.mark.asyncio
    async def test_refunds_payment_intent_then_books_refund(self, db_session: AsyncSession, test_user: User):
        charge = await _charge(db_session, test_user)
        booked_when_called = []

        async def fake_refund(*args, **kwargs):
            booked_when_called.append(await _refund_rows(db_session, charge.id))

        with patch(CREATE_REFUND, new=AsyncMock(side_effect=fake_refund)) as mock_refund:
            outcome = await admin_service.refund_transaction(db_session, charge.id, 1000, reason="requested")

        assert booked_when_called == [0]
        assert outcome.gateway_refunded is True
        assert outcome.entry.amount_cents == -1000
        assert outcome.entry.refund_of_id == charge.id
        mock_refund.assert_awaited_once_with("pi_charge", 1000, idempotency_key=outcome.entry.idempotency_key)

    @pytest.mark.asyncio
    async def test_over_refund_never_reaches_gateway(self, db_session: AsyncSession, test_user: User):
        charge = await _charge(db_session, test_user)
        charge_id = charge.id
        with patch(CREATE_REFUND, new_callable=AsyncMock) as mock_refund:
            await admin_service.refund_transaction(db_session, charge_id, 2000)
            with pytest.raises(LedgerIntegrityError):
                await admin_service.refund_transaction(db_session, charge_id, 1000)

        assert mock_refund.await_count == 1

    @pytest.mark.asyncio
    async def test_gateway_rejection_books_nothing(self, db_session: AsyncSession, test_user: User):
        charge = await _charge(db_session, test_user)
        with patch(CREATE_REFUND, new_callable=AsyncMock, side_effect=GatewayRejectedError("charge disputed")):
            with pytest.raises(GatewayRejectedError):
                await admin_service.refund_transaction(db_session, charge.id, 500)

        ledger = PaymentLedger(db_session)
        assert await _refund_rows(db_session, charge.id) == 0
        assert await ledger.refundable_balance(await ledger.get(charge.id)) == 2999

    @pytest.mark.asyncio
    async def test_gateway_down_books_nothing_and_retry_succeeds(self, db_session: AsyncSession, test_user: User):
        charge = await _charge(db_session, test_user)
        with patch(CREATE_REFUND, new_callable=AsyncMock, side_effect=GatewayUnavailableError("down")):
            with pytest.raises(GatewayUnavailableError):
                await admin_service.refund_transaction(db_session, charge.id, 500, idempotency_key="ticket-7")
        assert await _refund_rows(db_session, charge.id) == 0

        with patch(CREATE_REFUND, new_callable=AsyncMock) as mock_refund:
            outcome = await admin_service.refund_transaction(db_session, charge.id, 500, idempotency_key="ticket-7")

        mock_refund.assert_awaited_once_with("pi_charge", 500, idempotency_key="ticket-7")
        assert outcome.entry.idempotency_key == "ticket-7"
        assert await _refund_rows(db_session, charge.id) == 1

    @pytest.mark.asyncio
    async def test_same_key_returns_same_refund(self, db_session: AsyncSession, test_user: User):
        charge = await _charge(db_session, test_user)
        with patch(CREATE_REFUND, new_callable=AsyncMock) as mock_refund:
            first = await admin_service.refund_transaction(db_session, charge.id, 500, idempotency_key="ticket-42")
            second = await admin_service.refund_transaction(db_session, charge.id, 500, idempotency_key="ticket-42")

        assert second.entry.id == first.entry.id
        assert mock_refund.await_count == 1

    @pytest.mark.asyncio
    async def test_checkout_reference_is_booked_only(self, db_session: AsyncSession, test_user: User):
        charge = await _charge(db_session, test_user, reference="in_manual")
        with patch(CREATE_REFUND, new_callable=AsyncMock) as mock_refund:
            outcome = await admin_service.refund_transaction(db_session, charge.id, 100)

        mock_refund.assert_not_awaited()
        assert outcome.gateway_refunded is False
        assert await _refund_rows(db_session, charge.id) == 1


class TestRevenueReport:
    @pytest.mark.asyncio
    async def test_default_window_is_thirty_days(self, db_session: AsyncSession, test_user: User):
        await create_subscription(db_session, test_user)
        await _charge(db_session, test_user)

        report = await admin_service.revenue_report(db_session)

        assert report.end - report.start == timedelta(days=30)
        assert report.end <= utcnow()
        assert report.mrr_cents == 2999
        assert report.arr_cents == 2999 * 12
        assert report.totals.gross_cents == 2999


class TestSubscriptionStats:
    @pytest.mark.asyncio
    async def test_counts_and_revenue(self, db_session: AsyncSession):
        pro, premium, late, gone = [await create_user(db_session) for _ in range(4)]
        await create_subscription(db_session, pro)
        await create_subscription(db_session, premium, plan_tier="Premium", amount_cents=4999)
        await create_subscription(db_session, late, plan_tier="Premium", status="past_due")
        await create_subscription(db_session, gone, status="canceled")
        await _charge(db_session, pro, amount=2999, reference="pi_march", occurred_at=NOW - timedelta(days=1))
        await _charge(db_session, premium, amount=4999, reference="pi_feb", occurred_at=datetime(2026, 2, 10))
        await _charge(
            db_session, late, amount=4999, reference="pi_declined",
            status=TransactionStatus.FAILED, occurred_at=NOW,
        )

        stats = await admin_service.subscription_stats(db_session, now=NOW)

        assert stats.total == 4
        assert stats.by_status == {"active": 2, "trialing": 0, "past_due": 1, "canceled": 1}
        assert stats.active_by_tier == {"Pro": 1, "Premium": 1}
        assert stats.total_revenue_cents == 2999 + 4999
        assert stats.month_to_date_revenue_cents == 2999

    @pytest.mark.asyncio
    async def test_empty_database(self, db_session: AsyncSession):
        stats = await admin_service.subscription_stats(db_session, now=NOW)

        assert stats.total == 0
        assert stats.active_by_tier == {"Pro": 0, "Premium": 0}
        assert stats.total_revenue_cents == 0


class TestListSubscriptions:
    @pytest.mark.asyncio
    async def test_filters_and_pages(self, db_session: AsyncSession):
        for _ in range(3):
            await create_subscription(db_session, await create_user(db_session))
        await create_subscription(db_session, await create_user(db_session), plan_tier="Premium")
        await create_subscription(db_session, await create_user(db_session), status="canceled")
        await db_session.commit()

        active_pro = await admin_service.list_subscriptions(db_session, status="active", plan_tier="Pro", limit=2)
        assert active_pro.total == 3
        assert len(active_pro.items) == 2
        assert active_pro.total_pages == 2

        second_page = await admin_service.list_subscriptions(
            db_session, status="active", plan_tier="Pro", page=2, limit=2
        )
        assert len(second_page.items) == 1
        assert {s.id for s in second_page.items}.isdisjoint({s.id for s in active_pro.items})

        everything = await admin_service.list_subscriptions(db_session)
        assert everything.total == 5


class TestGrantSubscription:
    @pytest.mark.asyncio
    async def test_grant_creates_unbilled_record(self, db_session: AsyncSession, test_user: User):
        subscription = await admin_service.grant_subscription(db_session, test_user.id, PlanTier.PREMIUM, 30)

        assert subscription.status == "active"
        assert subscription.plan_tier == "Premium"
        assert subscription.amount_cents == 0
        assert subscription.gateway_subscription_id is None
        assert subscription.gateway_price_id is None
        assert subscription.current_period_end - subscription.current_period_start == timedelta(days=30)
        assert test_user.subscription_tier == "Premium"

    @pytest.mark.asyncio
    async def test_grant_over_live_subscription_conflicts(self, db_session: AsyncSession, test_user: User):
        await create_subscription(db_session, test_user)
        await db_session.commit()

        with pytest.raises(ConflictError):
            await admin_service.grant_subscription(db_session, test_user.id, PlanTier.PREMIUM, 30)

    @pytest.mark.asyncio
    async def test_free_tier_cannot_be_granted(self, db_session: AsyncSession, test_user: User):
        with pytest.raises(ValidationError):
            await admin_service.grant_subscription(db_session, test_user.id, PlanTier.FREE, 30)

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await admin_service.grant_subscription(db_session, uuid.uuid4(), PlanTier.PRO, 30)


class TestListTransactions:
    @pytest.mark.asyncio
    async def test_filters(self, db_session: AsyncSession):
        alice, bob = await create_user(db_session), await create_user(db_session)
        await _charge(db_session, alice, amount=999, reference="pi_a1", occurred_at=NOW - timedelta(days=10))
        await _charge(db_session, alice, amount=4999, reference="pi_a2", occurred_at=NOW - timedelta(days=2))
        await _charge(
            db_session, alice, amount=4999, reference="pi_a3",
            status=TransactionStatus.FAILED, occurred_at=NOW - timedelta(days=1),
        )
        await _charge(db_session, bob, amount=2999, reference="pi_b1", occurred_at=NOW - timedelta(days=2))

        by_user = await admin_service.list_transactions(db_session, user_id=alice.id)
        assert by_user.total == 3
        assert [t.gateway_reference for t in by_user.items] == ["pi_a3", "pi_a2", "pi_a1"]

        succeeded = await admin_service.list_transactions(
            db_session, user_id=alice.id, status=TransactionStatus.SUCCEEDED
        )
        assert {t.gateway_reference for t in succeeded.items} == {"pi_a1", "pi_a2"}

        window = await admin_service.list_transactions(
            db_session, date_from=NOW - timedelta(days=2), date_to=NOW - timedelta(days=1)
        )
        assert {t.gateway_reference for t in window.items} == {"pi_a2", "pi_a3", "pi_b1"}

        mid_range = await admin_service.list_transactions(db_session, min_amount_cents=1000, max_amount_cents=3000)
        assert [t.gateway_reference for t in mid_range.items] == ["pi_b1"]

    @pytest.mark.asyncio
    async def test_pagination(self, db_session: AsyncSession, test_user: User):
        for day in range(5):
            await _charge(db_session, test_user, reference=f"pi_{day}", occurred_at=NOW - timedelta(days=day))

        page = await admin_service.list_transactions(db_session, page=2, limit=2)

        assert page.total == 5
        assert page.total_pages == 3
        assert [t.gateway_reference for t in page.items] == ["pi_2", "pi_3"]
