"""Gateway webhook processing: dedup, dispatch and apply each event exactly once.

An event's side effects and its ``processed_webhook_events`` row commit in the
same transaction. A redelivered event therefore either finds the row (and is
acknowledged without effect) or finds nothing at all, because the earlier
attempt rolled back as a whole.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.clock import utcnow
from commerce.billing.events import (
    CheckoutSnapshot,
    EventKind,
    GatewayEvent,
    InvoiceSnapshot,
    SubscriptionSnapshot,
    subscription_snapshot,
)
from commerce.billing.ledger import PaymentLedger
from commerce.billing.outcomes import Outcome, TransitionResult
from commerce.billing.plans import BillingPeriod, PlanTier, get_plan_by_price_id
from commerce.billing.state_machine import GatewayIds, SubscriptionStateMachine
from commerce.billing.stripe_client import get_subscription
from commerce.errors import ValidationError
from commerce.models.ledger import TransactionPurpose, TransactionStatus
from commerce.models.subscription import SubscriptionRecord, SubscriptionStatus
from commerce.models.webhook_event import ProcessedWebhookEvent
from commerce.services.purchase_service import grant_item_access
from commerce.services.subscription_store import get_subscription_by_gateway_id, get_user_by_gateway_customer

logger = logging.getLogger(__name__)

_RENEWING = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}
_DELINQUENT = {SubscriptionStatus.PAST_DUE.value, "unpaid"}
_ENDED = {SubscriptionStatus.CANCELED.value, "incomplete_expired"}

_MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    kind: EventKind
    outcome: Outcome
    reason: str | None = None
    duplicate: bool = False


def _parse_uuid(value: str | None, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"Checkout metadata has an invalid {field}", value=value) from e


def _checkout_plan(
    metadata: Mapping[str, str], live: SubscriptionSnapshot | None
) -> tuple[PlanTier, BillingPeriod]:
    """The price on the live subscription wins; checkout metadata is the fallback."""
    if live is not None and live.price_id:
        plan = get_plan_by_price_id(live.price_id)
        if plan is not None:
            return plan
    try:
        return PlanTier(metadata.get("plan_tier")), BillingPeriod(metadata.get("billing_period"))
    except ValueError as e:
        raise ValidationError("Checkout metadata does not name a known plan", metadata=dict(metadata)) from e


async def confirm_subscription_checkout(
    machine: SubscriptionStateMachine,
    checkout: CheckoutSnapshot,
    live: SubscriptionSnapshot | None,
) -> TransitionResult:
    """Create the local record for a completed subscription checkout.

    Shared by the webhook and the synchronous success-redirect path.
    """
    if live is None:
        return TransitionResult(outcome=Outcome.IGNORED, reason="checkout has no gateway subscription")
    if live.status in _ENDED:
        return TransitionResult(outcome=Outcome.IGNORED, reason=f"gateway subscription already {live.status}")

    user_id = _parse_uuid(checkout.metadata.get("user_id"), "user_id")
    tier, period = _checkout_plan(checkout.metadata, live)
    status = SubscriptionStatus.TRIALING if live.status == "trialing" else SubscriptionStatus.ACTIVE
    return await machine.create_from_checkout(
        user_id=user_id,
        plan_tier=tier,
        billing_period=period,
        gateway_ids=GatewayIds(
            customer_id=live.customer_id or checkout.customer_id,
            subscription_id=live.gateway_subscription_id,
            price_id=live.price_id,
        ),
        period_start=live.period_start,
        period_end=live.period_end,
        status=status,
        currency=checkout.currency,
    )


class WebhookEventProcessor:
    """Applies verified gateway events against one database session."""

    def __init__(self, db: AsyncSession, now: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.machine = SubscriptionStateMachine(db, now)
        self.ledger = PaymentLedger(db)
        self._handlers: dict[EventKind, Callable[[GatewayEvent], Awaitable[TransitionResult]]] = {
            EventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            EventKind.INVOICE_PAID: self._on_invoice_paid,
            EventKind.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
            EventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            EventKind.UNSUPPORTED: self._on_unsupported,
        }

    @property
    def handled_kinds(self) -> frozenset[EventKind]:
        return frozenset(self._handlers)

    async def enrich(self, event: GatewayEvent) -> GatewayEvent:
        """Fetch live gateway state the handler needs. Runs outside any transaction."""
        payload = event.payload
        if (
            event.kind is EventKind.CHECKOUT_COMPLETED
            and isinstance(payload, CheckoutSnapshot)
            and payload.mode == "subscription"
            and payload.gateway_subscription_id
        ):
            stripe_sub = await get_subscription(payload.gateway_subscription_id)
            return replace(event, subscription=subscription_snapshot(stripe_sub))
        return event

    async def is_processed(self, event_id: str) -> bool:
        return await self.db.get(ProcessedWebhookEvent, event_id) is not None

    async def process(self, event: GatewayEvent) -> WebhookResult:
        """Apply one event and commit. Duplicates are acknowledged and skipped.

        A unique-key collision means a concurrent writer got there first: the
        same event (dedup row) or a sibling event for the same invoice (ledger
        key). Either way the attempt is rolled back and, unless the event is
        now recorded, run once more against the committed state.
        """
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                return await self._process_once(event)
            except IntegrityError:
                await self.db.rollback()
                if await self.is_processed(event.event_id):
                    logger.info("Webhook event %s committed concurrently, skipping", event.event_id)
                    return self._duplicate(event)
                if attempt == _MAX_ATTEMPTS:
                    raise
                logger.info("Webhook event %s collided with a concurrent write, retrying", event.event_id)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _process_once(self, event: GatewayEvent) -> WebhookResult:
        if await self.is_processed(event.event_id):
            logger.info("Webhook event %s (%s) already processed, skipping", event.event_id, event.type)
            return self._duplicate(event)

        logger.info("Processing webhook event %s (%s)", event.event_id, event.type)
        marker = self._marker(event)
        self.db.add(marker)

        handler = self._handlers[event.kind]
        try:
            # Claim the event id before any side effect is written
            await self.db.flush()
            result = await handler(event)
        except ValidationError as e:
            # Malformed but authentic: retrying cannot fix it, so record and acknowledge
            await self.db.rollback()
            logger.error("Webhook event %s rejected: %s", event.event_id, e.message)
            result = TransitionResult(outcome=Outcome.REJECTED, reason=e.message)
            marker = self._marker(event)
            self.db.add(marker)
        except IntegrityError:
            raise
        except Exception:
            await self.db.rollback()
            raise

        marker.outcome = result.outcome.value
        marker.reason = result.reason
        await self.db.commit()

        logger.info("Webhook event %s -> %s (%s)", event.event_id, result.outcome.value, result.reason)
        return WebhookResult(
            event_id=event.event_id,
            kind=event.kind,
            outcome=result.outcome,
            reason=result.reason,
        )

    @staticmethod
    def _marker(event: GatewayEvent) -> ProcessedWebhookEvent:
        return ProcessedWebhookEvent(
            event_id=event.event_id,
            event_type=event.type,
            outcome=Outcome.APPLIED.value,
            occurred_at=event.occurred_at,
        )

    def _duplicate(self, event: GatewayEvent) -> WebhookResult:
        return WebhookResult(
            event_id=event.event_id,
            kind=event.kind,
            outcome=Outcome.NOOP,
            reason="duplicate event",
            duplicate=True,
        )

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    async def _find_subscription(self, gateway_subscription_id: str | None) -> SubscriptionRecord | None:
        if not gateway_subscription_id:
            return None
        return await get_subscription_by_gateway_id(self.db, gateway_subscription_id)

    async def _on_subscription_updated(self, event: GatewayEvent) -> TransitionResult:
        snap = event.payload
        assert isinstance(snap, SubscriptionSnapshot)
        subscription = await self._find_subscription(snap.gateway_subscription_id)
        if subscription is None:
            return TransitionResult(
                outcome=Outcome.IGNORED, reason=f"unknown subscription {snap.gateway_subscription_id}"
            )

        if snap.status in _RENEWING:
            if snap.period_end is None:
                return TransitionResult(outcome=Outcome.IGNORED, subscription=subscription, reason="no period end")
            result = await self.machine.apply_renewal(
                subscription.id, snap.period_start, snap.period_end, event_at=event.occurred_at
            )
            # A portal-side cancel toggle arrives on the same event type
            flag = await self.machine.sync_cancel_flag(
                subscription.id, snap.cancel_at_period_end, event_at=event.occurred_at
            )
            if flag.applied and not result.applied:
                return flag
            return result
        if snap.status in _DELINQUENT:
            return await self.machine.mark_past_due(
                subscription.id, event_at=event.occurred_at, period_end=snap.period_end
            )
        if snap.status in _ENDED:
            return await self.machine.terminate_from_gateway(subscription.id)
        return TransitionResult(
            outcome=Outcome.IGNORED, subscription=subscription, reason=f"status {snap.status} not tracked"
        )

    async def _on_subscription_deleted(self, event: GatewayEvent) -> TransitionResult:
        snap = event.payload
        assert isinstance(snap, SubscriptionSnapshot)
        subscription = await self._find_subscription(snap.gateway_subscription_id)
        if subscription is None:
            return TransitionResult(
                outcome=Outcome.IGNORED, reason=f"unknown subscription {snap.gateway_subscription_id}"
            )
        return await self.machine.terminate_from_gateway(subscription.id)

    async def _invoice_owner(self, invoice: InvoiceSnapshot) -> tuple[uuid.UUID | None, SubscriptionRecord | None]:
        subscription = await self._find_subscription(invoice.gateway_subscription_id)
        if subscription is not None:
            return subscription.user_id, subscription
        if invoice.customer_id:
            user = await get_user_by_gateway_customer(self.db, invoice.customer_id)
            if user is not None:
                return user.id, None
        return None, None

    async def _on_invoice_paid(self, event: GatewayEvent) -> TransitionResult:
        invoice = event.payload
        assert isinstance(invoice, InvoiceSnapshot)
        user_id, subscription = await self._invoice_owner(invoice)
        if user_id is None:
            return TransitionResult(outcome=Outcome.IGNORED, reason=f"no user for invoice {invoice.invoice_id}")

        entry = await self.ledger.append(
            idempotency_key=f"invoice:{invoice.invoice_id}",
            user_id=user_id,
            amount_cents=invoice.amount_cents,
            currency=invoice.currency,
            status=TransactionStatus.SUCCEEDED,
            purpose=TransactionPurpose.SUBSCRIPTION,
            subscription_id=subscription.id if subscription else None,
            occurred_at=event.occurred_at,
            gateway_reference=invoice.payment_intent_id or invoice.invoice_id,
            description=f"Invoice {invoice.invoice_id}",
        )
        reason = "invoice recorded" if entry.created else "invoice already recorded"
        return TransitionResult(outcome=entry.outcome, subscription=subscription, reason=reason)

    async def _on_invoice_payment_failed(self, event: GatewayEvent) -> TransitionResult:
        invoice = event.payload
        assert isinstance(invoice, InvoiceSnapshot)
        user_id, subscription = await self._invoice_owner(invoice)
        if user_id is None:
            return TransitionResult(outcome=Outcome.IGNORED, reason=f"no user for invoice {invoice.invoice_id}")

        transition = None
        if subscription is not None:
            transition = await self.machine.mark_past_due(subscription.id, event_at=event.occurred_at)
        # Each failed attempt is its own ledger row, so key by event
        entry = await self.ledger.append(
            idempotency_key=f"invoice-failed:{event.event_id}",
            user_id=user_id,
            amount_cents=invoice.amount_cents,
            currency=invoice.currency,
            status=TransactionStatus.FAILED,
            purpose=TransactionPurpose.SUBSCRIPTION,
            subscription_id=subscription.id if subscription else None,
            occurred_at=event.occurred_at,
            gateway_reference=invoice.payment_intent_id or invoice.invoice_id,
            description=f"Failed payment for invoice {invoice.invoice_id}",
        )
        if transition is not None and transition.applied:
            return transition
        outcome = Outcome.APPLIED if entry.created else Outcome.NOOP
        return TransitionResult(outcome=outcome, subscription=subscription, reason="payment failure recorded")

    async def _on_checkout_completed(self, event: GatewayEvent) -> TransitionResult:
        checkout = event.payload
        assert isinstance(checkout, CheckoutSnapshot)
        if checkout.mode == "subscription":
            return await confirm_subscription_checkout(self.machine, checkout, event.subscription)
        if (
            checkout.mode == "payment"
            and checkout.metadata.get("purpose") == TransactionPurpose.BOOK_PURCHASE.value
        ):
            return await self._confirm_book_purchase(event, checkout)
        return TransitionResult(outcome=Outcome.IGNORED, reason=f"checkout mode {checkout.mode} not handled")

    async def _confirm_book_purchase(self, event: GatewayEvent, checkout: CheckoutSnapshot) -> TransitionResult:
        if checkout.payment_status != "paid":
            return TransitionResult(
                outcome=Outcome.IGNORED, reason=f"payment status {checkout.payment_status}, nothing to grant"
            )
        user_id = _parse_uuid(checkout.metadata.get("user_id"), "user_id")
        item_id = _parse_uuid(checkout.metadata.get("item_id"), "item_id")

        entry = await self.ledger.append(
            idempotency_key=f"checkout:{checkout.session_id}",
            user_id=user_id,
            amount_cents=checkout.amount_total_cents,
            currency=checkout.currency,
            status=TransactionStatus.SUCCEEDED,
            purpose=TransactionPurpose.BOOK_PURCHASE,
            occurred_at=event.occurred_at,
            gateway_reference=checkout.payment_intent_id or checkout.session_id,
            description=f"Book purchase {item_id}",
        )
        _, created = await grant_item_access(
            self.db,
            user_id,
            item_id,
            checkout.amount_total_cents,
            checkout.currency,
            source_transaction_id=entry.entry.id,
            purchased_at=event.occurred_at,
        )
        if entry.created or created:
            return TransitionResult(outcome=Outcome.APPLIED, reason=f"item {item_id} granted")
        return TransitionResult(outcome=Outcome.NOOP, reason=f"item {item_id} already granted")

    async def _on_unsupported(self, event: GatewayEvent) -> TransitionResult:
        logger.debug("Unhandled webhook event type: %s", event.type)
        return TransitionResult(outcome=Outcome.IGNORED, reason=f"event type {event.type} not handled")
