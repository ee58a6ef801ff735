"""Typed gateway events.

Stripe sends free-form JSON keyed by a type string. This module maps the type
strings onto a closed ``EventKind`` set and extracts one frozen snapshot per
kind, so the processor dispatches on an enum and every handled kind has a
known payload shape. Anything not listed maps to ``EventKind.UNSUPPORTED``.

The helpers accept plain dicts and Stripe objects alike (Stripe objects are
dict subclasses).
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from commerce.billing.clock import ts_to_naive
from commerce.errors import ValidationError


class EventKind(str, Enum):
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    CHECKOUT_COMPLETED = "checkout_completed"
    UNSUPPORTED = "unsupported"


STRIPE_EVENT_TYPES: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    gateway_subscription_id: str
    customer_id: str | None
    status: str
    period_start: datetime | None
    period_end: datetime | None
    cancel_at_period_end: bool
    price_id: str | None
    item_id: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceSnapshot:
    invoice_id: str
    gateway_subscription_id: str | None
    customer_id: str | None
    amount_cents: int
    currency: str
    payment_intent_id: str | None


@dataclass(frozen=True)
class CheckoutSnapshot:
    session_id: str
    mode: str
    customer_id: str | None
    gateway_subscription_id: str | None
    payment_intent_id: str | None
    amount_total_cents: int
    currency: str
    payment_status: str | None
    metadata: Mapping[str, str] = field(default_factory=dict)


EventPayload = SubscriptionSnapshot | InvoiceSnapshot | CheckoutSnapshot


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    type: str
    kind: EventKind
    occurred_at: datetime | None
    payload: EventPayload | None
    # Filled in before the transaction opens when the handler needs live gateway state
    subscription: SubscriptionSnapshot | None = None


def _id_of(value: Any) -> str | None:
    """Stripe fields may be a bare id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


def _first_item(stripe_sub: Mapping[str, Any]) -> Mapping[str, Any] | None:
    # Bracket access: ``.items`` collides with dict.items on Stripe objects
    sub_items = stripe_sub.get("items")
    if sub_items and sub_items.get("data"):
        return sub_items["data"][0]
    return None


def subscription_snapshot(stripe_sub: Mapping[str, Any]) -> SubscriptionSnapshot:
    """Extract the fields the engine uses from a Stripe subscription object.

    Since API version 2025-08-27 the current period lives on the subscription
    item; older versions keep it on the subscription itself.
    """
    item = _first_item(stripe_sub)
    start = stripe_sub.get("current_period_start")
    end = stripe_sub.get("current_period_end")
    price_id = None
    item_id = None
    if item is not None:
        start = item.get("current_period_start") or start
        end = item.get("current_period_end") or end
        price_id = _id_of(item.get("price"))
        item_id = item.get("id")
    return SubscriptionSnapshot(
        gateway_subscription_id=stripe_sub["id"],
        customer_id=_id_of(stripe_sub.get("customer")),
        status=stripe_sub.get("status") or "",
        period_start=ts_to_naive(start),
        period_end=ts_to_naive(end),
        cancel_at_period_end=bool(stripe_sub.get("cancel_at_period_end")),
        price_id=price_id,
        item_id=item_id,
        metadata=dict(stripe_sub.get("metadata") or {}),
    )


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    direct = _id_of(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def invoice_snapshot(invoice: Mapping[str, Any], *, failed: bool) -> InvoiceSnapshot:
    amount_key = "amount_due" if failed else "amount_paid"
    return InvoiceSnapshot(
        invoice_id=invoice["id"],
        gateway_subscription_id=_invoice_subscription_id(invoice),
        customer_id=_id_of(invoice.get("customer")),
        amount_cents=int(invoice.get(amount_key) or 0),
        currency=(invoice.get("currency") or "usd").upper(),
        payment_intent_id=_id_of(invoice.get("payment_intent")),
    )


def checkout_snapshot(session: Mapping[str, Any]) -> CheckoutSnapshot:
    return CheckoutSnapshot(
        session_id=session["id"],
        mode=session.get("mode") or "",
        customer_id=_id_of(session.get("customer")),
        gateway_subscription_id=_id_of(session.get("subscription")),
        payment_intent_id=_id_of(session.get("payment_intent")),
        amount_total_cents=int(session.get("amount_total") or 0),
        currency=(session.get("currency") or "usd").upper(),
        payment_status=session.get("payment_status"),
        metadata=dict(session.get("metadata") or {}),
    )


def parse_event(body: Mapping[str, Any]) -> GatewayEvent:
    """Turn a verified webhook body into a ``GatewayEvent``."""
    try:
        event_id = body["id"]
        event_type = body["type"]
        data_object = body["data"]["object"]
    except (KeyError, TypeError) as e:
        raise ValidationError("Webhook event is missing id, type or data.object") from e

    kind = STRIPE_EVENT_TYPES.get(event_type, EventKind.UNSUPPORTED)
    try:
        if kind in (EventKind.SUBSCRIPTION_UPDATED, EventKind.SUBSCRIPTION_DELETED):
            payload: EventPayload | None = subscription_snapshot(data_object)
        elif kind is EventKind.INVOICE_PAID:
            payload = invoice_snapshot(data_object, failed=False)
        elif kind is EventKind.INVOICE_PAYMENT_FAILED:
            payload = invoice_snapshot(data_object, failed=True)
        elif kind is EventKind.CHECKOUT_COMPLETED:
            payload = checkout_snapshot(data_object)
        else:
            payload = None
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed {event_type} payload", event_id=event_id) from e

    return GatewayEvent(
        event_id=event_id,
        type=event_type,
        kind=kind,
        occurred_at=ts_to_naive(body.get("created")),
        payload=payload,
    )
