"""One-off purchases: book checkout, access grants and purchase history."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing import stripe_client
from commerce.billing.clock import utcnow
from commerce.models.ledger import TransactionPurpose
from commerce.errors import ConflictError, NotFoundError, ValidationError
from commerce.models.catalog import CatalogItem
from commerce.models.purchase import OneOffPurchase
from commerce.models.user import User
from commerce.services.customer_service import ensure_gateway_customer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseCheckout:
    url: str
    session_id: str | None = None
    granted: bool = False  # free items are granted without a gateway round trip


async def get_purchase(db: AsyncSession, user_id: uuid.UUID, item_id: uuid.UUID) -> OneOffPurchase | None:
    result = await db.execute(
        select(OneOffPurchase).where(
            OneOffPurchase.user_id == user_id,
            OneOffPurchase.item_id == item_id,
        )
    )
    return result.scalar_one_or_none()


async def grant_item_access(
    db: AsyncSession,
    user_id: uuid.UUID,
    item_id: uuid.UUID,
    purchase_price_cents: int = 0,
    currency: str = "USD",
    source_transaction_id: uuid.UUID | None = None,
    purchased_at: datetime | None = None,
) -> tuple[OneOffPurchase, bool]:
    """Record ownership of an item. Returns ``(purchase, created)``; re-grants are no-ops."""
    existing = await get_purchase(db, user_id, item_id)
    if existing is not None:
        logger.info("User %s already owns item %s", user_id, item_id)
        return existing, False

    purchase = OneOffPurchase(
        user_id=user_id,
        item_id=item_id,
        purchase_price_cents=purchase_price_cents,
        currency=currency.upper(),
        purchased_at=purchased_at or utcnow(),
        source_transaction_id=source_transaction_id,
    )
    db.add(purchase)
    await db.flush()
    logger.info("Granted item %s to user %s (price=%s)", item_id, user_id, purchase_price_cents)
    return purchase, True


async def create_book_checkout(
    db: AsyncSession,
    user: User,
    item_id: uuid.UUID,
    success_url: str,
    cancel_url: str,
) -> PurchaseCheckout:
    """Start a one-time checkout for an item, or grant it directly when free."""
    item = await db.get(CatalogItem, item_id)
    if item is None:
        raise NotFoundError("Item not found", item_id=str(item_id))

    if item.is_freely_accessible:
        await grant_item_access(db, user.id, item.id, 0, item.currency)
        return PurchaseCheckout(url=success_url, granted=True)

    if await get_purchase(db, user.id, item.id) is not None:
        raise ConflictError("Item already purchased", item_id=str(item.id))
    if item.price_cents <= 0:
        raise ValidationError("Item has no price", item_id=str(item.id))

    customer_id = await ensure_gateway_customer(db, user)
    # Customer id must survive even if the checkout call below fails
    await db.commit()

    session = await stripe_client.create_payment_checkout_session(
        customer_id=customer_id,
        amount_cents=item.price_cents,
        currency=item.currency,
        product_name=item.title,
        success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}&item_id={item.id}",
        cancel_url=cancel_url,
        metadata={
            "user_id": str(user.id),
            "item_id": str(item.id),
            "purpose": TransactionPurpose.BOOK_PURCHASE.value,
        },
    )
    return PurchaseCheckout(url=session.url, session_id=session.id)


async def list_purchases(db: AsyncSession, user_id: uuid.UUID) -> list[tuple[OneOffPurchase, CatalogItem]]:
    result = await db.execute(
        select(OneOffPurchase, CatalogItem)
        .join(CatalogItem, CatalogItem.id == OneOffPurchase.item_id)
        .where(OneOffPurchase.user_id == user_id)
        .order_by(OneOffPurchase.purchased_at.desc())
    )
    return [(purchase, item) for purchase, item in result.all()]
