"""OneOffPurchase model: permanent access grants for individual items."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from commerce.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class OneOffPurchase(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A user owns an item. Re-granting the same pair is a no-op."""

    __tablename__ = "one_off_purchases"
    __table_args__ = (UniqueConstraint("user_id", "item_id", name="uq_one_off_purchases_user_item"),)

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    item_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("catalog_items.id", ondelete="RESTRICT"), nullable=False
    )
    purchase_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    purchased_at: Mapped[datetime] = mapped_column(nullable=False)
    # Null for free grants
    source_transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payment_transactions.id", ondelete="RESTRICT"), nullable=True
    )

    def __repr__(self) -> str:
        return f"<OneOffPurchase user_id={self.user_id} item_id={self.item_id}>"
