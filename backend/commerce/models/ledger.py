"""PaymentTransaction model: the append-only payment ledger."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from commerce.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class TransactionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionPurpose(str, Enum):
    SUBSCRIPTION = "subscription"
    BOOK_PURCHASE = "book_purchase"


class PaymentTransaction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One monetary movement. Positive = charge, negative = refund.

    Rows are only ever inserted. A refund is a new row pointing at the
    original through ``refund_of_id``; the original keeps its status.
    """

    __tablename__ = "payment_transactions"

    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    refund_of_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payment_transactions.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    purpose: Mapped[str] = mapped_column(String(30), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    gateway_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(id={self.id}, key={self.idempotency_key!r}, "
            f"amount={self.amount_cents} {self.currency}, status={self.status})>"
        )
