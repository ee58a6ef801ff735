"""SubscriptionRecord model: local truth for recurring billing state."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commerce.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


NON_TERMINAL_STATUSES: frozenset[str] = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value, SubscriptionStatus.PAST_DUE.value}
)

_LIVE_PREDICATE = text("status <> 'canceled'")


class SubscriptionRecord(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One paid subscription lifecycle for a user.

    A user may accumulate many canceled records over time but at most one
    live (active / trialing / past_due) record, enforced by the partial unique
    index below. Rows are never deleted.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_one_live_per_user",
            "user_id",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Gateway identifiers
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    gateway_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gateway_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan
    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False, server_default="monthly")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default="USD")

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default="active")
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # Creation time of the newest gateway event seen for this row; older deliveries are stale
    last_gateway_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Optimistic concurrency guard, bumped on every flush that changes the row
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscriptions", lazy="selectin")  # noqa: F821

    @property
    def is_live(self) -> bool:
        return self.status in NON_TERMINAL_STATUSES

    def days_remaining(self, now: datetime) -> int:
        """Whole days left in the current period, rounded up, never negative."""
        if self.current_period_end is None:
            return 0
        seconds = (self.current_period_end - now).total_seconds()
        if seconds <= 0:
            return 0
        return int(-(-seconds // 86400))

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(id={self.id}, user_id={self.user_id}, "
            f"plan={self.plan_tier}/{self.billing_period}, status={self.status})>"
        )
