"""User model: the identity record commerce state hangs off."""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commerce.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Learner or admin account.

    ``subscription_tier`` is a denormalised cache written only by the
    subscription state machine; entitlement checks derive the tier from the
    subscription records instead.
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="learner", nullable=False)
    subscription_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="Free")
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Relationships
    subscriptions: Mapped[list["SubscriptionRecord"]] = relationship(  # noqa: F821
        "SubscriptionRecord", back_populates="user", lazy="selectin"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} tier={self.subscription_tier!r}>"
