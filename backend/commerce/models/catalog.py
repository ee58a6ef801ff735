"""CatalogItem model: the purchasable / premium-gated content units (books)."""

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from commerce.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class CatalogItem(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Access-relevant slice of a catalog entry. Display fields live in the CMS."""

    __tablename__ = "catalog_items"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Unlocked for every Pro / Premium subscriber without a separate purchase
    is_premium_inclusive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def is_freely_accessible(self) -> bool:
        return self.is_free or self.price_cents <= 0

    def __repr__(self) -> str:
        return f"<CatalogItem id={self.id} title={self.title!r} price={self.price_cents}>"
