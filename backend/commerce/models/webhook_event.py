"""ProcessedWebhookEvent model: the durable dedup set for gateway events."""

from datetime import datetime

from sqlalchemy import String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce.database import Base


class ProcessedWebhookEvent(Base):
    """One row per gateway event id that has been applied or deliberately ignored.

    The row is inserted in the same transaction as the event's side effect, so
    its presence means the effect is committed.
    """

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent {self.event_id} {self.event_type} -> {self.outcome}>"
