"""SQLAlchemy models for the commerce engine.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from commerce.models.catalog import CatalogItem
from commerce.models.ledger import PaymentTransaction, TransactionPurpose, TransactionStatus
from commerce.models.purchase import OneOffPurchase
from commerce.models.subscription import NON_TERMINAL_STATUSES, SubscriptionRecord, SubscriptionStatus
from commerce.models.user import User
from commerce.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "CatalogItem",
    "NON_TERMINAL_STATUSES",
    "OneOffPurchase",
    "PaymentTransaction",
    "ProcessedWebhookEvent",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "TransactionPurpose",
    "TransactionStatus",
    "User",
]
