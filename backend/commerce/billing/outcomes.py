"""Result variants returned by state transitions and ledger writes.

Callers branch on ``outcome`` instead of catching exceptions, which keeps
"already done" (NOOP) distinct from "not allowed" (REJECTED).
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from commerce.billing.proration import ProrationQuote
    from commerce.models.ledger import PaymentTransaction
    from commerce.models.subscription import SubscriptionRecord


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass
class TransitionResult:
    outcome: Outcome
    subscription: "SubscriptionRecord | None" = None
    reason: str | None = None
    proration: "ProrationQuote | None" = None

    @property
    def applied(self) -> bool:
        return self.outcome is Outcome.APPLIED


@dataclass
class LedgerResult:
    outcome: Outcome
    entry: "PaymentTransaction"

    @property
    def created(self) -> bool:
        return self.outcome is Outcome.APPLIED
