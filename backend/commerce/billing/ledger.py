"""Payment ledger: append-only, idempotent record of money movements."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.billing.clock import utcnow
from commerce.billing.outcomes import LedgerResult, Outcome
from commerce.errors import LedgerIntegrityError, NotFoundError, ValidationError
from commerce.models.ledger import PaymentTransaction, TransactionPurpose, TransactionStatus

logger = logging.getLogger(__name__)


def _validate_currency(currency: str) -> str:
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO code", currency=currency)
    return currency.upper()


class PaymentLedger:
    """Reads and appends ``PaymentTransaction`` rows within one session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_key(self, idempotency_key: str) -> PaymentTransaction | None:
        result = await self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def append(
        self,
        *,
        idempotency_key: str,
        user_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        status: TransactionStatus,
        purpose: TransactionPurpose,
        subscription_id: uuid.UUID | None = None,
        occurred_at: datetime | None = None,
        gateway_reference: str | None = None,
        description: str | None = None,
    ) -> LedgerResult:
        """Insert a charge or failure record, or return the one already keyed.

        Refunds go through :meth:`refund`, so negative amounts are rejected here.
        """
        if not idempotency_key:
            raise ValidationError("Ledger entries need an idempotency key")
        if amount_cents < 0:
            raise ValidationError("Charge amount must not be negative", amount_cents=amount_cents)
        if status is TransactionStatus.REFUNDED:
            raise ValidationError("Use refund() to record refunds")
        currency = _validate_currency(currency)

        existing = await self.get_by_key(idempotency_key)
        if existing is not None:
            logger.info("Ledger key %s already recorded as %s, skipping", idempotency_key, existing.id)
            return LedgerResult(outcome=Outcome.NOOP, entry=existing)

        entry = PaymentTransaction(
            idempotency_key=idempotency_key,
            user_id=user_id,
            subscription_id=subscription_id,
            amount_cents=amount_cents,
            currency=currency,
            status=status.value,
            purpose=purpose.value,
            occurred_at=occurred_at or utcnow(),
            gateway_reference=gateway_reference,
            description=description,
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info(
            "Ledger %s: %s %s %s for user %s (key=%s)",
            entry.id,
            status.value,
            amount_cents,
            currency,
            user_id,
            idempotency_key,
        )
        return LedgerResult(outcome=Outcome.APPLIED, entry=entry)

    async def refunded_total(self, original_id: uuid.UUID) -> int:
        """Sum of refunds already booked against a transaction (a positive number)."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(PaymentTransaction.amount_cents), 0)).where(
                PaymentTransaction.refund_of_id == original_id
            )
        )
        return -int(result.scalar_one())

    async def refundable_balance(self, original: PaymentTransaction) -> int:
        if original.status != TransactionStatus.SUCCEEDED or original.amount_cents <= 0:
            return 0
        return original.amount_cents - await self.refunded_total(original.id)

    async def _load_original(self, transaction_id: uuid.UUID, lock: bool) -> PaymentTransaction:
        query = select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        original = result.scalar_one_or_none()
        if original is None:
            raise NotFoundError("Transaction not found", transaction_id=str(transaction_id))
        return original

    async def _validate_refund(
        self, original: PaymentTransaction, amount_cents: int, idempotency_key: str | None
    ) -> PaymentTransaction | None:
        """Return the refund already booked under the key, else check the balance and return None."""
        if idempotency_key:
            existing = await self.get_by_key(idempotency_key)
            if existing is not None:
                if existing.refund_of_id != original.id:
                    raise LedgerIntegrityError(
                        "Idempotency key already used for a different entry", idempotency_key=idempotency_key
                    )
                return existing

        if original.status != TransactionStatus.SUCCEEDED:
            raise LedgerIntegrityError(
                "Only succeeded charges can be refunded",
                transaction_id=str(original.id),
                status=original.status,
            )

        remaining = await self.refundable_balance(original)
        if amount_cents > remaining:
            logger.warning(
                "Refund of %s rejected for %s: only %s refundable", amount_cents, original.id, remaining
            )
            raise LedgerIntegrityError(
                "Refund exceeds refundable balance",
                transaction_id=str(original.id),
                requested=amount_cents,
                refundable=remaining,
            )
        return None

    async def check_refund(
        self, original_transaction_id: uuid.UUID, amount_cents: int, idempotency_key: str | None = None
    ) -> tuple[PaymentTransaction, PaymentTransaction | None]:
        """Validate a refund without booking it or taking a lock.

        Returns the original charge and the refund already booked under
        ``idempotency_key``, if any. :meth:`refund` repeats the check under
        the row lock.
        """
        if amount_cents <= 0:
            raise ValidationError("Refund amount must be positive", amount_cents=amount_cents)
        original = await self._load_original(original_transaction_id, lock=False)
        return original, await self._validate_refund(original, amount_cents, idempotency_key)

    async def refund(
        self,
        original_transaction_id: uuid.UUID,
        amount_cents: int,
        reason: str | None = None,
        *,
        idempotency_key: str | None = None,
        occurred_at: datetime | None = None,
    ) -> PaymentTransaction:
        """Book a refund as a new negative entry; the original row is never touched.

        The original is locked so two concurrent refunds cannot both pass the
        balance check.
        """
        if amount_cents <= 0:
            raise ValidationError("Refund amount must be positive", amount_cents=amount_cents)

        original = await self._load_original(original_transaction_id, lock=True)
        existing = await self._validate_refund(original, amount_cents, idempotency_key)
        if existing is not None:
            return existing

        entry = PaymentTransaction(
            idempotency_key=idempotency_key or f"refund:{original.id}:{uuid.uuid4().hex}",
            user_id=original.user_id,
            subscription_id=original.subscription_id,
            refund_of_id=original.id,
            amount_cents=-amount_cents,
            currency=original.currency,
            status=TransactionStatus.REFUNDED.value,
            purpose=original.purpose,
            occurred_at=occurred_at or utcnow(),
            gateway_reference=original.gateway_reference,
            description=f"Refund of {original.id}",
            reason=reason,
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info("Ledger %s: refunded %s of %s (%s)", entry.id, amount_cents, original.id, reason or "no reason")
        return entry

    async def history(self, user_id: uuid.UUID, limit: int = 20) -> list[PaymentTransaction]:
        """Most recent ledger entries for a user (billing history)."""
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.occurred_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get(self, transaction_id: uuid.UUID) -> PaymentTransaction | None:
        return await self.db.get(PaymentTransaction, transaction_id)

    async def search(
        self,
        *,
        user_id: uuid.UUID | None = None,
        status: TransactionStatus | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        min_amount_cents: int | None = None,
        max_amount_cents: int | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PaymentTransaction], int]:
        """Filtered ledger listing, newest first, with the unpaged match count.

        Date bounds are inclusive. Amount bounds apply to the signed amount,
        so refunds match on their negative value.
        """
        conditions = []
        if user_id is not None:
            conditions.append(PaymentTransaction.user_id == user_id)
        if status is not None:
            conditions.append(PaymentTransaction.status == status.value)
        if date_from is not None:
            conditions.append(PaymentTransaction.occurred_at >= date_from)
        if date_to is not None:
            conditions.append(PaymentTransaction.occurred_at <= date_to)
        if min_amount_cents is not None:
            conditions.append(PaymentTransaction.amount_cents >= min_amount_cents)
        if max_amount_cents is not None:
            conditions.append(PaymentTransaction.amount_cents <= max_amount_cents)

        total = await self.db.scalar(select(func.count()).select_from(PaymentTransaction).where(*conditions))
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(*conditions)
            .order_by(PaymentTransaction.occurred_at.desc(), PaymentTransaction.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)
