"""Typed error taxonomy for the commerce engine.

Controllers never see raw driver or Stripe exceptions: the engine raises one of
these and ``commerce.main`` maps each class to an HTTP status. Idempotent
repeats (already canceled, already processed) are not errors at all; they come
back as ``Outcome.NOOP`` results.
"""

from fastapi import status


class CommerceError(Exception):
    """Base class for all classified engine errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "commerce_error"

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(CommerceError):
    """Malformed request: missing plan type, negative amount, unknown currency."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class NotFoundError(CommerceError):
    """Referenced subscription, transaction, user or item does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(CommerceError):
    """Request collides with the current state (e.g. checkout while already subscribed)."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class GatewayUnavailableError(CommerceError):
    """Outbound gateway call timed out or failed at the network level after retries."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "gateway_unavailable"


class GatewayRejectedError(CommerceError):
    """Gateway answered but refused the request (invalid id, card declined, ...)."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "gateway_rejected"


class SignatureError(CommerceError):
    """Inbound webhook failed the signature or timestamp check."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"


class LedgerIntegrityError(CommerceError):
    """Ledger write would break an invariant (over-refund, refund of a non-charge)."""

    status_code = status.HTTP_409_CONFLICT
    code = "ledger_integrity"
