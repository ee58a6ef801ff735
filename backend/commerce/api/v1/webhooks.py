"""Payment gateway webhook endpoint: verify, dedup and apply gateway events."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.deps import get_db
from commerce.billing.events import parse_event
from commerce.billing.outcomes import Outcome
from commerce.billing.stripe_client import verify_webhook_payload
from commerce.billing.webhooks import WebhookEventProcessor
from commerce.errors import CommerceError, SignatureError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment-events")
async def payment_events(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """Receive and process gateway events.

    400 for a bad signature or malformed body; 200 once the event is applied,
    ignored or recognised as a duplicate; 5xx makes the gateway redeliver.
    """
    # Raw bytes: the signature covers the exact body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = parse_event(verify_webhook_payload(payload, sig_header))
    except SignatureError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from e
    except ValidationError as e:
        logger.warning("Invalid webhook payload: %s", e.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from e

    processor = WebhookEventProcessor(db)
    try:
        # Gateway reads happen before the transaction opens
        event = await processor.enrich(event)
        result = await processor.process(event)
    except CommerceError:
        raise
    except Exception as e:
        logger.exception("Error processing webhook event %s", event.event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    if result.duplicate:
        return {"status": "duplicate"}
    if result.outcome is Outcome.IGNORED:
        return {"status": "ignored"}
    return {"status": "processed"}
