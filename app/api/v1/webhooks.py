from fastapi import APIRouter, Depends, Request
from app.api.deps import get_reconciliation_engine
from app.schemas.billing import WebhookAck
from app.services.reconciliation import SubscriptionReconciliationEngine
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["Stripe Webhooks"])


@router.post("/webhooks", response_model=WebhookAck, include_in_schema=False)
async def stripe_webhook(
    request: Request,
    engine: SubscriptionReconciliationEngine = Depends(get_reconciliation_engine)
):
    """
    Handle Stripe webhook events.

    The body is read as raw bytes and handed to signature verification
    untouched; no request model is bound on this route.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    outcome = await engine.handle_webhook(payload, sig_header)
    if outcome.result == "failed":
        logger.error(f"Acknowledged {outcome.event_type} {outcome.event_id} despite failure: {outcome.detail}")
    return WebhookAck(received=True)
