"""
Webhook endpoints.

Currently supports Stripe billing webhooks.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.base import get_db
from app.schemas import EventAck
from app.services.reconciler import event_reconciler
import stripe
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe", response_model=EventAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle Stripe webhooks for subscription and payment events.

    The signature is verified here; the raw payload is then handed to the
    event reconciler, which decodes it and deduplicates by event id. A bad
    payload answers 400; any other failure answers 5xx so Stripe redelivers
    the event. Not rate limited: every delivery is signature-gated and Stripe
    sends bursts.
    """
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret not configured",
        )

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header",
        )

    try:
        payload_text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.error(f"Invalid Stripe webhook payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    try:
        # Verify webhook signature
        stripe.WebhookSignature.verify_header(
            payload_text,
            sig_header,
            settings.stripe_webhook_secret,
            stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid Stripe webhook signature: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e

    ack = event_reconciler.record_provider_event(db, payload_text)
    logger.info(f"Stripe webhook {ack.event_id} ({ack.event_type}): {ack.outcome.value}")
    return ack
