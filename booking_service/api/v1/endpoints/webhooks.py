# booking_service/api/v1/endpoints/webhooks.py
"""
Webhook endpoint for the payment provider.

SECURITY NOTES:
- Signatures are always verified; unverifiable requests get 400 and are
  never processed
- A missing webhook secret is a server misconfiguration (500), never an
  open door
- After verification the endpoint answers 200 even when processing fails:
  failures are recorded on the event log and retried by the scheduler,
  inconsistencies are flagged for operator review
"""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.api.deps import get_db
from booking_service.core.config import settings
from booking_service.core.kafka_producer import BookingEventPublisher, get_event_publisher
from booking_service.schemas.webhook import WebhookEventCreate
from booking_service.services.payment.provider_factory import get_payment_provider
from booking_service.services.payment.providers.stripe_provider import PaymentError
from booking_service.services.payment.refund_requester import (
    RefundRequester,
    get_refund_requester,
)
from booking_service.services.payment_reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    publisher: BookingEventPublisher = Depends(get_event_publisher),
    refund_requester: RefundRequester = Depends(get_refund_requester),
):
    """
    Handle Stripe webhook events.

    1. Verify the webhook signature
    2. Record the event on the webhook event log
    3. Apply it to bookings / memberships
    4. Return 200 with the processing outcome
    """
    body = await request.body()

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured, rejecting webhook")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    if not stripe_signature:
        logger.warning("Webhook received without Stripe-Signature header")
        raise HTTPException(status_code=400, detail="Missing signature")

    client_ip = request.client.host if request.client else None

    try:
        provider = get_payment_provider("stripe")
    except ValueError as e:
        logger.error(f"Stripe provider unavailable: {e}")
        raise HTTPException(status_code=500, detail="Payment provider not configured")

    if not provider.verify_webhook_signature(body, stripe_signature):
        logger.warning(f"Invalid webhook signature from {client_ip}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = provider.parse_webhook_event(body)
    except PaymentError as e:
        logger.error(f"Verified webhook could not be parsed: {e.message}")
        raise HTTPException(status_code=400, detail="Malformed event")

    # Short-circuit only; reprocessing a finished event would be a no-op anyway
    if crud.webhook_event.is_already_processed(
        db, provider_code=provider.code, provider_event_id=event.event_id
    ):
        logger.info(f"Event {event.event_id} already processed, skipping")
        return {"status": "already_processed", "event_id": event.event_id}

    stored = crud.webhook_event.upsert_event(
        db,
        obj_in=WebhookEventCreate(
            provider_code=provider.code,
            provider_event_id=event.event_id,
            provider_event_type=event.provider_event_type,
            payload=event.raw_payload,
            signature_verified=True,
            ip_address=client_ip,
        ),
        provider_created_at=event.created_at,
    )

    reconciler = PaymentReconciler(db, publisher=publisher, refund_requester=refund_requester)
    outcome = reconciler.process(stored, event)
    if outcome == "failed":
        # Stored and retried by the scheduler; Stripe must not retry on top
        return {"status": "processing_error", "event_id": event.event_id}
    return {"status": outcome, "event_id": event.event_id}
