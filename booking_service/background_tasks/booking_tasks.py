# booking_service/background_tasks/booking_tasks.py
"""
Background tasks for the booking lifecycle.

Scheduled by booking_service.scheduler:
- expire_abandoned_bookings(): every 5 minutes
- generate_upcoming_instances(): daily
- retry_failed_webhook_events(): every minute
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from booking_service import crud
from booking_service.core.config import settings
from booking_service.core.kafka_producer import get_event_publisher
from booking_service.db.session import SessionLocal
from booking_service.services import session_instances
from booking_service.services.booking_ledger import BookingLedger
from booking_service.services.payment.provider_factory import get_payment_provider
from booking_service.services.payment.providers.stripe_provider import PaymentError
from booking_service.services.payment.refund_requester import get_refund_requester
from booking_service.services.payment_reconciler import PaymentReconciler
from booking_service.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def expire_abandoned_bookings(session_factory=SessionLocal, now: Optional[datetime] = None) -> int:
    """
    Release bookings whose checkout was abandoned without an expiry event
    from the provider. Only bookings older than the checkout lifetime plus a
    grace period are touched, so a late webhook still wins in normal cases.
    """
    cutoff = (now or utcnow()) - timedelta(
        minutes=settings.CHECKOUT_EXPIRY_MINUTES + settings.PENDING_BOOKING_GRACE_MINUTES
    )
    db = session_factory()
    released = 0
    try:
        ledger = BookingLedger(db, publisher=get_event_publisher())
        for booking in crud.booking.get_stale_pending(db, booked_before=cutoff):
            if ledger.expire_pending_booking(booking.id, reason="checkout_abandoned"):
                released += 1
        if released:
            logger.info(f"Released {released} abandoned pending booking(s)")
        return released
    except Exception as e:
        db.rollback()
        logger.error(f"Error expiring abandoned bookings: {e}")
        raise
    finally:
        db.close()


def generate_upcoming_instances(session_factory=SessionLocal) -> int:
    """Materialize instances of every active recurring template for the window ahead."""
    db = session_factory()
    total_created = 0
    try:
        templates = crud.session_template.get_generatable(db, today=utcnow().date())
        for template in templates:
            try:
                created, _ = session_instances.materialize_instances(db, template)
                total_created += created
            except ValueError as e:
                # A bad timezone on one template must not stop the others
                db.rollback()
                logger.error(f"Could not generate instances for template {template.id}: {e}")
        logger.info(
            f"Instance generation: {total_created} created across {len(templates)} template(s)"
        )
        return total_created
    finally:
        db.close()


def retry_failed_webhook_events(session_factory=SessionLocal, limit: int = 50) -> int:
    """Replay stored events whose retry backoff has elapsed."""
    try:
        provider = get_payment_provider("stripe")
    except ValueError as e:
        logger.warning(f"Skipping webhook retries, provider unavailable: {e}")
        return 0

    db = session_factory()
    retried = 0
    try:
        reconciler = PaymentReconciler(
            db, publisher=get_event_publisher(), refund_requester=get_refund_requester()
        )
        for stored in crud.webhook_event.get_retryable_events(db, limit=limit):
            try:
                event = provider.normalize_event(stored.payload)
            except PaymentError as e:
                crud.webhook_event.mark_skipped(db, event_id=stored.id, reason=e.message)
                continue
            outcome = reconciler.process(stored, event)
            retried += 1
            logger.info(
                f"Retried webhook event {stored.provider_event_id} "
                f"(attempt {stored.retry_count + 1}): {outcome}"
            )
        return retried
    finally:
        db.close()
