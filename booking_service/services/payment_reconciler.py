# booking_service/services/payment_reconciler.py
"""
Payment Event Reconciler

Applies verified payment provider events to bookings and memberships.
Correctness comes from the ledger's conditional transitions and from unique
keys (checkout session id, user/organization membership row), so duplicated,
concurrent and out-of-order deliveries converge on the same state. The
webhook event log records outcomes for audit and drives retries; it is not
what prevents double processing.

Outcome per event:
- processed / skipped: nothing more to do
- failed: a retriable error (e.g. the user is not known yet), retried with backoff
- needs_review: money and booking state disagree, an operator alert is raised
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.core.exceptions import (
    BookingError,
    BookingNotFound,
    CapacityExceeded,
    InvalidStateTransition,
    OverbookOnPayment,
    PaymentForReleasedHold,
    UpstreamLookupFailed,
)
from booking_service.models.payment_webhook_event import PaymentWebhookEvent
from booking_service.models.user import User
from booking_service.services import session_instances
from booking_service.services.booking_ledger import BookingLedger, CollectedPayment
from booking_service.services.membership_lifecycle import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_NONE,
    derive_subscription_status,
)
from booking_service.services.payment.provider_interface import WebhookEvent, WebhookEventType
from booking_service.utils.time_utils import from_unix

logger = logging.getLogger(__name__)

PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")


@dataclass
class ReconcileResult:
    outcome: str  # 'processed' | 'skipped'
    booking_id: Optional[str] = None
    user_membership_id: Optional[str] = None
    detail: Optional[str] = None


class PaymentReconciler:
    def __init__(self, db: Session, publisher=None, refund_requester=None):
        self.db = db
        self.publisher = publisher
        self.ledger = BookingLedger(db, publisher=publisher, refund_requester=refund_requester)

    # ========================================
    # Event log driven processing
    # ========================================

    def process(self, stored: PaymentWebhookEvent, event: WebhookEvent) -> str:
        """
        Apply an event and record the outcome on its log row. Returns the
        final log status. Never raises for processing errors.
        """
        crud.webhook_event.mark_processing(self.db, event_id=stored.id)
        try:
            result = self.apply(event)
        except BookingError as e:
            self.db.rollback()
            return self._record_booking_error(stored, event, e)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Error processing webhook event {event.event_id}: {e}")
            crud.webhook_event.mark_failed(self.db, event_id=stored.id, error=str(e))
            return "failed"

        if result.outcome == "skipped":
            crud.webhook_event.mark_skipped(
                self.db, event_id=stored.id, reason=result.detail or "not applicable"
            )
            return "skipped"

        crud.webhook_event.mark_processed(
            self.db,
            event_id=stored.id,
            related_booking_id=result.booking_id,
            related_user_membership_id=result.user_membership_id,
        )
        return "processed"

    def _record_booking_error(
        self, stored: PaymentWebhookEvent, event: WebhookEvent, error: BookingError
    ) -> str:
        booking_id = error.context.get("booking_id")
        if error.reportable:
            logger.error(f"Event {event.event_id} needs review: {error.message}")
            crud.webhook_event.mark_needs_review(
                self.db,
                event_id=stored.id,
                error=error.message,
                related_booking_id=booking_id if booking_id and booking_id.startswith("bkg_") else None,
            )
            if self.publisher is not None:
                self.publisher.alert(
                    type(error).__name__,
                    error.message,
                    provider_event_id=event.event_id,
                    provider_event_type=event.provider_event_type,
                    **{k: v for k, v in error.context.items() if v is not None},
                )
            return "needs_review"

        if error.retryable:
            logger.warning(f"Event {event.event_id} will be retried: {error.message}")
            crud.webhook_event.mark_failed(self.db, event_id=stored.id, error=error.message)
            return "failed"

        logger.error(f"Event {event.event_id} rejected: {error.message}")
        crud.webhook_event.mark_skipped(self.db, event_id=stored.id, reason=error.message)
        return "skipped"

    # ========================================
    # Dispatch
    # ========================================

    def apply(self, event: WebhookEvent) -> ReconcileResult:
        handlers = {
            WebhookEventType.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
            WebhookEventType.CHECKOUT_SESSION_EXPIRED: self._handle_checkout_expired,
            WebhookEventType.PAYMENT_INTENT_FAILED: self._handle_payment_failed,
            WebhookEventType.SUBSCRIPTION_CREATED: self._handle_subscription_created,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            WebhookEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }
        handler = handlers.get(event.event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event.provider_event_type}")
            return ReconcileResult("skipped", detail=f"unhandled type {event.provider_event_type}")
        return handler(event)

    # ========================================
    # Checkout events
    # ========================================

    def _handle_checkout_completed(self, event: WebhookEvent) -> ReconcileResult:
        data = event.data
        metadata = data.get("metadata") or {}
        checkout_session_id = data.get("checkoutSessionId")

        if data.get("paymentStatus") not in PAID_CHECKOUT_STATUSES:
            return ReconcileResult(
                "skipped", detail=f"checkout {checkout_session_id} not paid yet"
            )

        payment_intent_id = data.get("paymentIntentId")
        reference = payment_intent_id or checkout_session_id
        booking_id = metadata.get("booking_id")

        if booking_id:
            try:
                booking = self.ledger.confirm_booking(
                    booking_id,
                    payment_reference=reference,
                    payment_intent_id=payment_intent_id,
                    checkout_session_id=checkout_session_id,
                    amount_paid=data.get("amountTotal"),
                )
            except BookingNotFound:
                raise PaymentForReleasedHold(booking_id, reference, None)
            return ReconcileResult("processed", booking_id=booking.id)

        if metadata.get("session_template_id"):
            return self._book_paid_checkout(data, metadata, checkout_session_id, payment_intent_id)

        return ReconcileResult("skipped", detail="checkout carries no booking")

    def _book_paid_checkout(
        self,
        data: Dict[str, Any],
        metadata: Dict[str, str],
        checkout_session_id: str,
        payment_intent_id: Optional[str],
    ) -> ReconcileResult:
        """Deferred flow: the booking row is created only now that payment is collected."""
        existing = crud.booking.get_by_checkout_session(self.db, checkout_session_id)
        if existing is not None:
            logger.info(f"Checkout {checkout_session_id} already booked as {existing.id}")
            return ReconcileResult("processed", booking_id=existing.id)

        reference = payment_intent_id or checkout_session_id
        template = crud.session_template.get(self.db, id=metadata["session_template_id"])
        if template is None:
            raise PaymentForReleasedHold(checkout_session_id, reference, "template_deleted")

        user = self._resolve_checkout_user(metadata, data, template.organization_id)
        start_time = datetime.fromisoformat(metadata["start_time"])
        spots = int(metadata.get("number_of_spots") or 1)
        amount = (
            int(metadata["booking_amount"])
            if metadata.get("booking_amount")
            else int(data.get("amountTotal") or 0)
        )

        instance = session_instances.get_or_create_instance(self.db, template, start_time)
        try:
            booking = self.ledger.create_booking(
                instance=instance,
                user=user,
                spots=spots,
                currency=(data.get("currency") or "").lower() or "gbp",
                collected_payment=CollectedPayment(
                    checkout_session_id=checkout_session_id,
                    payment_intent_id=payment_intent_id,
                    amount_paid=amount,
                ),
            )
        except IntegrityError:
            # A concurrent delivery of the same checkout inserted first
            winner = crud.booking.get_by_checkout_session(self.db, checkout_session_id)
            if winner is None:
                raise
            return ReconcileResult("processed", booking_id=winner.id)
        except (CapacityExceeded, InvalidStateTransition):
            winner = crud.booking.get_by_checkout_session(self.db, checkout_session_id)
            if winner is not None:
                return ReconcileResult("processed", booking_id=winner.id)
            raise OverbookOnPayment(instance.id, checkout_session_id, spots)

        return ReconcileResult("processed", booking_id=booking.id)

    def _resolve_checkout_user(
        self, metadata: Dict[str, str], data: Dict[str, Any], organization_id: str
    ) -> User:
        user = self._user_from_metadata(metadata)
        if user is not None:
            return user

        email = data.get("customerEmail")
        if email:
            first_name, _, last_name = (data.get("customerName") or "").partition(" ")
            return crud.user.get_or_create_guest(
                self.db,
                organization_id=organization_id,
                email=email,
                first_name=first_name or None,
                last_name=last_name or None,
            )

        raise UpstreamLookupFailed(
            f"No user could be resolved for checkout {data.get('checkoutSessionId')}"
        )

    def _user_from_metadata(self, metadata: Dict[str, str]) -> Optional[User]:
        if metadata.get("user_id"):
            user = crud.user.get(self.db, metadata["user_id"])
            if user is not None:
                return user
        if metadata.get("external_user_id"):
            return crud.user.get_by_external_id(self.db, metadata["external_user_id"])
        return None

    def _handle_checkout_expired(self, event: WebhookEvent) -> ReconcileResult:
        checkout_session_id = event.data.get("checkoutSessionId")
        booking_id = (event.data.get("metadata") or {}).get("booking_id")
        if not booking_id and checkout_session_id:
            booking = crud.booking.get_by_checkout_session(self.db, checkout_session_id)
            booking_id = booking.id if booking else None
        if not booking_id:
            return ReconcileResult("skipped", detail="no booking held for this checkout")

        released = self.ledger.expire_pending_booking(booking_id, reason="checkout_expired")
        return ReconcileResult(
            "processed", booking_id=booking_id, detail=None if released else "already settled"
        )

    def _handle_payment_failed(self, event: WebhookEvent) -> ReconcileResult:
        booking_id = (event.data.get("metadata") or {}).get("booking_id")
        if not booking_id:
            return ReconcileResult("skipped", detail="payment not linked to a booking")
        self.ledger.mark_payment_failed(booking_id)
        return ReconcileResult("processed", booking_id=booking_id)

    # ========================================
    # Subscription events
    # ========================================

    def _subscriber(self, metadata: Dict[str, str]) -> Tuple[Optional[User], Optional[str]]:
        user = self._user_from_metadata(metadata)
        organization_id = metadata.get("organization_id") or (user.organization_id if user else None)
        return user, organization_id

    @staticmethod
    def _superseded(row, subscription_id: Optional[str]) -> bool:
        # The member's row already tracks a different subscription, or a free
        # tier joined since
        if row.stripe_subscription_id:
            return row.stripe_subscription_id != subscription_id
        return (
            row.status == STATUS_ACTIVE
            and row.membership is not None
            and row.membership.price == 0
        )

    @staticmethod
    def _period_values(data: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        if data.get("currentPeriodStart") is not None:
            values["current_period_start"] = from_unix(data["currentPeriodStart"])
        if data.get("currentPeriodEnd") is not None:
            values["current_period_end"] = from_unix(data["currentPeriodEnd"])
        return values

    def _apply_subscription(
        self, row_id: str, values: Dict[str, Any], event: WebhookEvent
    ) -> ReconcileResult:
        applied = crud.membership.apply_event(
            self.db, user_membership_id=row_id, values=values, event_at=event.created_at
        )
        if not applied:
            return ReconcileResult(
                "skipped", user_membership_id=row_id, detail="older than the last applied event"
            )
        if self.publisher is not None:
            self.publisher.publish(
                "membership.updated",
                {"user_membership_id": row_id, "status": values.get("status")},
                key=row_id,
            )
        return ReconcileResult("processed", user_membership_id=row_id)

    def _handle_subscription_created(self, event: WebhookEvent) -> ReconcileResult:
        data = event.data
        metadata = data.get("metadata") or {}
        user, organization_id = self._subscriber(metadata)
        if user is None or organization_id is None:
            raise UpstreamLookupFailed(
                f"Subscriber of {data.get('subscriptionId')} is not known yet"
            )

        row = crud.membership.get_or_create_for_user(
            self.db, user_id=user.id, organization_id=organization_id
        )
        values = {
            "status": STATUS_ACTIVE,
            "stripe_subscription_id": data.get("subscriptionId"),
            "stripe_customer_id": data.get("customerId"),
            "cancelled_at": None,
            **self._period_values(data),
        }
        if metadata.get("membership_id"):
            values["membership_id"] = metadata["membership_id"]
        return self._apply_subscription(row.id, values, event)

    def _handle_subscription_updated(self, event: WebhookEvent) -> ReconcileResult:
        data = event.data
        metadata = data.get("metadata") or {}
        row = crud.membership.get_by_subscription_id(self.db, data.get("subscriptionId"))
        if row is None:
            user, organization_id = self._subscriber(metadata)
            if user is None or organization_id is None:
                raise UpstreamLookupFailed(
                    f"No membership for subscription {data.get('subscriptionId')} yet"
                )
            row = crud.membership.get_or_create_for_user(
                self.db, user_id=user.id, organization_id=organization_id
            )
            if self._superseded(row, data.get("subscriptionId")):
                return ReconcileResult(
                    "skipped", user_membership_id=row.id, detail="subscription was replaced"
                )

        status = derive_subscription_status(data.get("cancelAtPeriodEnd", False), data.get("status"))
        values = {
            "status": status,
            "stripe_subscription_id": data.get("subscriptionId"),
            **self._period_values(data),
        }
        if data.get("customerId"):
            values["stripe_customer_id"] = data["customerId"]
        if status == STATUS_CANCELLED:
            values["cancelled_at"] = row.cancelled_at or event.created_at
        elif status == STATUS_ACTIVE:
            values["cancelled_at"] = None
        if metadata.get("membership_id"):
            values["membership_id"] = metadata["membership_id"]
        return self._apply_subscription(row.id, values, event)

    def _handle_subscription_deleted(self, event: WebhookEvent) -> ReconcileResult:
        data = event.data
        row = crud.membership.get_by_subscription_id(self.db, data.get("subscriptionId"))
        if row is None:
            user, organization_id = self._subscriber(data.get("metadata") or {})
            if user is not None and organization_id is not None:
                row = crud.membership.get_for_user(
                    self.db, user_id=user.id, organization_id=organization_id
                )
        if row is None:
            return ReconcileResult("skipped", detail="no membership for deleted subscription")
        if self._superseded(row, data.get("subscriptionId")):
            return ReconcileResult(
                "skipped", user_membership_id=row.id, detail="subscription was replaced"
            )

        values = {
            "status": STATUS_NONE,
            "stripe_subscription_id": None,
            "cancelled_at": row.cancelled_at or event.created_at,
        }
        return self._apply_subscription(row.id, values, event)
