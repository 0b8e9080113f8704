# booking_service/services/booking_ledger.py
"""
Booking Ledger

Owns the booking state machine and the held-spot counter on instances:

    pending_payment -> confirmed | cancelled
    confirmed       -> completed | cancelled
    completed       -> confirmed        (check-in toggle only)

Every transition is a conditional UPDATE on the expected source state, so
duplicated or racing requests resolve to a single winner and the rest become
no-ops. Spot reservation and release happen in the same transaction as the
booking write they belong to.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.core.exceptions import (
    BookingNotFound,
    BookingRejected,
    CapacityExceeded,
    InconsistentPaymentReference,
    InvalidStateTransition,
    PaymentForReleasedHold,
)
from booking_service.models.booking import Booking
from booking_service.models.session_instance import SessionInstance
from booking_service.models.user import User
from booking_service.services.payment.provider_interface import RefundReason
from booking_service.services.pricing import BookingPriceBreakdown
from booking_service.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CollectedPayment:
    """A payment already collected before the booking row exists."""
    checkout_session_id: str
    payment_intent_id: Optional[str]
    amount_paid: int


class BookingLedger:
    """
    Booking state transitions. Publisher and refund requester are optional so
    the ledger can run inside scheduler jobs and tests without Kafka or Stripe.
    """

    def __init__(self, db: Session, publisher=None, refund_requester=None):
        self.db = db
        self.publisher = publisher
        self.refund_requester = refund_requester

    # ========================================
    # Creation
    # ========================================

    def create_booking(
        self,
        *,
        instance: SessionInstance,
        user: User,
        spots: int,
        price: Optional[BookingPriceBreakdown] = None,
        currency: str = "gbp",
        collected_payment: Optional[CollectedPayment] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Reserve `spots` on the instance and insert the booking, atomically.

        Raises:
            CapacityExceeded: not enough spots remain
            InvalidStateTransition: the instance is cancelled
        """
        if spots < 1:
            raise ValueError("a booking needs at least one spot")

        template = instance.template
        instance_id = instance.id
        now = utcnow()
        if price is not None:
            total = price.total
        else:
            total = collected_payment.amount_paid if collected_payment else 0

        if template.is_free:
            status, payment_status, amount_paid = "confirmed", "unpaid", None
        elif collected_payment is not None:
            status, payment_status = "confirmed", "completed"
            amount_paid = collected_payment.amount_paid
        elif total == 0:
            # Fully discounted paid session; nothing to collect
            status, payment_status, amount_paid = "confirmed", "completed", 0
        else:
            status, payment_status, amount_paid = "pending_payment", "unpaid", None

        if not crud.session_instance.reserve_spots(self.db, instance_id, spots):
            self.db.rollback()
            self._raise_reservation_failure(instance_id, spots)

        booking = Booking(
            organization_id=instance.organization_id,
            session_instance_id=instance_id,
            user_id=user.id,
            number_of_spots=spots,
            status=status,
            payment_status=payment_status,
            currency=currency,
            total_amount=total,
            amount_paid=amount_paid,
            unit_price=price.person1_price if price else None,
            discount_amount=price.discount_amount if price else None,
            stripe_checkout_session_id=collected_payment.checkout_session_id
            if collected_payment
            else None,
            stripe_payment_intent_id=collected_payment.payment_intent_id
            if collected_payment
            else None,
            notes=notes,
            booked_at=now,
            confirmed_at=now if status == "confirmed" else None,
        )
        try:
            crud.booking.add(self.db, booking)
            self.db.commit()
        except IntegrityError:
            # Also undoes the reservation above
            self.db.rollback()
            raise
        self.db.refresh(booking)

        logger.info(
            f"Booking {booking.id} created: {spots} spot(s) on instance {instance_id}, "
            f"status={status} payment_status={payment_status}"
        )
        self._publish("booking.created", booking)
        return booking

    def _raise_reservation_failure(self, instance_id: str, spots: int) -> None:
        current = crud.session_instance.get(self.db, instance_id)
        if current is None:
            raise ValueError(f"Session instance {instance_id} not found")
        if current.is_cancelled:
            raise InvalidStateTransition("SessionInstance", instance_id, current.status, "booked")
        remaining = max(current.template.capacity - current.spots_held, 0)
        raise CapacityExceeded(instance_id, spots, remaining)

    # ========================================
    # Payment transitions
    # ========================================

    def attach_checkout_session(self, booking_id: str, checkout_session_id: str) -> bool:
        """Record the provider checkout for a pending booking: unpaid -> pending."""
        updated = crud.booking.transition(
            self.db,
            booking_id,
            from_statuses=("pending_payment",),
            from_payment_statuses=("unpaid",),
            values={
                "stripe_checkout_session_id": checkout_session_id,
                "payment_status": "pending",
            },
        )
        self.db.commit()
        if not updated:
            logger.warning(
                f"Checkout {checkout_session_id} not attached: booking {booking_id} "
                f"is no longer awaiting payment"
            )
        return updated

    def confirm_booking(
        self,
        booking_id: str,
        *,
        payment_reference: str,
        payment_intent_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
        amount_paid: Optional[int] = None,
    ) -> Booking:
        """
        pending_payment -> confirmed with payment completed.

        Idempotent for a repeated delivery of the same payment.

        Raises:
            BookingNotFound: no such booking
            PaymentForReleasedHold: the hold was released before payment arrived
            InconsistentPaymentReference: already confirmed with another payment
        """
        values = {
            "status": "confirmed",
            "payment_status": "completed",
            "confirmed_at": utcnow(),
        }
        if payment_intent_id:
            values["stripe_payment_intent_id"] = payment_intent_id
        if checkout_session_id:
            values["stripe_checkout_session_id"] = func.coalesce(
                Booking.stripe_checkout_session_id, checkout_session_id
            )
        if amount_paid is not None:
            values["amount_paid"] = amount_paid
        else:
            values["amount_paid"] = Booking.total_amount

        updated = crud.booking.transition(
            self.db, booking_id, from_statuses=("pending_payment",), values=values
        )
        self.db.commit()

        booking = crud.booking.get(self.db, booking_id)
        if updated:
            logger.info(f"Booking {booking_id} confirmed with payment {payment_reference}")
            self._publish("booking.confirmed", booking)
            return booking

        if booking is None:
            raise BookingNotFound(booking_id)

        if booking.status in ("confirmed", "completed"):
            known = {booking.stripe_payment_intent_id, booking.stripe_checkout_session_id}
            if payment_reference in known:
                logger.info(f"Booking {booking_id} already confirmed by {payment_reference}")
                return booking
            raise InconsistentPaymentReference(
                booking_id, booking.payment_reference, payment_reference
            )

        raise PaymentForReleasedHold(booking_id, payment_reference, booking.status)

    def mark_payment_failed(self, booking_id: str) -> bool:
        """
        Record a failed payment attempt. The booking keeps its hold until the
        checkout expires and may still complete on a retry.
        """
        updated = crud.booking.transition(
            self.db,
            booking_id,
            from_statuses=("pending_payment",),
            from_payment_statuses=("unpaid", "pending"),
            values={"payment_status": "failed"},
        )
        self.db.commit()
        if updated:
            logger.info(f"Payment failed for booking {booking_id}")
            self._publish("booking.payment_failed", crud.booking.get(self.db, booking_id))
        else:
            booking = crud.booking.get(self.db, booking_id)
            logger.info(
                f"Ignoring payment failure for booking {booking_id} in state "
                f"{booking.status + '/' + booking.payment_status if booking else 'missing'}"
            )
        return updated

    # ========================================
    # Releases
    # ========================================

    def expire_pending_booking(self, booking_id: str, reason: str = "checkout_expired") -> bool:
        """
        Cancel a booking still awaiting payment and release its spots. Never
        touches a booking that has been paid.
        """
        booking = crud.booking.get(self.db, booking_id)
        if booking is None:
            logger.info(f"Expiry for unknown booking {booking_id} ignored")
            return False

        now = utcnow()
        updated = crud.booking.transition(
            self.db,
            booking_id,
            from_statuses=("pending_payment",),
            values={"status": "cancelled", "cancelled_at": now, "cancellation_reason": reason},
        )
        if not updated:
            self.db.rollback()
            logger.info(f"Booking {booking_id} is {booking.status}, expiry ignored")
            return False

        crud.session_instance.release_spots(
            self.db, booking.session_instance_id, booking.number_of_spots
        )
        self.db.commit()
        logger.info(f"Released {booking.number_of_spots} spot(s) of booking {booking_id}: {reason}")
        self._publish("booking.expired", crud.booking.get(self.db, booking_id))
        return True

    def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> Booking:
        """
        Cancel a pending or confirmed booking, releasing its spots. A completed
        payment is refunded in full, fire-and-forget.
        """
        booking = crud.booking.get(self.db, booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        if booking.status == "cancelled":
            return booking

        now = utcnow()
        values = {"status": "cancelled", "cancelled_at": now, "cancellation_reason": reason}

        # Paid bookings are matched first so a payment confirmed concurrently
        # still gets its refund requested.
        refund = crud.booking.transition(
            self.db,
            booking_id,
            from_statuses=("pending_payment", "confirmed"),
            from_payment_statuses=("completed",),
            values={**values, "refund_requested_at": now},
        )
        updated = refund or crud.booking.transition(
            self.db,
            booking_id,
            from_statuses=("pending_payment", "confirmed"),
            values=values,
        )
        if not updated:
            self.db.rollback()
            current = crud.booking.get(self.db, booking_id)
            if current.status == "cancelled":
                return current
            raise InvalidStateTransition("Booking", booking_id, current.status, "cancelled")

        crud.session_instance.release_spots(
            self.db, booking.session_instance_id, booking.number_of_spots
        )
        self.db.commit()

        cancelled = crud.booking.get(self.db, booking_id)
        logger.info(f"Booking {booking_id} cancelled ({reason or 'no reason given'})")
        if refund:
            self.request_refund(cancelled, RefundReason.REQUESTED_BY_CUSTOMER)
        self._publish("booking.cancelled", cancelled)
        return cancelled

    # ========================================
    # Edits
    # ========================================

    def update_booking(
        self,
        booking_id: str,
        *,
        number_of_spots: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Change the spots or notes of a confirmed booking. An empty string
        clears the notes. A change in spots reserves or releases the
        difference on the instance in the same transaction as the booking
        update, so the held counter never passes capacity.

        Raises:
            BookingNotFound: no such booking
            InvalidStateTransition: the booking is not confirmed, or was edited concurrently
            CapacityExceeded: the extra spots do not fit
            BookingRejected: spots changed on a paid session
        """
        if number_of_spots is not None and number_of_spots < 1:
            raise ValueError("a booking needs at least one spot")

        booking = crud.booking.get(self.db, booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        instance = crud.session_instance.get(self.db, booking.session_instance_id)

        current_spots = booking.number_of_spots
        new_spots = current_spots if number_of_spots is None else number_of_spots
        delta = new_spots - current_spots
        if delta and not instance.template.is_free:
            raise BookingRejected(
                "Spots on a paid booking cannot be changed, cancel and book again",
                status_code=409,
            )

        values = {"number_of_spots": new_spots}
        if notes is not None:
            values["notes"] = notes or None
        updated = crud.booking.transition(
            self.db,
            booking_id,
            from_statuses=("confirmed",),
            from_spots=current_spots,
            values=values,
        )
        if not updated:
            self.db.rollback()
            current = crud.booking.get(self.db, booking_id)
            raise InvalidStateTransition("Booking", booking_id, current.status, "updated")

        if delta > 0 and not crud.session_instance.reserve_spots(self.db, instance.id, delta):
            # Also undoes the booking update above
            self.db.rollback()
            self._raise_reservation_failure(instance.id, delta)
        elif delta < 0:
            crud.session_instance.release_spots(self.db, instance.id, -delta)
        self.db.commit()

        updated_booking = crud.booking.get(self.db, booking_id)
        self.db.refresh(updated_booking)
        if delta:
            logger.info(
                f"Booking {booking_id} changed from {current_spots} to {new_spots} spot(s)"
            )
        self._publish("booking.updated", updated_booking)
        return updated_booking

    # ========================================
    # Attendance
    # ========================================

    def check_in(self, booking_id: str) -> Booking:
        """Toggle attendance: confirmed <-> completed."""
        checked_in = crud.booking.transition(
            self.db, booking_id, from_statuses=("confirmed",), values={"status": "completed"}
        )
        toggled = checked_in or crud.booking.transition(
            self.db, booking_id, from_statuses=("completed",), values={"status": "confirmed"}
        )
        self.db.commit()

        booking = crud.booking.get(self.db, booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        if not toggled:
            raise InvalidStateTransition("Booking", booking_id, booking.status, "checked_in")

        self._publish("booking.checked_in" if checked_in else "booking.check_in_reverted", booking)
        return booking

    # ========================================
    # Helpers
    # ========================================

    def request_refund(self, booking: Booking, reason: RefundReason) -> bool:
        """Queue a full refund of the booking's payment. Returns whether one was queued."""
        reference = booking.payment_reference
        if not reference or not booking.amount_paid:
            logger.info(f"Booking {booking.id} has no collected payment to refund")
            return False
        if self.refund_requester is None:
            logger.error(f"No refund requester configured, refund for {booking.id} not queued")
            return False
        self.refund_requester.request_refund(
            booking_id=booking.id,
            payment_reference=reference,
            amount=booking.amount_paid,
            reason=reason,
        )
        return True

    def _publish(self, event_type: str, booking: Optional[Booking]) -> None:
        if self.publisher is None or booking is None:
            return
        self.publisher.publish(event_type, booking_event_payload(booking), key=booking.id)


def booking_event_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "organization_id": booking.organization_id,
        "session_instance_id": booking.session_instance_id,
        "user_id": booking.user_id,
        "number_of_spots": booking.number_of_spots,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "amount_paid": booking.amount_paid,
        "currency": booking.currency,
    }
