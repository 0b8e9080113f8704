# booking_service/core/exceptions.py
"""
Error taxonomy for the booking engine.

Services raise these; the API layer maps them to HTTP status codes and the
payment reconciler decides per class whether an event is retried later or
flagged for operator review.
"""
from typing import Optional


class BookingError(Exception):
    """Base class for booking engine errors."""

    #: Whether the payment reconciler should schedule a retry.
    retryable = False
    #: Whether the condition needs a human (operator alert).
    reportable = False

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(message)


class CapacityExceeded(BookingError):
    """The requested spots exceed what remains on the instance."""

    def __init__(self, instance_id: str, requested: int, remaining: Optional[int] = None):
        super().__init__(
            f"Session instance {instance_id} cannot hold {requested} more spot(s)",
            instance_id=instance_id,
            requested=requested,
            remaining=remaining,
        )
        self.instance_id = instance_id
        self.requested = requested
        self.remaining = remaining


class InvalidStateTransition(BookingError):
    """An operation was attempted from a state that does not allow it."""

    def __init__(self, entity: str, entity_id: str, current: str, attempted: str):
        super().__init__(
            f"{entity} {entity_id} cannot move from '{current}' to '{attempted}'",
            entity=entity,
            entity_id=entity_id,
            current=current,
            attempted=attempted,
        )
        self.current = current
        self.attempted = attempted


class BookingNotFound(BookingError):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found", booking_id=booking_id)
        self.booking_id = booking_id


class InconsistentPaymentReference(BookingError):
    """A confirmed booking received a confirmation for a different payment."""

    reportable = True

    def __init__(self, booking_id: str, recorded: Optional[str], received: str):
        super().__init__(
            f"Booking {booking_id} is already confirmed with payment "
            f"{recorded}, received {received}",
            booking_id=booking_id,
            recorded=recorded,
            received=received,
        )
        self.booking_id = booking_id


class PaymentForReleasedHold(BookingError):
    """Payment was collected for a booking whose hold was already released."""

    reportable = True

    def __init__(self, booking_id: str, payment_reference: str, status: Optional[str]):
        super().__init__(
            f"Payment {payment_reference} collected for booking {booking_id} "
            f"in state '{status or 'missing'}'",
            booking_id=booking_id,
            payment_reference=payment_reference,
            status=status,
        )
        self.booking_id = booking_id


class OverbookOnPayment(BookingError):
    """A paid deferred checkout could not be booked because the slot filled."""

    reportable = True

    def __init__(self, instance_id: str, checkout_session_id: str, requested: int):
        super().__init__(
            f"Checkout {checkout_session_id} paid for {requested} spot(s) on "
            f"full instance {instance_id}",
            instance_id=instance_id,
            checkout_session_id=checkout_session_id,
            requested=requested,
        )
        self.instance_id = instance_id
        self.checkout_session_id = checkout_session_id


class UpstreamLookupFailed(BookingError):
    """An external identity needed to apply an event is not resolvable yet."""

    retryable = True


class BookingRejected(BookingError):
    """A booking request that can never succeed as submitted."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
