# booking_service/crud/crud_booking.py
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session, joinedload

from booking_service.models.booking import HELD_STATUSES, Booking
from booking_service.models.session_instance import SessionInstance
from booking_service.utils.time_utils import as_utc, utcnow


class CRUDBooking:
    """
    Booking reads and conditional state updates. Nothing here commits; the
    ledger owns the transaction boundaries.
    """

    def get(self, db: Session, booking_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.id == booking_id).first()

    def get_with_details(self, db: Session, booking_id: str) -> Optional[Booking]:
        return (
            db.query(Booking)
            .options(
                joinedload(Booking.session_instance).joinedload(SessionInstance.template),
                joinedload(Booking.user),
            )
            .filter(Booking.id == booking_id)
            .first()
        )

    def get_by_checkout_session(
        self, db: Session, checkout_session_id: str
    ) -> Optional[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.stripe_checkout_session_id == checkout_session_id)
            .first()
        )

    def get_for_instance(
        self,
        db: Session,
        instance_id: str,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[Booking]:
        query = db.query(Booking).filter(Booking.session_instance_id == instance_id)
        if statuses is not None:
            query = query.filter(Booking.status.in_(tuple(statuses)))
        return query.all()

    def get_held_for_instance(self, db: Session, instance_id: str) -> List[Booking]:
        return self.get_for_instance(db, instance_id, HELD_STATUSES)

    def add(self, db: Session, booking: Booking) -> Booking:
        db.add(booking)
        db.flush()
        return booking

    def transition(
        self,
        db: Session,
        booking_id: str,
        *,
        from_statuses: Iterable[str],
        values: Dict[str, Any],
        from_payment_statuses: Optional[Iterable[str]] = None,
        from_spots: Optional[int] = None,
    ) -> bool:
        """
        Conditional UPDATE guarded on the expected source state. Returns False
        when the booking is no longer in one of `from_statuses`, which makes
        duplicate and racing transitions no-ops.
        """
        query = db.query(Booking).filter(
            Booking.id == booking_id,
            Booking.status.in_(tuple(from_statuses)),
        )
        if from_payment_statuses is not None:
            query = query.filter(Booking.payment_status.in_(tuple(from_payment_statuses)))
        if from_spots is not None:
            query = query.filter(Booking.number_of_spots == from_spots)

        values = {**values, "updated_at": utcnow()}
        updated = query.update(
            {getattr(Booking, key): value for key, value in values.items()},
            synchronize_session=False,
        )
        return updated == 1

    def get_upcoming_for_user(
        self, db: Session, user_id: str, *, now: Optional[datetime] = None
    ) -> List[Booking]:
        """Confirmed or checked-in bookings whose session has not ended, soonest first."""
        now = as_utc(now) if now is not None else utcnow()
        return (
            db.query(Booking)
            .join(SessionInstance, SessionInstance.id == Booking.session_instance_id)
            .options(
                joinedload(Booking.session_instance).joinedload(SessionInstance.template),
                joinedload(Booking.user),
            )
            .filter(
                Booking.user_id == user_id,
                Booking.status.in_(("confirmed", "completed")),
                SessionInstance.end_time >= now,
            )
            .order_by(SessionInstance.start_time)
            .all()
        )

    def get_stale_pending(
        self, db: Session, *, booked_before: datetime, limit: int = 200
    ) -> List[Booking]:
        return (
            db.query(Booking)
            .filter(
                Booking.status == "pending_payment",
                Booking.booked_at < as_utc(booked_before),
            )
            .order_by(Booking.booked_at)
            .limit(limit)
            .all()
        )


booking = CRUDBooking()
