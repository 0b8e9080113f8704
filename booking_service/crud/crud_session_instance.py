# booking_service/crud/crud_session_instance.py
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from booking_service.models.booking import HELD_STATUSES, Booking
from booking_service.models.session_instance import SessionInstance
from booking_service.models.session_template import SessionTemplate
from booking_service.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class CRUDSessionInstance:
    """
    Instance lookups and the conditional counter updates backing capacity.

    reserve_spots / release_spots / mark_cancelled do not commit: the caller
    commits them together with the booking rows they belong to.
    """

    def get(self, db: Session, instance_id: str) -> Optional[SessionInstance]:
        return (
            db.query(SessionInstance)
            .options(joinedload(SessionInstance.template))
            .filter(SessionInstance.id == instance_id)
            .first()
        )

    def get_by_template_and_start(
        self, db: Session, template_id: str, start_time: datetime
    ) -> Optional[SessionInstance]:
        return (
            db.query(SessionInstance)
            .filter(
                SessionInstance.template_id == template_id,
                SessionInstance.start_time == as_utc(start_time),
            )
            .first()
        )

    def get_or_create(
        self,
        db: Session,
        *,
        template: SessionTemplate,
        start_time: datetime,
        duration_minutes: Optional[int] = None,
    ) -> Tuple[SessionInstance, bool]:
        """
        Insert-if-absent on (template_id, start_time). Commits on its own, so
        the session must not carry unrelated pending changes. A concurrent
        creator winning the unique constraint is resolved by re-fetching.
        """
        start_time = as_utc(start_time)
        existing = self.get_by_template_and_start(db, template.id, start_time)
        if existing:
            return existing, False

        instance = SessionInstance(
            template_id=template.id,
            organization_id=template.organization_id,
            start_time=start_time,
            end_time=start_time + timedelta(minutes=duration_minutes or template.duration_minutes),
            status="scheduled",
            spots_held=0,
        )
        db.add(instance)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            winner = self.get_by_template_and_start(db, template.id, start_time)
            if winner is None:
                raise
            return winner, False
        db.refresh(instance)
        return instance, True

    def reserve_spots(self, db: Session, instance_id: str, spots: int) -> bool:
        """
        Atomically add `spots` to the held counter if the instance is scheduled
        and the result stays within the template's capacity.
        """
        capacity = (
            select(SessionTemplate.capacity)
            .where(SessionTemplate.id == SessionInstance.template_id)
            .correlate(SessionInstance)
            .scalar_subquery()
        )
        updated = (
            db.query(SessionInstance)
            .filter(
                SessionInstance.id == instance_id,
                SessionInstance.status == "scheduled",
                SessionInstance.spots_held + spots <= capacity,
            )
            .update(
                {
                    SessionInstance.spots_held: SessionInstance.spots_held + spots,
                    SessionInstance.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    def release_spots(self, db: Session, instance_id: str, spots: int) -> bool:
        updated = (
            db.query(SessionInstance)
            .filter(
                SessionInstance.id == instance_id,
                SessionInstance.spots_held >= spots,
            )
            .update(
                {
                    SessionInstance.spots_held: SessionInstance.spots_held - spots,
                    SessionInstance.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            logger.error(
                f"Held counter of instance {instance_id} is below {spots}, release skipped"
            )
        return updated == 1

    def mark_cancelled(self, db: Session, instance_id: str, reason: Optional[str]) -> bool:
        """scheduled -> cancelled. False when another caller already cancelled it."""
        now = utcnow()
        updated = (
            db.query(SessionInstance)
            .filter(
                SessionInstance.id == instance_id,
                SessionInstance.status == "scheduled",
            )
            .update(
                {
                    SessionInstance.status: "cancelled",
                    SessionInstance.spots_held: 0,
                    SessionInstance.cancellation_reason: reason,
                    SessionInstance.cancelled_at: now,
                    SessionInstance.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    def count_held_spots(self, db: Session, instance_id: str) -> int:
        """Recompute the held total from bookings, for drift checks."""
        total = (
            db.query(func.coalesce(func.sum(Booking.number_of_spots), 0))
            .filter(
                Booking.session_instance_id == instance_id,
                Booking.status.in_(HELD_STATUSES),
            )
            .scalar()
        )
        return int(total)

    def get_in_range(
        self,
        db: Session,
        *,
        organization_id: str,
        start: datetime,
        end: datetime,
        visibilities: Tuple[str, ...] = ("open",),
    ) -> List[SessionInstance]:
        return (
            db.query(SessionInstance)
            .join(SessionTemplate, SessionTemplate.id == SessionInstance.template_id)
            .options(
                joinedload(SessionInstance.template),
                selectinload(SessionInstance.bookings),
            )
            .filter(
                SessionInstance.organization_id == organization_id,
                SessionInstance.start_time >= as_utc(start),
                SessionInstance.start_time < as_utc(end),
                SessionTemplate.visibility.in_(visibilities),
            )
            .order_by(SessionInstance.start_time)
            .all()
        )

    def get_start_times(
        self, db: Session, template_id: str, start: datetime, end: datetime
    ) -> Set[datetime]:
        rows = (
            db.query(SessionInstance.start_time)
            .filter(
                SessionInstance.template_id == template_id,
                SessionInstance.start_time >= as_utc(start),
                SessionInstance.start_time < as_utc(end),
            )
            .all()
        )
        return {as_utc(row[0]) for row in rows}


session_instance = CRUDSessionInstance()
