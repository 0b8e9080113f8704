# booking_service/crud/crud_membership.py
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from booking_service.models.membership import Membership, UserMembership
from booking_service.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class CRUDMembership:
    """Membership tiers and the per-user subscription rows."""

    def get_tier(self, db: Session, membership_id: str) -> Optional[Membership]:
        return db.query(Membership).filter(Membership.id == membership_id).first()

    def get_for_user(
        self, db: Session, *, user_id: str, organization_id: str
    ) -> Optional[UserMembership]:
        return (
            db.query(UserMembership)
            .options(joinedload(UserMembership.membership))
            .filter(
                UserMembership.user_id == user_id,
                UserMembership.organization_id == organization_id,
            )
            .first()
        )

    def get_by_subscription_id(
        self, db: Session, subscription_id: str
    ) -> Optional[UserMembership]:
        return (
            db.query(UserMembership)
            .filter(UserMembership.stripe_subscription_id == subscription_id)
            .first()
        )

    def get_or_create_for_user(
        self, db: Session, *, user_id: str, organization_id: str
    ) -> UserMembership:
        """Insert-if-absent on (user_id, organization_id), starting in 'none'."""
        existing = self.get_for_user(db, user_id=user_id, organization_id=organization_id)
        if existing:
            return existing

        row = UserMembership(user_id=user_id, organization_id=organization_id, status="none")
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            winner = self.get_for_user(db, user_id=user_id, organization_id=organization_id)
            if winner is None:
                raise
            return winner
        db.refresh(row)
        return row

    def apply_event(
        self,
        db: Session,
        *,
        user_membership_id: str,
        values: Dict[str, Any],
        event_at: Optional[datetime],
    ) -> bool:
        """
        Apply subscription values unless a newer event has already been applied.
        Returns False for an out-of-order (older) event. Commits.
        """
        query = db.query(UserMembership).filter(UserMembership.id == user_membership_id)
        values = {**values, "updated_at": utcnow()}
        if event_at is not None:
            event_at = as_utc(event_at)
            query = query.filter(
                or_(
                    UserMembership.last_event_at.is_(None),
                    UserMembership.last_event_at <= event_at,
                )
            )
            values["last_event_at"] = event_at

        updated = query.update(
            {getattr(UserMembership, key): value for key, value in values.items()},
            synchronize_session=False,
        )
        db.commit()
        if updated != 1:
            logger.info(
                f"Ignoring subscription event from {event_at} for {user_membership_id}: "
                f"a newer event was already applied"
            )
        return updated == 1


membership = CRUDMembership()
