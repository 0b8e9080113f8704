"""
Membership benefit evaluation and subscription status mapping.

A membership gives member pricing while it is active, and also after the
subscriber cancelled but before the paid-up period ends. Always evaluated at
purchase time against the stored row.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.core.exceptions import BookingRejected
from booking_service.models.membership import Membership, UserMembership
from booking_service.models.user import User
from booking_service.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

STATUS_NONE = "none"
STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"


def is_active_for_benefits(membership, now: Optional[datetime] = None) -> bool:
    if membership is None:
        return False
    now = as_utc(now) if now is not None else utcnow()

    if membership.status == STATUS_ACTIVE:
        return True

    if membership.status == STATUS_CANCELLED and membership.current_period_end is not None:
        return now < as_utc(membership.current_period_end)

    return False


def derive_subscription_status(
    cancel_at_period_end: bool, provider_status: Optional[str]
) -> str:
    """Local status for a subscription update from the payment provider."""
    if cancel_at_period_end:
        return STATUS_CANCELLED
    if provider_status == "canceled":
        return STATUS_EXPIRED
    return STATUS_ACTIVE


async def subscribe_to_free_tier(
    db: Session,
    user: User,
    tier: Optional[Membership],
    *,
    provider_getter,
    publisher=None,
) -> UserMembership:
    """
    Join a free tier directly, without a checkout. A paid subscription the
    member still has is cancelled with the provider first. The switch is
    stamped as the latest applied event, so the provider's late events for
    the cancelled subscription are ignored.

    Raises:
        BookingRejected: the tier is unknown, inactive or not free
        PaymentError: the existing subscription could not be cancelled
    """
    if tier is None or not tier.is_active or tier.organization_id != user.organization_id:
        raise BookingRejected("Membership not available", status_code=404)
    if tier.price > 0:
        raise BookingRejected("This membership requires payment")

    row = crud.membership.get_or_create_for_user(
        db, user_id=user.id, organization_id=tier.organization_id
    )
    if row.stripe_subscription_id:
        await provider_getter().cancel_subscription(row.stripe_subscription_id)

    now = utcnow()
    crud.membership.apply_event(
        db,
        user_membership_id=row.id,
        values={
            "membership_id": tier.id,
            "status": STATUS_ACTIVE,
            "stripe_subscription_id": None,
            "current_period_start": now,
            "current_period_end": None,
            "cancelled_at": None,
            "last_event_at": now,
        },
        event_at=None,
    )
    logger.info(f"User {user.id} joined free membership {tier.id}")
    if publisher is not None:
        publisher.publish(
            "membership.updated",
            {"user_membership_id": row.id, "status": STATUS_ACTIVE, "membership_id": tier.id},
            key=row.id,
        )
    db.refresh(row)
    return row
