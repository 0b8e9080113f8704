from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.api import deps
from booking_service.core.kafka_producer import BookingEventPublisher, get_event_publisher
from booking_service.schemas.membership import UserMembershipRead
from booking_service.schemas.token import TokenPayload
from booking_service.services import membership_lifecycle

router = APIRouter()


@router.post(
    "/memberships/{membership_id}/subscribe-free",
    response_model=UserMembershipRead,
)
async def subscribe_free_membership(
    membership_id: str,
    db: Session = Depends(deps.get_db),
    current_user: TokenPayload = Depends(deps.get_current_user),
    publisher: BookingEventPublisher = Depends(get_event_publisher),
):
    """Join a free membership tier. Any paid subscription is cancelled first."""
    tier = crud.membership.get_tier(db, membership_id)
    if tier is None or (current_user.org_id and current_user.org_id != tier.organization_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")

    try:
        user = crud.user.sync_registered(
            db,
            organization_id=tier.organization_id,
            external_id=current_user.sub,
            email=current_user.email,
            first_name=current_user.first_name,
            last_name=current_user.last_name,
            role="admin" if current_user.is_admin else "user",
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return await membership_lifecycle.subscribe_to_free_tier(
        db,
        user,
        tier,
        provider_getter=deps.get_payment_provider,
        publisher=publisher,
    )
