# booking_service/api/v1/endpoints/bookings.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from booking_service import crud
from booking_service.api.deps import (
    get_checkout_service,
    get_current_user,
    get_current_user_optional,
    get_db,
)
from booking_service.models.booking import Booking
from booking_service.schemas.booking import (
    BookingCancelRequest,
    BookingCreate,
    BookingCreateResponse,
    BookingRead,
    BookingUpdate,
    CheckoutStatus,
    InstanceSummary,
    UserSummary,
)
from booking_service.schemas.token import TokenPayload
from booking_service.services.checkout import CheckoutService

router = APIRouter()


def to_booking_read(booking: Booking) -> BookingRead:
    instance = booking.session_instance
    user = booking.user
    return BookingRead(
        id=booking.id,
        status=booking.status,
        payment_status=booking.payment_status,
        number_of_spots=booking.number_of_spots,
        currency=booking.currency,
        total_amount=booking.total_amount,
        amount_paid=booking.amount_paid,
        unit_price=booking.unit_price,
        discount_amount=booking.discount_amount,
        booked_at=booking.booked_at,
        cancelled_at=booking.cancelled_at,
        cancellation_reason=booking.cancellation_reason,
        notes=booking.notes,
        session_instance=InstanceSummary(
            id=instance.id,
            template_id=instance.template_id,
            template_name=instance.template.name,
            start_time=instance.start_time,
            end_time=instance.end_time,
            status=instance.status,
        ),
        user=UserSummary(
            id=user.id,
            email=user.email,
            name=user.full_name,
            is_guest=user.is_guest,
        ),
    )


def _get_visible_booking(db: Session, booking_id: str, current_user: TokenPayload) -> Booking:
    """Owners see their bookings, organization admins see all of theirs."""
    booking = crud.booking.get_with_details(db, booking_id)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    is_owner = booking.user.external_id == current_user.sub
    is_org_admin = current_user.is_admin and current_user.org_id == booking.organization_id
    if not (is_owner or is_org_admin):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


@router.post(
    "/bookings",
    response_model=BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    booking_in: BookingCreate,
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Book spots on a session. Free sessions are confirmed immediately; paid
    sessions return a checkout URL and stay pending until payment completes.
    """
    outcome = await service.create_booking(booking_in, current_user)
    booking = (
        crud.booking.get_with_details(service.db, outcome.booking.id) if outcome.booking else None
    )
    return BookingCreateResponse(
        booking=to_booking_read(booking) if booking else None,
        checkout_session_id=outcome.checkout_session_id,
        checkout_url=outcome.checkout_url,
    )


@router.get("/bookings/upcoming", response_model=List[BookingRead])
def list_upcoming_bookings(
    db: Session = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
):
    """The caller's confirmed bookings for sessions that have not ended yet."""
    user = crud.user.get_by_external_id(db, current_user.sub)
    if user is None:
        return []
    return [to_booking_read(b) for b in crud.booking.get_upcoming_for_user(db, user.id)]


@router.get("/bookings/{booking_id}", response_model=BookingRead)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
):
    return to_booking_read(_get_visible_booking(db, booking_id, current_user))


@router.patch("/bookings/{booking_id}", response_model=BookingRead)
def update_booking(
    booking_id: str,
    booking_in: BookingUpdate,
    current_user: TokenPayload = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Change the spots or notes of a confirmed booking. Extra spots must still
    fit on the session; paid bookings can only change their notes.
    """
    _get_visible_booking(service.db, booking_id, current_user)
    service.ledger.update_booking(
        booking_id, number_of_spots=booking_in.number_of_spots, notes=booking_in.notes
    )
    return to_booking_read(crud.booking.get_with_details(service.db, booking_id))


@router.post("/bookings/{booking_id}/cancel", response_model=BookingRead)
def cancel_booking(
    booking_id: str,
    cancel_in: BookingCancelRequest,
    current_user: TokenPayload = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    _get_visible_booking(service.db, booking_id, current_user)
    service.ledger.cancel_booking(booking_id, reason=cancel_in.reason or "cancelled_by_user")
    return to_booking_read(crud.booking.get_with_details(service.db, booking_id))


@router.post("/bookings/{booking_id}/check-in", response_model=BookingRead)
def check_in_booking(
    booking_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Toggle attendance for a booking. Organization admins only."""
    booking = _get_visible_booking(service.db, booking_id, current_user)
    if not (current_user.is_admin and current_user.org_id == booking.organization_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    service.ledger.check_in(booking_id)
    return to_booking_read(crud.booking.get_with_details(service.db, booking_id))


@router.get("/checkout/{checkout_session_id}/status", response_model=CheckoutStatus)
def get_checkout_status(
    checkout_session_id: str,
    attempt: int = Query(1, ge=1),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Confirmation polling after returning from the hosted checkout. Clients
    poll with an increasing `attempt`; the answer turns into
    'still_processing' once the attempt budget is spent.
    """
    return service.checkout_status(checkout_session_id, attempt)
