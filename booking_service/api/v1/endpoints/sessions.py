# booking_service/api/v1/endpoints/sessions.py
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.api.deps import (
    get_checkout_service,
    get_current_admin,
    get_current_user_optional,
    get_db,
)
from booking_service.core.config import settings
from booking_service.core.kafka_producer import BookingEventPublisher, get_event_publisher
from booking_service.schemas.session import (
    CancellationSummary,
    InstanceCancelRequest,
    InstanceGenerationResult,
    PriceQuote,
    SessionInstanceRead,
    SessionMembershipPriceRead,
    SessionMembershipPricesUpdate,
    SessionTemplateCreate,
    SessionTemplateRead,
    SpotsRemaining,
)
from booking_service.schemas.token import TokenPayload
from booking_service.services import session_instances
from booking_service.services.checkout import CheckoutService
from booking_service.services.payment.refund_requester import (
    RefundRequester,
    get_refund_requester,
)
from booking_service.utils.time_utils import utcnow

router = APIRouter()


def _get_admin_template(db: Session, template_id: str, admin: TokenPayload):
    template = crud.session_template.get_for_organization(
        db, template_id=template_id, organization_id=admin.org_id
    )
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session template not found")
    return template


# ========================================
# Session instances
# ========================================


@router.get("/session-instances", response_model=List[SessionInstanceRead])
def list_session_instances(
    organization_id: str = Query(...),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional),
):
    """Calendar of instances in [start, end), one week ahead by default."""
    start = start or utcnow()
    end = end or start + timedelta(days=7)
    include_hidden = bool(
        current_user and current_user.is_admin and current_user.org_id == organization_id
    )
    rows = session_instances.list_instances(
        db, organization_id=organization_id, start=start, end=end, include_hidden=include_hidden
    )
    return [
        SessionInstanceRead(
            id=instance.id,
            template_id=instance.template_id,
            template_name=instance.template.name,
            start_time=instance.start_time,
            end_time=instance.end_time,
            status=instance.status,
            capacity=instance.template.capacity,
            spots_remaining=0 if instance.is_cancelled else remaining,
            pricing_type=instance.template.pricing_type,
            drop_in_price=instance.template.drop_in_price,
        )
        for instance, remaining in rows
    ]


@router.get("/session-instances/{instance_id}/spots-remaining", response_model=SpotsRemaining)
def get_spots_remaining(instance_id: str, db: Session = Depends(get_db)):
    availability = session_instances.get_availability(db, instance_id)
    if availability is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    instance, remaining = availability
    return SpotsRemaining(
        session_instance_id=instance.id,
        capacity=instance.template.capacity,
        spots_remaining=0 if instance.is_cancelled else remaining,
    )


@router.post("/session-instances/{instance_id}/cancel", response_model=CancellationSummary)
def cancel_session_instance(
    instance_id: str,
    cancel_in: InstanceCancelRequest,
    db: Session = Depends(get_db),
    admin: TokenPayload = Depends(get_current_admin),
    publisher: BookingEventPublisher = Depends(get_event_publisher),
    refund_requester: RefundRequester = Depends(get_refund_requester),
):
    """Cancel a session and all its bookings; paid bookings are refunded."""
    instance = crud.session_instance.get(db, instance_id)
    if instance is None or instance.organization_id != admin.org_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    result = session_instances.cancel_instance(
        db,
        instance_id,
        cancel_in.reason,
        publisher=publisher,
        refund_requester=refund_requester,
    )
    return CancellationSummary(
        session_instance_id=result.session_instance_id,
        cancelled_bookings=result.cancelled_bookings,
        refunded_bookings=result.refunded_bookings,
    )


# ========================================
# Session templates
# ========================================


@router.get("/session-templates/{template_id}/price-quote", response_model=PriceQuote)
def get_price_quote(
    template_id: str,
    spots: int = Query(1, ge=1, le=50),
    purchase_membership_id: Optional[str] = Query(None),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional),
    service: CheckoutService = Depends(get_checkout_service),
):
    template = crud.session_template.get(service.db, id=template_id)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session template not found")

    user = crud.user.get_by_external_id(service.db, current_user.sub) if current_user else None
    tier = None
    if purchase_membership_id:
        tier = crud.membership.get_tier(service.db, purchase_membership_id)
        if tier is None or tier.organization_id != template.organization_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")

    quote = service.quote(template, spots, user, tier)
    breakdown = quote.breakdown
    return PriceQuote(
        session_template_id=template.id,
        number_of_spots=spots,
        currency=settings.CURRENCY,
        is_member=quote.is_member,
        drop_in_price=quote.drop_in_price,
        member_price=quote.member_price,
        person1_price=breakdown.person1_price,
        additional_person_price=breakdown.additional_person_price,
        additional_people=breakdown.additional_people,
        subtotal=breakdown.subtotal,
        membership_fee=breakdown.membership_fee,
        discount_amount=breakdown.discount_amount,
        total=breakdown.total,
    )


@router.post(
    "/session-templates",
    response_model=SessionTemplateRead,
    status_code=status.HTTP_201_CREATED,
)
def create_session_template(
    template_in: SessionTemplateCreate,
    db: Session = Depends(get_db),
    admin: TokenPayload = Depends(get_current_admin),
):
    """Create a template and materialize its upcoming instances."""
    creator = crud.user.get_by_external_id(db, admin.sub)
    template = crud.session_template.create_with_schedules(
        db,
        obj_in=template_in,
        organization_id=admin.org_id,
        created_by_id=creator.id if creator else None,
        default_timezone=settings.DEFAULT_TIMEZONE,
    )
    session_instances.materialize_instances(db, template)
    db.refresh(template)
    return template


@router.post(
    "/session-templates/{template_id}/generate-instances",
    response_model=InstanceGenerationResult,
)
def generate_instances(
    template_id: str,
    db: Session = Depends(get_db),
    admin: TokenPayload = Depends(get_current_admin),
):
    template = _get_admin_template(db, template_id, admin)
    created, skipped = session_instances.materialize_instances(db, template)
    return InstanceGenerationResult(session_template_id=template.id, created=created, skipped=skipped)


@router.get(
    "/session-templates/{template_id}/membership-prices",
    response_model=List[SessionMembershipPriceRead],
)
def get_membership_prices(
    template_id: str,
    db: Session = Depends(get_db),
    admin: TokenPayload = Depends(get_current_admin),
):
    template = _get_admin_template(db, template_id, admin)
    return template.membership_prices


@router.put(
    "/session-templates/{template_id}/membership-prices",
    response_model=List[SessionMembershipPriceRead],
)
def replace_membership_prices(
    template_id: str,
    prices_in: SessionMembershipPricesUpdate,
    db: Session = Depends(get_db),
    admin: TokenPayload = Depends(get_current_admin),
):
    """
    Replace the per-tier prices of a session. A tier left out falls back to
    its own or the organization's member pricing.
    """
    template = _get_admin_template(db, template_id, admin)
    for price in prices_in.prices:
        tier = crud.membership.get_tier(db, price.membership_id)
        if tier is None or tier.organization_id != template.organization_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Membership {price.membership_id} not found",
            )
    return crud.session_template.replace_membership_prices(
        db, template=template, prices=prices_in.prices
    )


@router.delete("/session-templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session_template(
    template_id: str,
    db: Session = Depends(get_db),
    admin: TokenPayload = Depends(get_current_admin),
):
    """Delete a template with its schedules, instances and their bookings."""
    template = _get_admin_template(db, template_id, admin)
    crud.session_template.remove(db, id=template.id)
    return None
