# booking_service/services/checkout.py
"""
Booking request orchestration.

This service:
- Quotes prices for a template given the requester's membership
- Resolves the booking user (registered identity or guest)
- Creates the booking through the ledger and starts a provider checkout
- Starts deferred checkouts when a membership is bought with the booking;
  those bookings are created by the payment reconciler once paid
- Answers bounded confirmation polling for a checkout
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.core.config import settings
from booking_service.core.exceptions import BookingRejected, CapacityExceeded
from booking_service.models.booking import Booking
from booking_service.models.membership import Membership
from booking_service.models.session_instance import SessionInstance
from booking_service.models.session_template import SessionTemplate
from booking_service.models.user import User
from booking_service.schemas.booking import BookingCreate, CheckoutStatus
from booking_service.schemas.token import TokenPayload
from booking_service.services import session_instances
from booking_service.services.booking_ledger import BookingLedger
from booking_service.services.capacity import spots_remaining
from booking_service.services.membership_lifecycle import is_active_for_benefits
from booking_service.services.payment.provider_factory import get_payment_provider
from booking_service.services.payment.provider_interface import (
    CheckoutLineItem,
    CreateCheckoutSessionParams,
    PaymentProviderInterface,
)
from booking_service.services.payment.providers.stripe_provider import PaymentError
from booking_service.services.pricing import (
    BookingPriceBreakdown,
    MemberPricingConfig,
    compute_booking_total,
    member_price_for_template,
    member_pricing_config,
)
from booking_service.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


def org_pricing_cache_key(organization_id: str) -> str:
    return f"org-pricing:{organization_id}"


def organization_pricing_config(db: Session, organization_id: str, cache=None) -> MemberPricingConfig:
    """Organization member pricing defaults, read through the lookup cache."""

    def load():
        org = crud.organization.get(db, id=organization_id)
        if org is None:
            return None
        return {
            "price_type": org.member_price_type,
            "discount_percent": org.member_discount_percent,
            "fixed_price": org.member_fixed_price,
        }

    data = cache.get_or_load(org_pricing_cache_key(organization_id), load) if cache else load()
    if data is None:
        raise BookingRejected(f"Organization {organization_id} not found", status_code=404)
    return MemberPricingConfig(**data)


@dataclass
class Quote:
    is_member: bool
    member_price: int
    drop_in_price: int
    breakdown: BookingPriceBreakdown


@dataclass
class BookingOutcome:
    booking: Optional[Booking] = None
    checkout_session_id: Optional[str] = None
    checkout_url: Optional[str] = None


class CheckoutService:
    def __init__(
        self,
        db: Session,
        *,
        publisher=None,
        refund_requester=None,
        cache=None,
        provider_getter: Callable[[], PaymentProviderInterface] = get_payment_provider,
    ):
        self.db = db
        self.cache = cache
        self.publisher = publisher
        self.provider_getter = provider_getter
        self.ledger = BookingLedger(db, publisher=publisher, refund_requester=refund_requester)

    # ========================================
    # Pricing
    # ========================================

    def quote(
        self,
        template: SessionTemplate,
        spots: int,
        user: Optional[User] = None,
        purchase_tier: Optional[Membership] = None,
        now: Optional[datetime] = None,
    ) -> Quote:
        """
        Price a booking for `user` at purchase time. Membership status is read
        from the database on every call.
        """
        org_config = organization_pricing_config(self.db, template.organization_id, self.cache)

        user_membership = None
        if user is not None:
            user_membership = crud.membership.get_for_user(
                self.db, user_id=user.id, organization_id=template.organization_id
            )
        is_member = is_active_for_benefits(user_membership, now)

        if purchase_tier is not None:
            tier = purchase_tier
        elif is_member:
            tier = user_membership.membership
        else:
            tier = None
        config = member_pricing_config(org_config, tier)
        tier_price = None
        if tier is not None:
            tier_price = crud.session_template.get_membership_price(
                self.db, template_id=template.id, membership_id=tier.id
            )

        drop_in = 0 if template.is_free else template.drop_in_price
        member_price = (
            0 if template.is_free else member_price_for_template(template, config, tier_price)
        )
        breakdown = compute_booking_total(
            spots=spots,
            is_member=is_member,
            is_new_membership_purchase=purchase_tier is not None,
            drop_in_price=drop_in,
            member_price=member_price,
            membership_fee=purchase_tier.price if purchase_tier is not None else 0,
        )
        return Quote(
            is_member=is_member,
            member_price=member_price,
            drop_in_price=drop_in,
            breakdown=breakdown,
        )

    # ========================================
    # Booking requests
    # ========================================

    def resolve_user(
        self, request: BookingCreate, identity: Optional[TokenPayload], organization_id: str
    ) -> User:
        if identity is not None:
            if identity.org_id and identity.org_id != organization_id:
                raise BookingRejected("Session belongs to another organization", status_code=403)
            try:
                return crud.user.sync_registered(
                    self.db,
                    organization_id=organization_id,
                    external_id=identity.sub,
                    email=identity.email,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    role="admin" if identity.is_admin else "user",
                )
            except ValueError as e:
                raise BookingRejected(str(e), status_code=409)

        if not request.guest_email or not request.guest_first_name:
            raise BookingRejected("Guest bookings need an email and a first name")
        if request.purchase_membership_id:
            raise BookingRejected("Sign in to purchase a membership")

        user = crud.user.get_or_create_guest(
            self.db,
            organization_id=organization_id,
            email=request.guest_email,
            first_name=request.guest_first_name,
            last_name=request.guest_last_name,
        )
        if not user.is_guest:
            raise BookingRejected(
                "An account with this email already exists. Please sign in to book.",
                status_code=409,
            )
        return user

    def resolve_instance(self, request: BookingCreate) -> SessionInstance:
        if request.session_instance_id:
            instance = crud.session_instance.get(self.db, request.session_instance_id)
            if instance is None:
                raise BookingRejected("Session not found", status_code=404)
        else:
            template = crud.session_template.get(self.db, id=request.session_template_id)
            if template is None:
                raise BookingRejected("Session not found", status_code=404)
            instance = session_instances.get_or_create_instance(
                self.db, template, request.start_time
            )

        if not instance.template.is_bookable:
            raise BookingRejected("This session is not open for booking")
        if as_utc(instance.start_time) <= utcnow():
            raise BookingRejected("This session has already started")
        return instance

    async def create_booking(
        self, request: BookingCreate, identity: Optional[TokenPayload]
    ) -> BookingOutcome:
        """
        Entry point for a booking request:
        1. Resolve the instance (creating it on demand) and the user
        2. Quote the price with current membership status
        3. Either book now (free, or paid with checkout), or start a deferred
           membership checkout
        """
        instance = self.resolve_instance(request)
        template = instance.template
        user = self.resolve_user(request, identity, template.organization_id)

        purchase_tier = None
        if request.purchase_membership_id:
            purchase_tier = self._purchasable_tier(request.purchase_membership_id, template, user)

        quote = self.quote(template, request.number_of_spots, user, purchase_tier)

        if purchase_tier is not None:
            return await self._start_membership_checkout(
                instance, user, request.number_of_spots, quote, purchase_tier
            )

        booking = self.ledger.create_booking(
            instance=instance,
            user=user,
            spots=request.number_of_spots,
            price=None if template.is_free else quote.breakdown,
            currency=settings.CURRENCY,
            notes=request.notes,
        )
        if booking.status != "pending_payment":
            return BookingOutcome(booking=booking)

        return await self._start_booking_checkout(booking, instance, user, quote)

    def _purchasable_tier(
        self, membership_id: str, template: SessionTemplate, user: User
    ) -> Membership:
        tier = crud.membership.get_tier(self.db, membership_id)
        if tier is None or not tier.is_active or tier.organization_id != template.organization_id:
            raise BookingRejected("Membership not available", status_code=404)
        if not tier.stripe_price_id:
            raise BookingRejected("Membership cannot be purchased online")
        current = crud.membership.get_for_user(
            self.db, user_id=user.id, organization_id=template.organization_id
        )
        if is_active_for_benefits(current):
            raise BookingRejected("You already have an active membership", status_code=409)
        return tier

    def _line_items(
        self, template: SessionTemplate, quote: Quote
    ) -> list:
        breakdown = quote.breakdown
        member_rate = breakdown.person1_price != breakdown.additional_person_price
        items = [
            CheckoutLineItem(
                name=f"{template.name} (member price)" if member_rate else template.name,
                unit_amount=breakdown.person1_price,
                quantity=1,
            )
        ]
        if breakdown.additional_people:
            items.append(
                CheckoutLineItem(
                    name=f"{template.name} (additional guest)",
                    unit_amount=breakdown.additional_person_price,
                    quantity=breakdown.additional_people,
                )
            )
        return [item for item in items if item.unit_amount]

    async def _start_booking_checkout(
        self, booking: Booking, instance: SessionInstance, user: User, quote: Quote
    ) -> BookingOutcome:
        template = instance.template
        params = CreateCheckoutSessionParams(
            line_items=self._line_items(template, quote),
            currency=settings.CURRENCY,
            success_url=f"{settings.APP_BASE_URL}/booking/confirmation?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.APP_BASE_URL}/booking/cancelled?booking_id={booking.id}",
            metadata={
                "booking_id": booking.id,
                "session_instance_id": instance.id,
                "session_template_id": template.id,
                "organization_id": template.organization_id,
                "user_id": user.id,
            },
            idempotency_key=f"checkout_{booking.id}",
            expires_at=utcnow() + timedelta(minutes=settings.CHECKOUT_EXPIRY_MINUTES),
            customer_email=user.email,
        )
        try:
            result = await self.provider_getter().create_checkout_session(params)
        except (PaymentError, ValueError):
            # Release the hold rather than wait for the expiry job
            self.ledger.expire_pending_booking(booking.id, reason="checkout_failed")
            raise

        self.ledger.attach_checkout_session(booking.id, result.session_id)
        self.db.refresh(booking)
        return BookingOutcome(
            booking=booking, checkout_session_id=result.session_id, checkout_url=result.url
        )

    async def _start_membership_checkout(
        self,
        instance: SessionInstance,
        user: User,
        spots: int,
        quote: Quote,
        tier: Membership,
    ) -> BookingOutcome:
        """
        Subscription checkout that also pays for the session. No spots are held
        until payment completes; the reconciler books them from the metadata.
        """
        template = instance.template
        held = crud.booking.get_held_for_instance(self.db, instance.id)
        remaining = spots_remaining(template.capacity, held)
        if remaining < spots:
            raise CapacityExceeded(instance.id, spots, remaining)

        metadata = {
            "session_template_id": template.id,
            "session_instance_id": instance.id,
            "organization_id": template.organization_id,
            "start_time": as_utc(instance.start_time).isoformat(),
            "number_of_spots": str(spots),
            "booking_amount": str(quote.breakdown.subtotal),
            "user_id": user.id,
            "external_user_id": user.external_id or "",
            "membership_id": tier.id,
        }
        params = CreateCheckoutSessionParams(
            line_items=[CheckoutLineItem(name=tier.name, price_id=tier.stripe_price_id)]
            + self._line_items(template, quote),
            currency=settings.CURRENCY,
            success_url=f"{settings.APP_BASE_URL}/booking/confirmation?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.APP_BASE_URL}/sessions/{instance.id}",
            metadata=metadata,
            idempotency_key=f"membership_checkout_{user.id}_{instance.id}_{utcnow():%Y%m%d%H%M}",
            expires_at=utcnow() + timedelta(minutes=settings.CHECKOUT_EXPIRY_MINUTES),
            customer_email=user.email,
            mode="subscription",
            subscription_metadata={
                "user_id": user.id,
                "external_user_id": user.external_id or "",
                "organization_id": template.organization_id,
                "membership_id": tier.id,
            },
        )
        result = await self.provider_getter().create_checkout_session(params)
        logger.info(
            f"Started membership checkout {result.session_id} for user {user.id} "
            f"on instance {instance.id}"
        )
        return BookingOutcome(checkout_session_id=result.session_id, checkout_url=result.url)

    # ========================================
    # Confirmation polling
    # ========================================

    def checkout_status(self, checkout_session_id: str, attempt: int) -> CheckoutStatus:
        """
        One poll of a checkout's booking. Polling is bounded: once `attempt`
        reaches the configured maximum, an unconfirmed checkout reports
        'still_processing' and the client stops polling.
        """
        max_attempts = settings.CONFIRMATION_POLL_MAX_ATTEMPTS
        booking = crud.booking.get_by_checkout_session(self.db, checkout_session_id)

        if booking is not None and booking.status in ("confirmed", "completed"):
            status = "confirmed"
        elif booking is not None and booking.status == "cancelled":
            status = "cancelled"
        elif booking is not None and booking.payment_status == "failed":
            status = "payment_failed"
        elif attempt >= max_attempts:
            status = "still_processing"
        else:
            status = "pending"

        return CheckoutStatus(
            checkout_session_id=checkout_session_id,
            status=status,
            booking_id=booking.id if booking else None,
            attempt=attempt,
            max_attempts=max_attempts,
            retry_after_ms=settings.CONFIRMATION_POLL_INTERVAL_MS if status == "pending" else None,
        )
