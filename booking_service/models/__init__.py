# booking_service/models/__init__.py
# Import all models so SQLAlchemy can resolve string relationships and
# Base.metadata sees every table.

from booking_service.db.base_class import Base
from booking_service.models.organization import Organization
from booking_service.models.user import User
from booking_service.models.membership import Membership, UserMembership
from booking_service.models.session_template import (
    SessionMembershipPrice,
    SessionSchedule,
    SessionTemplate,
)
from booking_service.models.session_instance import SessionInstance
from booking_service.models.booking import Booking, HELD_STATUSES
from booking_service.models.payment_webhook_event import PaymentWebhookEvent
