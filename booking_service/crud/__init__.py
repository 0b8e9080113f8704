# booking_service/crud/__init__.py

from .crud_booking import booking
from .crud_membership import membership
from .crud_organization import organization
from .crud_session_instance import session_instance
from .crud_session_template import session_template
from .crud_user import user
from .crud_webhook_event import webhook_event
