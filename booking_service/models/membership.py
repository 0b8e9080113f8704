# booking_service/models/membership.py
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from booking_service.db.base_class import Base
from booking_service.utils.time_utils import utcnow


class Membership(Base):
    """A membership tier an organization sells, optionally with its own session pricing."""

    __tablename__ = "memberships"

    id = Column(String, primary_key=True, default=lambda: f"mem_{uuid.uuid4().hex[:12]}")
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # minor units per billing period
    billing_period = Column(String(20), nullable=False, default="monthly")

    # Tier session pricing; NULL type falls back to the organization defaults
    member_price_type = Column(String(20), nullable=True)
    member_discount_percent = Column(Integer, nullable=True)
    member_fixed_price = Column(Integer, nullable=True)

    stripe_product_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="memberships")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_membership_price_non_negative"),
        CheckConstraint(
            "billing_period IN ('monthly', 'yearly', 'one_time')",
            name="ck_membership_billing_period",
        ),
        CheckConstraint(
            "member_price_type IS NULL OR member_price_type IN ('discount', 'fixed')",
            name="ck_membership_member_price_type",
        ),
        CheckConstraint(
            "member_discount_percent IS NULL OR "
            "(member_discount_percent >= 0 AND member_discount_percent <= 100)",
            name="ck_membership_discount_percent_range",
        ),
    )


class UserMembership(Base):
    """
    A user's subscription state within one organization.

    Status values: 'none', 'active', 'cancelled' (cancelled at period end,
    still active for benefits until current_period_end), 'expired'.
    """

    __tablename__ = "user_memberships"

    id = Column(String, primary_key=True, default=lambda: f"umem_{uuid.uuid4().hex[:12]}")
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False)
    membership_id = Column(String, ForeignKey("memberships.id"), nullable=True)

    status = Column(String(20), nullable=False, default="none")

    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Provider timestamp of the last subscription event applied to this row
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="user_membership")
    membership = relationship("Membership")

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_user_membership_user_org"),
        CheckConstraint(
            "status IN ('none', 'active', 'cancelled', 'expired')",
            name="ck_user_membership_status",
        ),
    )
