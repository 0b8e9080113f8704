# booking_service/models/organization.py
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship

from booking_service.db.base_class import Base
from booking_service.utils.time_utils import utcnow


class Organization(Base):
    """
    A tenant. Holds the default member pricing applied to paid sessions when
    the member's tier does not define its own.
    """

    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=lambda: f"org_{uuid.uuid4().hex[:12]}")
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)

    # Member pricing defaults: 'discount' | 'fixed' | NULL (members pay drop-in)
    member_price_type = Column(String(20), nullable=True)
    member_discount_percent = Column(Integer, nullable=True)
    member_fixed_price = Column(Integer, nullable=True)  # minor units

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    users = relationship("User", back_populates="organization")
    session_templates = relationship("SessionTemplate", back_populates="organization")
    memberships = relationship("Membership", back_populates="organization")

    __table_args__ = (
        CheckConstraint(
            "member_price_type IS NULL OR member_price_type IN ('discount', 'fixed')",
            name="ck_org_member_price_type",
        ),
        CheckConstraint(
            "member_discount_percent IS NULL OR "
            "(member_discount_percent >= 0 AND member_discount_percent <= 100)",
            name="ck_org_discount_percent_range",
        ),
        CheckConstraint(
            "member_fixed_price IS NULL OR member_fixed_price >= 0",
            name="ck_org_fixed_price_non_negative",
        ),
    )
