# booking_service/models/session_template.py
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from booking_service.db.base_class import Base
from booking_service.utils.time_utils import utcnow


class SessionTemplate(Base):
    """
    Definition of a bookable session. Recurring templates are expanded into
    instances through their weekly schedules; one-off templates carry a single
    local date and start time.
    """

    __tablename__ = "session_templates"

    id = Column(String, primary_key=True, default=lambda: f"tpl_{uuid.uuid4().hex[:12]}")
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    capacity = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    # 'open' is bookable, 'hidden' is bookable by direct link, 'closed' is not bookable
    visibility = Column(String(20), nullable=False, default="open")

    # Pricing (minor units)
    pricing_type = Column(String(20), nullable=False, default="free")
    drop_in_price = Column(Integer, nullable=True)
    member_price = Column(Integer, nullable=True)  # overrides org/tier member pricing

    # Recurrence
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurrence_start_date = Column(Date, nullable=True)
    recurrence_end_date = Column(Date, nullable=True)
    timezone = Column(String(64), nullable=False, default="Europe/London")

    # One-off
    one_off_date = Column(Date, nullable=True)
    one_off_start_time = Column(Time, nullable=True)

    created_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="session_templates")
    schedules = relationship(
        "SessionSchedule",
        back_populates="template",
        cascade="all, delete-orphan",
    )
    instances = relationship(
        "SessionInstance",
        back_populates="template",
        cascade="all, delete-orphan",
    )
    membership_prices = relationship(
        "SessionMembershipPrice",
        back_populates="template",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_template_capacity_positive"),
        CheckConstraint("duration_minutes > 0", name="ck_template_duration_positive"),
        CheckConstraint("visibility IN ('open', 'hidden', 'closed')", name="ck_template_visibility"),
        CheckConstraint("pricing_type IN ('free', 'paid')", name="ck_template_pricing_type"),
        CheckConstraint(
            "pricing_type = 'free' OR drop_in_price IS NOT NULL",
            name="ck_template_paid_has_price",
        ),
        CheckConstraint(
            "drop_in_price IS NULL OR drop_in_price >= 0",
            name="ck_template_drop_in_non_negative",
        ),
        CheckConstraint(
            "member_price IS NULL OR member_price >= 0",
            name="ck_template_member_price_non_negative",
        ),
    )

    @property
    def is_free(self) -> bool:
        return self.pricing_type == "free"

    @property
    def is_bookable(self) -> bool:
        return self.visibility != "closed"


class SessionSchedule(Base):
    """A weekly slot of a recurring template, in the template's local time."""

    __tablename__ = "session_schedules"

    id = Column(String, primary_key=True, default=lambda: f"sch_{uuid.uuid4().hex[:12]}")
    template_id = Column(
        String, ForeignKey("session_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week = Column(Integer, nullable=False)  # 0 = Monday ... 6 = Sunday
    time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=True)  # overrides the template's
    is_active = Column(Boolean, nullable=False, default=True)

    template = relationship("SessionTemplate", back_populates="schedules")

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_schedule_day_of_week"),
        CheckConstraint(
            "duration_minutes IS NULL OR duration_minutes > 0",
            name="ck_schedule_duration_positive",
        ),
    )


class SessionMembershipPrice(Base):
    """
    Per-session price for one membership tier. A disabled row withdraws the
    member rate of that tier on this session; an enabled row with a price
    overrides every other member pricing rule.
    """

    __tablename__ = "session_membership_prices"

    id = Column(String, primary_key=True, default=lambda: f"smp_{uuid.uuid4().hex[:12]}")
    session_template_id = Column(
        String, ForeignKey("session_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    membership_id = Column(
        String, ForeignKey("memberships.id", ondelete="CASCADE"), nullable=False
    )
    override_price = Column(Integer, nullable=True)  # minor units
    is_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    template = relationship("SessionTemplate", back_populates="membership_prices")

    __table_args__ = (
        UniqueConstraint(
            "session_template_id", "membership_id", name="uq_session_membership_price"
        ),
        CheckConstraint(
            "override_price IS NULL OR override_price >= 0",
            name="ck_session_membership_price_non_negative",
        ),
    )
