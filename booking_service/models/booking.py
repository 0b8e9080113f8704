# booking_service/models/booking.py
import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from booking_service.db.base_class import Base
from booking_service.utils.time_utils import utcnow

# Statuses that occupy capacity on their instance
HELD_STATUSES = ("pending_payment", "confirmed", "completed")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=lambda: f"bkg_{uuid.uuid4().hex[:12]}")
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    session_instance_id = Column(
        String, ForeignKey("session_instances.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    number_of_spots = Column(Integer, nullable=False, default=1)

    # Lifecycle: pending_payment -> confirmed -> completed, or -> cancelled
    status = Column(String(20), nullable=False)
    # unpaid -> pending -> completed, or -> failed (may still complete on retry)
    payment_status = Column(String(20), nullable=False, default="unpaid")

    # Money, minor units
    currency = Column(String(3), nullable=False, default="gbp")
    total_amount = Column(Integer, nullable=False, default=0)  # quoted at booking time
    amount_paid = Column(Integer, nullable=True)  # recorded on confirmation
    unit_price = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=True)

    # Payment provider references
    stripe_checkout_session_id = Column(String(255), nullable=True, unique=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)

    notes = Column(Text, nullable=True)

    booked_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    refund_requested_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    session_instance = relationship("SessionInstance", back_populates="bookings")
    user = relationship("User", back_populates="bookings")

    __table_args__ = (
        CheckConstraint("number_of_spots >= 1", name="ck_booking_spots_positive"),
        CheckConstraint(
            "status IN ('pending_payment', 'confirmed', 'cancelled', 'completed')",
            name="ck_booking_status",
        ),
        CheckConstraint(
            "payment_status IN ('unpaid', 'pending', 'completed', 'failed')",
            name="ck_booking_payment_status",
        ),
        CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
        Index("idx_booking_instance_status", "session_instance_id", "status"),
        Index("idx_booking_status_booked_at", "status", "booked_at"),
    )

    @property
    def is_held(self) -> bool:
        return self.status in HELD_STATUSES

    @property
    def payment_reference(self):
        """The provider reference this booking was paid with, if any."""
        return self.stripe_payment_intent_id or self.stripe_checkout_session_id
