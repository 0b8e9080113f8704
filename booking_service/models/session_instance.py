# booking_service/models/session_instance.py
import uuid

from sqlalchemy import (
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


class SessionInstance(Base):
    """
    A concrete occurrence of a template.

    `spots_held` is the reservation counter: the sum of number_of_spots over
    the instance's bookings in a held state. It is only changed through the
    conditional updates in crud_session_instance, which never let it pass the
    template's capacity.
    """

    __tablename__ = "session_instances"

    id = Column(String, primary_key=True, default=lambda: f"ins_{uuid.uuid4().hex[:12]}")
    template_id = Column(
        String, ForeignKey("session_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)

    status = Column(String(20), nullable=False, default="scheduled")
    spots_held = Column(Integer, nullable=False, default=0, server_default="0")

    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    template = relationship("SessionTemplate", back_populates="instances")
    bookings = relationship(
        "Booking",
        back_populates="session_instance",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("template_id", "start_time", name="uq_instance_template_start"),
        CheckConstraint("spots_held >= 0", name="ck_instance_spots_held_non_negative"),
        CheckConstraint("status IN ('scheduled', 'cancelled')", name="ck_instance_status"),
        CheckConstraint("end_time > start_time", name="ck_instance_time_order"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"
