# booking_service/models/user.py
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from booking_service.db.base_class import Base
from booking_service.utils.time_utils import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: f"usr_{uuid.uuid4().hex[:12]}")
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    # Identity provider subject. NULL for guests until they register.
    external_id = Column(String(255), nullable=True, unique=True)

    email = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    is_guest = Column(Boolean, nullable=False, default=False)
    role = Column(String(20), nullable=False, default="user")

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="users")
    bookings = relationship("Booking", back_populates="user")
    user_membership = relationship("UserMembership", back_populates="user", uselist=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uq_user_org_email"),
        CheckConstraint("role IN ('guest', 'user', 'admin')", name="ck_user_role"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)
