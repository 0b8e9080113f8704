# booking_service/models/payment_webhook_event.py
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

from booking_service.db.base_class import Base
from booking_service.utils.time_utils import utcnow

MAX_WEBHOOK_RETRIES = 5


class PaymentWebhookEvent(Base):
    """
    Audit and failure log of verified provider events. Booking correctness
    does not depend on it; conditional ledger transitions make redelivery safe.
    """

    __tablename__ = "payment_webhook_events"

    id = Column(String, primary_key=True, default=lambda: f"whe_{uuid.uuid4().hex[:12]}")

    # Provider information
    provider_code = Column(String(50), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    provider_event_type = Column(String(100), nullable=False)  # e.g. 'checkout.session.completed'
    provider_created_at = Column(DateTime(timezone=True), nullable=True)

    # Values: 'pending', 'processing', 'processed', 'failed', 'skipped', 'needs_review'
    status = Column(String(50), nullable=False, default="pending")

    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    signature_verified = Column(Boolean, nullable=False, default=False)

    # Processing details
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    next_retry_at = Column(DateTime(timezone=True), nullable=True)

    # Related entities (populated during processing). Not foreign keys: the
    # booking may be gone by the time the event is inspected.
    related_booking_id = Column(String, nullable=True, index=True)
    related_user_membership_id = Column(String, nullable=True)

    # Request metadata
    received_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    ip_address = Column(String(45), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_code", "provider_event_id", name="uq_webhook_provider_event"),
    )

    @property
    def is_processed(self) -> bool:
        return self.status == "processed"

    @property
    def is_retryable(self) -> bool:
        return self.status == "failed" and self.retry_count < MAX_WEBHOOK_RETRIES

    @property
    def max_retries_exceeded(self) -> bool:
        return self.retry_count >= MAX_WEBHOOK_RETRIES
