# booking_service/crud/crud_webhook_event.py
from typing import List, Optional
from datetime import timedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy import and_

from booking_service.crud.base import CRUDBase
from booking_service.models.payment_webhook_event import (
    MAX_WEBHOOK_RETRIES,
    PaymentWebhookEvent,
)
from booking_service.schemas.webhook import (
    WebhookEventCreate,
    WebhookEventStatus,
    WebhookEventUpdate,
)
from booking_service.utils.time_utils import utcnow


class CRUDWebhookEvent(CRUDBase[PaymentWebhookEvent, WebhookEventCreate, WebhookEventUpdate]):
    """Audit log of verified provider events and their processing outcome."""

    def get_by_provider_event_id(
        self, db: Session, *, provider_code: str, provider_event_id: str
    ) -> Optional[PaymentWebhookEvent]:
        return (
            db.query(self.model)
            .filter(
                and_(
                    self.model.provider_code == provider_code,
                    self.model.provider_event_id == provider_event_id,
                )
            )
            .first()
        )

    def is_already_processed(
        self, db: Session, *, provider_code: str, provider_event_id: str
    ) -> bool:
        event = self.get_by_provider_event_id(
            db, provider_code=provider_code, provider_event_id=provider_event_id
        )
        return event is not None and event.status in (
            WebhookEventStatus.processed.value,
            WebhookEventStatus.skipped.value,
        )

    def upsert_event(
        self, db: Session, *, obj_in: WebhookEventCreate, provider_created_at=None
    ) -> PaymentWebhookEvent:
        """Record a delivery. Redeliveries of a known event reuse its row."""
        existing = self.get_by_provider_event_id(
            db,
            provider_code=obj_in.provider_code,
            provider_event_id=obj_in.provider_event_id,
        )
        if existing:
            existing.signature_verified = obj_in.signature_verified
            existing.ip_address = obj_in.ip_address
            db.add(existing)
            db.commit()
            db.refresh(existing)
            return existing

        db_obj = PaymentWebhookEvent(
            **obj_in.model_dump(),
            provider_created_at=provider_created_at,
            status=WebhookEventStatus.pending.value,
        )
        db.add(db_obj)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event
            db.rollback()
            winner = self.get_by_provider_event_id(
                db,
                provider_code=obj_in.provider_code,
                provider_event_id=obj_in.provider_event_id,
            )
            if winner is None:
                raise
            return winner
        db.refresh(db_obj)
        return db_obj

    def _set_status(
        self, db: Session, event_id: str, status: WebhookEventStatus, **values
    ) -> Optional[PaymentWebhookEvent]:
        event = self.get(db, id=event_id)
        if not event:
            return None
        event.status = status.value
        for key, value in values.items():
            setattr(event, key, value)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    def mark_processing(self, db: Session, *, event_id: str) -> Optional[PaymentWebhookEvent]:
        return self._set_status(db, event_id, WebhookEventStatus.processing)

    def mark_processed(
        self,
        db: Session,
        *,
        event_id: str,
        related_booking_id: Optional[str] = None,
        related_user_membership_id: Optional[str] = None,
    ) -> Optional[PaymentWebhookEvent]:
        values = {"processed_at": utcnow(), "processing_error": None, "next_retry_at": None}
        if related_booking_id:
            values["related_booking_id"] = related_booking_id
        if related_user_membership_id:
            values["related_user_membership_id"] = related_user_membership_id
        return self._set_status(db, event_id, WebhookEventStatus.processed, **values)

    def mark_failed(
        self,
        db: Session,
        *,
        event_id: str,
        error: str,
    ) -> Optional[PaymentWebhookEvent]:
        """Mark an event as failed and schedule a retry with exponential backoff."""
        event = self.get(db, id=event_id)
        if not event:
            return None

        event.status = WebhookEventStatus.failed.value
        event.processing_error = error
        event.retry_count = (event.retry_count or 0) + 1

        if event.retry_count < MAX_WEBHOOK_RETRIES:
            delay = 60 * (5 ** (event.retry_count - 1))  # 1m, 5m, 25m, 2h
            event.next_retry_at = utcnow() + timedelta(seconds=delay)
        else:
            event.next_retry_at = None

        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    def mark_skipped(
        self, db: Session, *, event_id: str, reason: str
    ) -> Optional[PaymentWebhookEvent]:
        return self._set_status(
            db,
            event_id,
            WebhookEventStatus.skipped,
            processing_error=reason,
            processed_at=utcnow(),
        )

    def mark_needs_review(
        self,
        db: Session,
        *,
        event_id: str,
        error: str,
        related_booking_id: Optional[str] = None,
    ) -> Optional[PaymentWebhookEvent]:
        values = {"processing_error": error, "processed_at": utcnow(), "next_retry_at": None}
        if related_booking_id:
            values["related_booking_id"] = related_booking_id
        return self._set_status(db, event_id, WebhookEventStatus.needs_review, **values)

    def get_retryable_events(
        self, db: Session, *, limit: int = 100
    ) -> List[PaymentWebhookEvent]:
        """Failed events whose backoff has elapsed."""
        return (
            db.query(self.model)
            .filter(
                and_(
                    self.model.status == WebhookEventStatus.failed.value,
                    self.model.retry_count < MAX_WEBHOOK_RETRIES,
                    self.model.next_retry_at <= utcnow(),
                )
            )
            .order_by(self.model.next_retry_at)
            .limit(limit)
            .all()
        )


webhook_event = CRUDWebhookEvent(PaymentWebhookEvent)
