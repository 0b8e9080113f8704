"""
Tests for the webhook event log.

Verifies that:
- A redelivered event reuses its log row
- Failures back off 1m, 5m, 25m, ... and stop being retried after the limit
- Only failed events whose backoff has elapsed are offered for retry
- Processed and skipped events count as already handled
"""

from datetime import timedelta

import pytest

from booking_service import crud
from booking_service.models.payment_webhook_event import MAX_WEBHOOK_RETRIES
from booking_service.schemas.webhook import WebhookEventCreate
from booking_service.utils.time_utils import as_utc, utcnow


def _event_in(event_id="evt_1"):
    return WebhookEventCreate(
        provider_code="stripe",
        provider_event_id=event_id,
        provider_event_type="checkout.session.completed",
        payload={"id": event_id},
        signature_verified=True,
        ip_address="203.0.113.7",
    )


class TestWebhookEventLog:

    @pytest.fixture(autouse=True)
    def setup(self, db_session):
        self.db = db_session

    def test_redelivery_reuses_row(self):
        first = crud.webhook_event.upsert_event(self.db, obj_in=_event_in())
        second = crud.webhook_event.upsert_event(self.db, obj_in=_event_in())

        assert first.id == second.id
        assert first.status == "pending"

    def test_failure_backoff(self):
        stored = crud.webhook_event.upsert_event(self.db, obj_in=_event_in())
        delays = []
        for _ in range(MAX_WEBHOOK_RETRIES - 1):
            before = utcnow()
            event = crud.webhook_event.mark_failed(self.db, event_id=stored.id, error="boom")
            delays.append(round((as_utc(event.next_retry_at) - before).total_seconds() / 60))

        assert delays == [1, 5, 25, 125]

        final = crud.webhook_event.mark_failed(self.db, event_id=stored.id, error="boom")
        assert final.retry_count == MAX_WEBHOOK_RETRIES
        assert final.next_retry_at is None
        assert final.max_retries_exceeded

    def test_only_due_failures_are_retryable(self):
        due = crud.webhook_event.upsert_event(self.db, obj_in=_event_in("evt_due"))
        later = crud.webhook_event.upsert_event(self.db, obj_in=_event_in("evt_later"))
        crud.webhook_event.upsert_event(self.db, obj_in=_event_in("evt_pending"))
        for stored in (due, later):
            crud.webhook_event.mark_failed(self.db, event_id=stored.id, error="boom")
        due.next_retry_at = utcnow() - timedelta(seconds=1)
        self.db.commit()

        retryable = crud.webhook_event.get_retryable_events(self.db)

        assert [e.provider_event_id for e in retryable] == ["evt_due"]

    def test_already_processed(self):
        processed = crud.webhook_event.upsert_event(self.db, obj_in=_event_in("evt_done"))
        skipped = crud.webhook_event.upsert_event(self.db, obj_in=_event_in("evt_skip"))
        review = crud.webhook_event.upsert_event(self.db, obj_in=_event_in("evt_review"))
        crud.webhook_event.mark_processed(self.db, event_id=processed.id, related_booking_id="bkg_1")
        crud.webhook_event.mark_skipped(self.db, event_id=skipped.id, reason="unpaid")
        crud.webhook_event.mark_needs_review(self.db, event_id=review.id, error="overbooked")

        def handled(event_id):
            return crud.webhook_event.is_already_processed(
                self.db, provider_code="stripe", provider_event_id=event_id
            )

        assert handled("evt_done")
        assert handled("evt_skip")
        # Needs a human, a redelivery is reprocessed
        assert not handled("evt_review")
        assert not handled("evt_unknown")
