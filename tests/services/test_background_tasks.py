"""
Tests for the scheduled booking jobs.

Verifies that:
- Abandoned pending bookings are released only after checkout expiry plus grace
- Recurring templates get their upcoming instances exactly once
- Failed webhook events are replayed once their backoff has elapsed
- Stored events that can no longer be parsed are skipped, not retried forever
"""

from datetime import date, time, timedelta
from unittest.mock import MagicMock, patch

import pytest

from booking_service import crud
from booking_service.background_tasks import booking_tasks
from booking_service.schemas.webhook import WebhookEventCreate
from booking_service.services.booking_ledger import BookingLedger
from booking_service.services.pricing import compute_booking_total
from booking_service.utils.time_utils import utcnow
from tests.utils.factories import (
    add_schedule,
    create_instance,
    create_organization,
    create_template,
    create_user,
)


@pytest.fixture(autouse=True)
def patched_dependencies(publisher, refund_requester):
    with patch.object(booking_tasks, "get_event_publisher", return_value=publisher), patch.object(
        booking_tasks, "get_refund_requester", return_value=refund_requester
    ):
        yield


def _pending_booking(db, org):
    template = create_template(db, org.id, pricing_type="paid", drop_in_price=1500)
    price = compute_booking_total(
        spots=1, is_member=False, is_new_membership_purchase=False,
        drop_in_price=1500, member_price=1500,
    )
    ledger = BookingLedger(db)
    booking = ledger.create_booking(
        instance=create_instance(db, template), user=create_user(db, org.id), spots=1, price=price
    )
    ledger.attach_checkout_session(booking.id, f"cs_{booking.id}")
    return booking


class TestExpireAbandonedBookings:

    def test_releases_only_stale_bookings(self, db_session, session_factory, publisher):
        org = create_organization(db_session)
        booking = _pending_booking(db_session, org)

        too_early = booking_tasks.expire_abandoned_bookings(session_factory, now=utcnow())
        released = booking_tasks.expire_abandoned_bookings(
            session_factory, now=utcnow() + timedelta(hours=1)
        )

        assert too_early == 0
        assert released == 1
        db_session.expire_all()
        expired = crud.booking.get(db_session, booking.id)
        assert expired.status == "cancelled"
        assert expired.cancellation_reason == "checkout_abandoned"
        assert crud.session_instance.get(db_session, expired.session_instance_id).spots_held == 0
        assert [c.args[0] for c in publisher.publish.call_args_list] == ["booking.expired"]

    def test_confirmed_bookings_are_untouched(self, db_session, session_factory):
        org = create_organization(db_session)
        booking = _pending_booking(db_session, org)
        BookingLedger(db_session).confirm_booking(booking.id, payment_reference="pi_1")

        released = booking_tasks.expire_abandoned_bookings(
            session_factory, now=utcnow() + timedelta(hours=1)
        )

        assert released == 0
        db_session.expire_all()
        assert crud.booking.get(db_session, booking.id).status == "confirmed"


class TestGenerateUpcomingInstances:

    def test_generates_once(self, db_session, session_factory):
        org = create_organization(db_session)
        template = create_template(
            db_session, org.id, is_recurring=True, one_off_date=None, one_off_start_time=None
        )
        add_schedule(db_session, template, day_of_week=0, at=time(7, 0))

        first = booking_tasks.generate_upcoming_instances(session_factory)
        second = booking_tasks.generate_upcoming_instances(session_factory)

        # Three months of Mondays
        assert 12 <= first <= 14
        assert second == 0

    def test_ended_recurrence_is_ignored(self, db_session, session_factory):
        org = create_organization(db_session)
        template = create_template(
            db_session,
            org.id,
            is_recurring=True,
            one_off_date=None,
            one_off_start_time=None,
            recurrence_start_date=date.today() - timedelta(days=60),
            recurrence_end_date=date.today() - timedelta(days=1),
        )
        add_schedule(db_session, template, day_of_week=2, at=time(19, 0))

        assert booking_tasks.generate_upcoming_instances(session_factory) == 0


class TestRetryFailedWebhookEvents:

    def _failed_event(self, db, payload, event_id="evt_retry"):
        stored = crud.webhook_event.upsert_event(
            db,
            obj_in=WebhookEventCreate(
                provider_code="stripe",
                provider_event_id=event_id,
                provider_event_type=payload.get("type", "unknown"),
                payload=payload,
                signature_verified=True,
            ),
        )
        crud.webhook_event.mark_failed(db, event_id=stored.id, error="user not known yet")
        stored = crud.webhook_event.get(db, id=stored.id)
        stored.next_retry_at = utcnow() - timedelta(seconds=1)
        db.commit()
        return stored

    def test_replays_due_event(self, db_session, session_factory):
        org = create_organization(db_session)
        booking = _pending_booking(db_session, org)
        stored = self._failed_event(
            db_session,
            {
                "id": "evt_retry",
                "type": "checkout.session.completed",
                "created": 1780000000,
                "data": {
                    "object": {
                        "id": f"cs_{booking.id}",
                        "payment_intent": "pi_retry",
                        "payment_status": "paid",
                        "amount_total": 1500,
                        "currency": "gbp",
                        "metadata": {"booking_id": booking.id},
                    }
                },
            },
        )

        assert booking_tasks.retry_failed_webhook_events(session_factory) == 1

        db_session.expire_all()
        assert crud.webhook_event.get(db_session, id=stored.id).status == "processed"
        assert crud.booking.get(db_session, booking.id).status == "confirmed"

    def test_event_not_yet_due_is_left_alone(self, db_session, session_factory):
        stored = self._failed_event(db_session, {"id": "evt_later", "type": "x"}, "evt_later")
        stored.next_retry_at = utcnow() + timedelta(minutes=5)
        db_session.commit()

        assert booking_tasks.retry_failed_webhook_events(session_factory) == 0

    def test_unparseable_event_is_skipped(self, db_session, session_factory):
        stored = self._failed_event(db_session, {"id": "evt_broken"}, "evt_broken")

        assert booking_tasks.retry_failed_webhook_events(session_factory) == 0

        db_session.expire_all()
        assert crud.webhook_event.get(db_session, id=stored.id).status == "skipped"

    def test_no_provider_configured(self, session_factory):
        with patch.object(
            booking_tasks, "get_payment_provider", MagicMock(side_effect=ValueError("no keys"))
        ):
            assert booking_tasks.retry_failed_webhook_events(session_factory) == 0
