"""
Tests for session instance expansion, materialization and cancellation.

Verifies that:
- Weekly schedules expand to UTC start times in the template's timezone,
  across daylight saving changes
- Recurrence bounds, inactive schedules and per-schedule durations apply
- Materializing twice creates nothing new
- Concurrent on-demand creation of one slot yields a single instance
- Cancelling an instance cancels its bookings, refunds paid ones and only
  happens once
"""

import threading
from datetime import date, datetime, time, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from booking_service import crud
from booking_service.services import session_instances
from booking_service.services.booking_ledger import BookingLedger
from booking_service.services.payment.provider_interface import RefundReason
from booking_service.services.pricing import compute_booking_total
from tests.utils.factories import (
    add_schedule,
    create_instance,
    create_organization,
    create_template,
    create_user,
)


def _recurring(schedules, **overrides):
    values = dict(
        is_recurring=True,
        timezone="Europe/London",
        duration_minutes=60,
        recurrence_start_date=None,
        recurrence_end_date=None,
        one_off_date=None,
        one_off_start_time=None,
        schedules=schedules,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _schedule(day_of_week, at, duration_minutes=None, is_active=True):
    return SimpleNamespace(
        day_of_week=day_of_week, time=at, duration_minutes=duration_minutes, is_active=is_active
    )


class TestExpandTemplateOccurrences:
    """Sunday 10:00 London around the 2026-03-29 switch to summer time."""

    def setup_method(self):
        self.window = (date(2026, 3, 22), date(2026, 4, 5))

    def test_expansion_follows_daylight_saving(self):
        template = _recurring([_schedule(6, time(10, 0))])
        starts = [o.start_time for o in session_instances.expand_template_occurrences(template, *self.window)]

        assert starts == [
            datetime(2026, 3, 22, 10, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 29, 9, 0, tzinfo=timezone.utc),
            datetime(2026, 4, 5, 9, 0, tzinfo=timezone.utc),
        ]

    def test_recurrence_bounds_narrow_the_window(self):
        template = _recurring(
            [_schedule(6, time(10, 0))],
            recurrence_start_date=date(2026, 3, 25),
            recurrence_end_date=date(2026, 3, 30),
        )
        occurrences = session_instances.expand_template_occurrences(template, *self.window)

        assert [o.start_time.date() for o in occurrences] == [date(2026, 3, 29)]

    def test_inactive_schedules_are_skipped(self):
        template = _recurring([_schedule(6, time(10, 0), is_active=False)])
        assert session_instances.expand_template_occurrences(template, *self.window) == []

    def test_schedule_duration_overrides_template(self):
        template = _recurring([_schedule(6, time(10, 0), duration_minutes=90)])
        occurrence = session_instances.expand_template_occurrences(template, *self.window)[0]

        assert occurrence.duration_minutes == 90
        assert (occurrence.end_time - occurrence.start_time).total_seconds() == 90 * 60

    def test_multiple_schedules_sorted(self):
        template = _recurring([_schedule(6, time(18, 0)), _schedule(0, time(7, 30))])
        occurrences = session_instances.expand_template_occurrences(
            template, date(2026, 3, 22), date(2026, 3, 23)
        )
        assert [o.start_time for o in occurrences] == [
            datetime(2026, 3, 22, 18, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 23, 7, 30, tzinfo=timezone.utc),
        ]

    def test_one_off_template(self):
        template = _recurring(
            [],
            is_recurring=False,
            one_off_date=date(2026, 7, 1),
            one_off_start_time=time(18, 0),
        )
        occurrences = session_instances.expand_template_occurrences(template)

        assert len(occurrences) == 1
        assert occurrences[0].start_time == datetime(2026, 7, 1, 17, 0, tzinfo=timezone.utc)

    def test_add_months_clamps_day(self):
        assert session_instances.add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert session_instances.add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


class TestInstancePersistence:

    @pytest.fixture(autouse=True)
    def setup(self, db_session, publisher, refund_requester):
        self.db = db_session
        self.publisher = publisher
        self.refund_requester = refund_requester
        self.org = create_organization(db_session)

    # ------------------------------------------------------------------ #
    # Materialization
    # ------------------------------------------------------------------ #

    def test_materialize_is_idempotent(self):
        template = create_template(self.db, self.org.id, is_recurring=True, one_off_date=None, one_off_start_time=None)
        add_schedule(self.db, template, day_of_week=6, at=time(10, 0))
        window = (date(2026, 3, 22), date(2026, 4, 5))

        assert session_instances.materialize_instances(self.db, template, *window) == (3, 0)
        assert session_instances.materialize_instances(self.db, template, *window) == (0, 3)

    def test_get_or_create_instance_reuses_existing(self):
        template = create_template(self.db, self.org.id)
        start = datetime(2026, 12, 1, 18, 0, tzinfo=timezone.utc)

        first = session_instances.get_or_create_instance(self.db, template, start)
        second = session_instances.get_or_create_instance(self.db, template, start)

        assert first.id == second.id
        assert first.spots_held == 0

    def test_concurrent_get_or_create_yields_one_instance(self, session_factory):
        template = create_template(self.db, self.org.id)
        template_id = template.id
        start = datetime(2026, 12, 1, 18, 0, tzinfo=timezone.utc)
        barrier = threading.Barrier(8)
        ids, errors = [], []
        lock = threading.Lock()

        def create():
            session = session_factory()
            try:
                tpl = crud.session_template.get(session, id=template_id)
                barrier.wait()
                instance = session_instances.get_or_create_instance(session, tpl, start)
                with lock:
                    ids.append(instance.id)
            except Exception as e:
                with lock:
                    errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=create) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(ids) == 8
        assert len(set(ids)) == 1
        self.db.expire_all()
        assert crud.session_instance.get_by_template_and_start(self.db, template_id, start).id == ids[0]

    def test_losing_insert_returns_the_winner(self):
        template = create_template(self.db, self.org.id)
        start = datetime(2026, 12, 1, 18, 0, tzinfo=timezone.utc)
        winner = create_instance(self.db, template, start)
        lookup = crud.session_instance.get_by_template_and_start
        calls = []

        def miss_first(db, template_id, start_time):
            calls.append(start_time)
            # The first lookup races ahead of the winner's commit
            return None if len(calls) == 1 else lookup(db, template_id, start_time)

        with patch.object(
            crud.session_instance, "get_by_template_and_start", side_effect=miss_first
        ):
            instance = session_instances.get_or_create_instance(self.db, template, start)

        assert instance.id == winner.id
        assert len(calls) == 2

    def test_list_instances_hides_hidden_templates(self):
        open_template = create_template(self.db, self.org.id, capacity=4)
        hidden_template = create_template(self.db, self.org.id, visibility="hidden")
        start = datetime(2026, 12, 1, 18, 0, tzinfo=timezone.utc)
        create_instance(self.db, open_template, start)
        create_instance(self.db, hidden_template, start)

        window = dict(
            organization_id=self.org.id,
            start=datetime(2026, 12, 1, tzinfo=timezone.utc),
            end=datetime(2026, 12, 2, tzinfo=timezone.utc),
        )
        public = session_instances.list_instances(self.db, **window)
        with_hidden = session_instances.list_instances(self.db, include_hidden=True, **window)

        assert [(i.template_id, remaining) for i, remaining in public] == [(open_template.id, 4)]
        assert len(with_hidden) == 2

    # ------------------------------------------------------------------ #
    # Cancellation
    # ------------------------------------------------------------------ #

    def _booked_instance(self):
        template = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=1500)
        instance = create_instance(self.db, template)
        ledger = BookingLedger(self.db)
        price = compute_booking_total(
            spots=1, is_member=False, is_new_membership_purchase=False,
            drop_in_price=1500, member_price=1500,
        )
        paid = ledger.create_booking(
            instance=instance, user=create_user(self.db, self.org.id), spots=1, price=price
        )
        ledger.confirm_booking(
            paid.id, payment_reference="pi_paid", payment_intent_id="pi_paid", amount_paid=1500
        )
        pending = ledger.create_booking(
            instance=instance, user=create_user(self.db, self.org.id), spots=2, price=price
        )
        return instance, paid, pending

    def test_cancel_instance_cancels_and_refunds(self):
        instance, paid, pending = self._booked_instance()

        result = session_instances.cancel_instance(
            self.db,
            instance.id,
            "instructor ill",
            publisher=self.publisher,
            refund_requester=self.refund_requester,
        )

        assert result.cancelled_bookings == 2
        assert result.refunded_bookings == 1
        self.refund_requester.request_refund.assert_called_once_with(
            booking_id=paid.id,
            payment_reference="pi_paid",
            amount=1500,
            reason=RefundReason.SESSION_CANCELLED,
        )
        self.db.expire_all()
        cancelled = crud.session_instance.get(self.db, instance.id)
        assert cancelled.status == "cancelled"
        assert cancelled.spots_held == 0
        assert crud.booking.get(self.db, pending.id).status == "cancelled"
        assert crud.booking.get(self.db, paid.id).refund_requested_at is not None

        published = [c.args[0] for c in self.publisher.publish.call_args_list]
        assert published.count("session_instance.cancelled") == 1
        assert published.count("booking.cancelled") == 2

    def test_cancel_instance_twice_is_a_no_op(self):
        instance, _, _ = self._booked_instance()
        session_instances.cancel_instance(self.db, instance.id, refund_requester=self.refund_requester)

        again = session_instances.cancel_instance(
            self.db, instance.id, refund_requester=self.refund_requester
        )

        assert again.cancelled_bookings == 0
        assert again.refunded_bookings == 0
        assert self.refund_requester.request_refund.call_count == 1

    def test_cancel_unknown_instance(self):
        with pytest.raises(ValueError):
            session_instances.cancel_instance(self.db, "ins_missing")

    def test_refunds_counted_only_when_queued(self):
        instance, paid, _ = self._booked_instance()

        result = session_instances.cancel_instance(self.db, instance.id, refund_requester=None)

        assert result.cancelled_bookings == 2
        assert result.refunded_bookings == 0
        self.db.expire_all()
        # The paid booking is still marked for a refund an operator can follow up
        assert crud.booking.get(self.db, paid.id).refund_requested_at is not None
