"""
Tests for the booking, session and organization endpoints.

Verifies that:
- Guests book free sessions and are turned away when the email is registered
- Capacity errors answer 409 with the spots still available
- Bookings are only visible to their owner and organization admins
- Paid bookings start a provider checkout and hold spots while pending
- A failed checkout start releases the hold
- Confirmation polling is bounded by the attempt number
- Spots, price quotes, template creation and instance cancellation work for
  the right callers
- Changing organization pricing takes effect on the next quote
- Confirmed bookings can be edited by their owner and listed as upcoming
- Per-session membership prices are admin-only and drive the quote
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from booking_service import crud
from booking_service.services.booking_ledger import BookingLedger
from booking_service.services.payment.provider_interface import CheckoutSessionResult
from booking_service.services.payment.providers.stripe_provider import PaymentError
from booking_service.services.pricing import compute_booking_total
from tests.utils.factories import (
    auth_headers,
    create_booking_row,
    create_instance,
    create_membership_tier,
    create_organization,
    create_template,
    create_user,
)


@pytest.fixture
def fake_provider(monkeypatch):
    provider = MagicMock()
    provider.code = "stripe"
    provider.create_checkout_session = AsyncMock(
        return_value=CheckoutSessionResult(
            session_id="cs_fake_1", url="https://checkout.stripe.test/cs_fake_1"
        )
    )
    monkeypatch.setattr(
        "booking_service.api.deps.get_payment_provider", lambda *args, **kwargs: provider
    )
    return provider


class TestBookingsApi:

    @pytest.fixture(autouse=True)
    def setup(self, db_session, test_client, publisher, refund_requester):
        self.db = db_session
        self.client = test_client
        self.publisher = publisher
        self.refund_requester = refund_requester
        self.org = create_organization(db_session)
        self.free_template = create_template(db_session, self.org.id, capacity=3)
        self.free_instance = create_instance(db_session, self.free_template)

    def _guest_booking(self, instance_id, email="guest@example.com", spots=1):
        return self.client.post(
            "/api/v1/bookings",
            json={
                "session_instance_id": instance_id,
                "number_of_spots": spots,
                "guest_email": email,
                "guest_first_name": "Gina",
            },
        )

    # ------------------------------------------------------------------ #
    # Creating bookings
    # ------------------------------------------------------------------ #

    def test_guest_books_free_session(self):
        response = self._guest_booking(self.free_instance.id)

        assert response.status_code == 201
        booking = response.json()["booking"]
        assert booking["status"] == "confirmed"
        assert booking["payment_status"] == "unpaid"
        assert booking["user"]["is_guest"] is True
        assert response.json()["checkout_url"] is None
        published = [c.args[0] for c in self.publisher.publish.call_args_list]
        assert "booking.created" in published

    def test_guest_with_registered_email_must_sign_in(self):
        create_user(self.db, self.org.id, email="member@example.com", external_id="idp_member")

        response = self._guest_booking(self.free_instance.id, email="Member@Example.com")

        assert response.status_code == 409
        assert response.json()["error"] == "BookingRejected"
        assert "sign in" in response.json()["detail"]

    def test_guest_without_name_rejected(self):
        response = self.client.post(
            "/api/v1/bookings",
            json={"session_instance_id": self.free_instance.id, "guest_email": "x@example.com"},
        )
        assert response.status_code == 400

    def test_capacity_exceeded_reports_remaining(self):
        create_booking_row(self.db, self.free_instance, create_user(self.db, self.org.id), spots=1)

        response = self._guest_booking(self.free_instance.id, spots=3)

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "CapacityExceeded"
        assert body["spots_remaining"] == 2

    def test_unknown_instance(self):
        response = self._guest_booking("ins_missing")
        assert response.status_code == 404

    def test_closed_template_not_bookable(self):
        closed = create_template(self.db, self.org.id, visibility="closed")
        response = self._guest_booking(create_instance(self.db, closed).id)
        assert response.status_code == 400

    def test_booking_by_template_and_start_creates_instance(self):
        start = self.free_instance.start_time + timedelta(days=1)

        response = self.client.post(
            "/api/v1/bookings",
            json={
                "session_template_id": self.free_template.id,
                "start_time": start.isoformat(),
                "guest_email": "ondemand@example.com",
                "guest_first_name": "Otto",
            },
        )

        assert response.status_code == 201
        instance = crud.session_instance.get_by_template_and_start(
            self.db, self.free_template.id, start
        )
        assert instance is not None
        assert response.json()["booking"]["session_instance"]["id"] == instance.id

    def test_paid_booking_starts_checkout(self, fake_provider):
        paid = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=1500)
        instance = create_instance(self.db, paid)

        response = self.client.post(
            "/api/v1/bookings",
            json={"session_instance_id": instance.id, "number_of_spots": 2},
            headers=auth_headers(sub="idp_payer", org_id=self.org.id),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["checkout_session_id"] == "cs_fake_1"
        assert body["checkout_url"] == "https://checkout.stripe.test/cs_fake_1"
        assert body["booking"]["status"] == "pending_payment"
        assert body["booking"]["payment_status"] == "pending"
        assert body["booking"]["total_amount"] == 3000

        params = fake_provider.create_checkout_session.call_args.args[0]
        assert params.metadata["booking_id"] == body["booking"]["id"]
        assert params.idempotency_key == f"checkout_{body['booking']['id']}"
        self.db.expire_all()
        assert crud.session_instance.get(self.db, instance.id).spots_held == 2

    def test_failed_checkout_start_releases_hold(self, fake_provider):
        fake_provider.create_checkout_session.side_effect = PaymentError(
            code="PROVIDER_ERROR", message="down", retryable=True
        )
        paid = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=1500)
        instance = create_instance(self.db, paid)

        response = self.client.post(
            "/api/v1/bookings",
            json={"session_instance_id": instance.id},
            headers=auth_headers(sub="idp_unlucky", org_id=self.org.id),
        )

        assert response.status_code == 503
        self.db.expire_all()
        assert crud.session_instance.get(self.db, instance.id).spots_held == 0

    # ------------------------------------------------------------------ #
    # Reading, cancelling and checking in
    # ------------------------------------------------------------------ #

    def _member_booking(self):
        headers = auth_headers(sub="idp_owner", org_id=self.org.id)
        response = self.client.post(
            "/api/v1/bookings",
            json={"session_instance_id": self.free_instance.id},
            headers=headers,
        )
        assert response.status_code == 201
        return response.json()["booking"]["id"], headers

    def test_owner_reads_booking(self):
        booking_id, headers = self._member_booking()

        response = self.client.get(f"/api/v1/bookings/{booking_id}", headers=headers)

        assert response.status_code == 200
        assert response.json()["user"]["email"] == "idp_owner@example.com"

    def test_other_user_cannot_see_booking(self):
        booking_id, _ = self._member_booking()

        response = self.client.get(
            f"/api/v1/bookings/{booking_id}",
            headers=auth_headers(sub="idp_stranger", org_id=self.org.id),
        )

        assert response.status_code == 404

    def test_reading_requires_authentication(self):
        booking_id, _ = self._member_booking()
        assert self.client.get(f"/api/v1/bookings/{booking_id}").status_code == 401

    def test_owner_cancels_booking(self):
        booking_id, headers = self._member_booking()

        response = self.client.post(
            f"/api/v1/bookings/{booking_id}/cancel", json={"reason": "cannot make it"}, headers=headers
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancellation_reason"] == "cannot make it"
        self.db.expire_all()
        assert crud.session_instance.get(self.db, self.free_instance.id).spots_held == 0

    def test_admin_checks_in_booking(self):
        booking_id, owner_headers = self._member_booking()
        admin = auth_headers(sub="idp_admin", org_id=self.org.id, role="admin")

        forbidden = self.client.post(f"/api/v1/bookings/{booking_id}/check-in", headers=owner_headers)
        checked_in = self.client.post(f"/api/v1/bookings/{booking_id}/check-in", headers=admin)
        reverted = self.client.post(f"/api/v1/bookings/{booking_id}/check-in", headers=admin)

        assert forbidden.status_code == 403
        assert checked_in.json()["status"] == "completed"
        assert reverted.json()["status"] == "confirmed"

    def test_check_in_of_cancelled_booking_conflicts(self):
        booking_id, headers = self._member_booking()
        self.client.post(f"/api/v1/bookings/{booking_id}/cancel", json={}, headers=headers)

        response = self.client.post(
            f"/api/v1/bookings/{booking_id}/check-in",
            headers=auth_headers(sub="idp_admin", org_id=self.org.id, role="admin"),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidStateTransition"

    # ------------------------------------------------------------------ #
    # Editing and listing
    # ------------------------------------------------------------------ #

    def test_owner_adds_spots_and_notes(self):
        booking_id, headers = self._member_booking()

        response = self.client.patch(
            f"/api/v1/bookings/{booking_id}",
            json={"number_of_spots": 2, "notes": "bringing a friend"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["number_of_spots"] == 2
        assert response.json()["notes"] == "bringing a friend"
        self.db.expire_all()
        assert crud.session_instance.get(self.db, self.free_instance.id).spots_held == 2

    def test_edit_beyond_capacity_conflicts(self):
        booking_id, headers = self._member_booking()

        response = self.client.patch(
            f"/api/v1/bookings/{booking_id}", json={"number_of_spots": 4}, headers=headers
        )

        assert response.status_code == 409
        assert response.json()["spots_remaining"] == 2
        self.db.expire_all()
        assert crud.session_instance.get(self.db, self.free_instance.id).spots_held == 1

    def test_stranger_cannot_edit_booking(self):
        booking_id, _ = self._member_booking()

        response = self.client.patch(
            f"/api/v1/bookings/{booking_id}",
            json={"notes": "mine now"},
            headers=auth_headers(sub="idp_stranger", org_id=self.org.id),
        )

        assert response.status_code == 404

    def test_empty_edit_rejected(self):
        booking_id, headers = self._member_booking()
        response = self.client.patch(f"/api/v1/bookings/{booking_id}", json={}, headers=headers)
        assert response.status_code == 422

    def test_upcoming_lists_only_future_held_bookings(self):
        booking_id, headers = self._member_booking()
        owner = crud.user.get_by_external_id(self.db, "idp_owner")
        past = create_instance(
            self.db,
            self.free_template,
            start_time=datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=3),
        )
        create_booking_row(self.db, past, owner)
        later = create_instance(
            self.db,
            self.free_template,
            start_time=datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=5),
        )
        create_booking_row(self.db, later, owner, status="cancelled")

        response = self.client.get("/api/v1/bookings/upcoming", headers=headers)

        assert response.status_code == 200
        assert [b["id"] for b in response.json()] == [booking_id]

    def test_upcoming_for_unknown_user_is_empty(self):
        response = self.client.get(
            "/api/v1/bookings/upcoming", headers=auth_headers(sub="idp_new", org_id=self.org.id)
        )
        assert response.json() == []

    # ------------------------------------------------------------------ #
    # Confirmation polling
    # ------------------------------------------------------------------ #

    def _pending_checkout(self, checkout_id):
        paid = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=1500)
        price = compute_booking_total(
            spots=1, is_member=False, is_new_membership_purchase=False,
            drop_in_price=1500, member_price=1500,
        )
        ledger = BookingLedger(self.db)
        booking = ledger.create_booking(
            instance=create_instance(self.db, paid),
            user=create_user(self.db, self.org.id),
            spots=1,
            price=price,
        )
        ledger.attach_checkout_session(booking.id, checkout_id)
        return ledger, booking

    def test_polling_pending_then_confirmed(self):
        ledger, booking = self._pending_checkout("cs_poll")

        pending = self.client.get("/api/v1/checkout/cs_poll/status?attempt=1").json()
        ledger.confirm_booking(booking.id, payment_reference="pi_poll", payment_intent_id="pi_poll")
        confirmed = self.client.get("/api/v1/checkout/cs_poll/status?attempt=2").json()

        assert pending["status"] == "pending"
        assert pending["retry_after_ms"] > 0
        assert confirmed["status"] == "confirmed"
        assert confirmed["booking_id"] == booking.id
        assert confirmed["retry_after_ms"] is None

    def test_polling_stops_after_max_attempts(self):
        self._pending_checkout("cs_slow")

        response = self.client.get("/api/v1/checkout/cs_slow/status?attempt=20").json()

        assert response["status"] == "still_processing"
        assert response["max_attempts"] == 20

    def test_polling_unknown_checkout_keeps_pending(self):
        response = self.client.get("/api/v1/checkout/cs_deferred_unknown/status").json()
        assert response["status"] == "pending"
        assert response["booking_id"] is None


class TestSessionsApi:

    @pytest.fixture(autouse=True)
    def setup(self, db_session, test_client, refund_requester):
        self.db = db_session
        self.client = test_client
        self.refund_requester = refund_requester
        self.org = create_organization(db_session)
        self.admin = auth_headers(sub="idp_admin", org_id=self.org.id, role="admin")

    def test_spots_remaining(self):
        template = create_template(self.db, self.org.id, capacity=5)
        instance = create_instance(self.db, template)
        create_booking_row(self.db, instance, create_user(self.db, self.org.id), spots=2)
        create_booking_row(
            self.db, instance, create_user(self.db, self.org.id), spots=3, status="cancelled"
        )

        response = self.client.get(f"/api/v1/session-instances/{instance.id}/spots-remaining")

        assert response.json() == {
            "session_instance_id": instance.id,
            "capacity": 5,
            "spots_remaining": 3,
        }

    def test_spots_remaining_unknown_instance(self):
        assert self.client.get("/api/v1/session-instances/ins_x/spots-remaining").status_code == 404

    def test_price_quote_for_guest(self):
        template = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=1500)

        quote = self.client.get(
            f"/api/v1/session-templates/{template.id}/price-quote?spots=2"
        ).json()

        assert quote["is_member"] is False
        assert quote["person1_price"] == 1500
        assert quote["total"] == 3000

    def test_pricing_update_applies_to_next_quote(self):
        template = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=2000)
        url = f"/api/v1/session-templates/{template.id}/price-quote"
        before = self.client.get(url).json()

        response = self.client.put(
            "/api/v1/organizations/pricing",
            json={"member_price_type": "discount", "member_discount_percent": 25},
            headers=self.admin,
        )
        after = self.client.get(url).json()

        assert response.status_code == 200
        assert response.json()["member_discount_percent"] == 25
        assert before["member_price"] == 2000
        assert after["member_price"] == 1500

    def test_pricing_update_requires_admin(self):
        response = self.client.put(
            "/api/v1/organizations/pricing",
            json={"member_price_type": "fixed", "member_fixed_price": 900},
            headers=auth_headers(sub="idp_user", org_id=self.org.id),
        )
        assert response.status_code == 403

    def test_admin_creates_one_off_template(self):
        day = date.today() + timedelta(days=10)

        response = self.client.post(
            "/api/v1/session-templates",
            json={
                "name": "Full Moon Sauna",
                "capacity": 12,
                "duration_minutes": 90,
                "pricing_type": "paid",
                "drop_in_price": 2500,
                "one_off_date": day.isoformat(),
                "one_off_start_time": "20:00:00",
            },
            headers=self.admin,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["organization_id"] == self.org.id
        assert body["timezone"] == "Europe/London"
        instances = self.client.get(
            f"/api/v1/session-instances?organization_id={self.org.id}"
            f"&start={day.isoformat()}T00:00:00Z&end={(day + timedelta(days=1)).isoformat()}T00:00:00Z"
        ).json()
        assert [i["template_id"] for i in instances] == [body["id"]]
        assert instances[0]["spots_remaining"] == 12

    def test_invalid_template_rejected(self):
        response = self.client.post(
            "/api/v1/session-templates",
            json={"name": "No timing", "capacity": 5, "duration_minutes": 60},
            headers=self.admin,
        )
        assert response.status_code == 422

    def test_non_admin_cannot_create_template(self):
        response = self.client.post(
            "/api/v1/session-templates",
            json={
                "name": "Sneaky",
                "capacity": 5,
                "duration_minutes": 60,
                "one_off_date": (date.today() + timedelta(days=3)).isoformat(),
                "one_off_start_time": "09:00:00",
            },
            headers=auth_headers(sub="idp_user", org_id=self.org.id),
        )
        assert response.status_code == 403

    def test_admin_cancels_instance(self):
        template = create_template(self.db, self.org.id)
        instance = create_instance(self.db, template)
        create_booking_row(self.db, instance, create_user(self.db, self.org.id), spots=2)

        response = self.client.post(
            f"/api/v1/session-instances/{instance.id}/cancel",
            json={"reason": "heater broken"},
            headers=self.admin,
        )

        assert response.status_code == 200
        assert response.json()["cancelled_bookings"] == 1
        assert response.json()["refunded_bookings"] == 0
        spots = self.client.get(f"/api/v1/session-instances/{instance.id}/spots-remaining").json()
        assert spots["spots_remaining"] == 0

    def test_admin_of_other_organization_cannot_cancel(self):
        instance = create_instance(self.db, create_template(self.db, self.org.id))
        other_admin = auth_headers(sub="idp_other", org_id="org_other", role="admin")

        response = self.client.post(
            f"/api/v1/session-instances/{instance.id}/cancel", json={}, headers=other_admin
        )

        assert response.status_code == 404

    def test_delete_template(self):
        template = create_template(self.db, self.org.id)
        create_instance(self.db, template)

        response = self.client.delete(f"/api/v1/session-templates/{template.id}", headers=self.admin)

        assert response.status_code == 204
        self.db.expire_all()
        assert crud.session_template.get(self.db, id=template.id) is None

    # ------------------------------------------------------------------ #
    # Per-session membership prices
    # ------------------------------------------------------------------ #

    def _put_tier_prices(self, template_id, prices, headers=None):
        return self.client.put(
            f"/api/v1/session-templates/{template_id}/membership-prices",
            json={"prices": prices},
            headers=headers or self.admin,
        )

    def test_tier_price_applies_to_quote(self):
        template = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=2000)
        tier = create_membership_tier(self.db, self.org.id)

        response = self._put_tier_prices(
            template.id, [{"membership_id": tier.id, "override_price": 700}]
        )
        quote = self.client.get(
            f"/api/v1/session-templates/{template.id}/price-quote"
            f"?purchase_membership_id={tier.id}"
        ).json()

        assert response.status_code == 200
        assert response.json()[0]["override_price"] == 700
        assert response.json()[0]["is_enabled"] is True
        assert quote["member_price"] == 700
        assert quote["person1_price"] == 700

    def test_disabled_tier_pays_drop_in(self):
        template = create_template(
            self.db, self.org.id, pricing_type="paid", drop_in_price=2000, member_price=1000
        )
        tier = create_membership_tier(self.db, self.org.id)
        self._put_tier_prices(template.id, [{"membership_id": tier.id, "is_enabled": False}])

        quote = self.client.get(
            f"/api/v1/session-templates/{template.id}/price-quote"
            f"?purchase_membership_id={tier.id}"
        ).json()

        assert quote["member_price"] == 2000

    def test_tier_prices_are_replaced(self):
        template = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=2000)
        first = create_membership_tier(self.db, self.org.id)
        second = create_membership_tier(self.db, self.org.id, name="Annual")
        self._put_tier_prices(template.id, [{"membership_id": first.id, "override_price": 900}])

        self._put_tier_prices(template.id, [{"membership_id": second.id, "override_price": 800}])
        listed = self.client.get(
            f"/api/v1/session-templates/{template.id}/membership-prices", headers=self.admin
        ).json()

        assert [(p["membership_id"], p["override_price"]) for p in listed] == [(second.id, 800)]

    def test_tier_prices_require_admin(self):
        template = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=2000)
        tier = create_membership_tier(self.db, self.org.id)

        response = self._put_tier_prices(
            template.id,
            [{"membership_id": tier.id, "override_price": 700}],
            headers=auth_headers(sub="idp_user", org_id=self.org.id),
        )

        assert response.status_code == 403

    def test_tier_of_other_organization_not_found(self):
        template = create_template(self.db, self.org.id, pricing_type="paid", drop_in_price=2000)
        foreign = create_membership_tier(self.db, create_organization(self.db).id)

        response = self._put_tier_prices(
            template.id, [{"membership_id": foreign.id, "override_price": 700}]
        )

        assert response.status_code == 404
