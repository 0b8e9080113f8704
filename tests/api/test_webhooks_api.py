"""
Tests for the Stripe webhook endpoint.

Verifies that:
- Requests without a valid signature are rejected with 400 and not recorded
- A verified checkout completion confirms the booking and is logged
- A replayed event is acknowledged without being reprocessed
- Unhandled event types are acknowledged as skipped
"""

import hashlib
import hmac
import json
import time

import pytest

from booking_service import crud
from booking_service.models.payment_webhook_event import PaymentWebhookEvent
from booking_service.services.booking_ledger import BookingLedger
from booking_service.services.pricing import compute_booking_total
from tests.utils.factories import create_instance, create_organization, create_template, create_user

WEBHOOK_SECRET = "whsec_test_secret"
WEBHOOK_URL = "/api/v1/webhooks/stripe"


def _signed(event: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return payload, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _checkout_completed(event_id: str, booking_id: str, checkout_id: str) -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": checkout_id,
                "object": "checkout.session",
                "payment_intent": "pi_webhook_1",
                "payment_status": "paid",
                "amount_total": 1500,
                "currency": "gbp",
                "mode": "payment",
                "metadata": {"booking_id": booking_id},
            }
        },
    }


class TestStripeWebhook:

    @pytest.fixture(autouse=True)
    def setup(self, db_session, test_client):
        self.db = db_session
        self.client = test_client
        org = create_organization(db_session)
        template = create_template(db_session, org.id, pricing_type="paid", drop_in_price=1500)
        instance = create_instance(db_session, template)
        price = compute_booking_total(
            spots=1, is_member=False, is_new_membership_purchase=False,
            drop_in_price=1500, member_price=1500,
        )
        ledger = BookingLedger(db_session)
        self.booking = ledger.create_booking(
            instance=instance, user=create_user(db_session, org.id), spots=1, price=price
        )
        ledger.attach_checkout_session(self.booking.id, "cs_webhook_1")

    def _logged_events(self):
        self.db.expire_all()
        return self.db.query(PaymentWebhookEvent).all()

    # ------------------------------------------------------------------ #
    # Signature verification
    # ------------------------------------------------------------------ #

    def test_missing_signature_rejected(self):
        event = _checkout_completed("evt_nosig", self.booking.id, "cs_webhook_1")
        response = self.client.post(WEBHOOK_URL, content=json.dumps(event))

        assert response.status_code == 400
        assert self._logged_events() == []

    def test_invalid_signature_rejected(self):
        event = _checkout_completed("evt_badsig", self.booking.id, "cs_webhook_1")
        payload, headers = _signed(event, secret="whsec_wrong")

        response = self.client.post(WEBHOOK_URL, content=payload, headers=headers)

        assert response.status_code == 400
        self.db.expire_all()
        assert crud.booking.get(self.db, self.booking.id).status == "pending_payment"
        assert self._logged_events() == []

    # ------------------------------------------------------------------ #
    # Processing
    # ------------------------------------------------------------------ #

    def test_checkout_completed_confirms_booking(self):
        payload, headers = _signed(_checkout_completed("evt_ok", self.booking.id, "cs_webhook_1"))

        response = self.client.post(WEBHOOK_URL, content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "event_id": "evt_ok"}
        self.db.expire_all()
        booking = crud.booking.get(self.db, self.booking.id)
        assert booking.status == "confirmed"
        assert booking.payment_status == "completed"
        assert booking.amount_paid == 1500

        [logged] = self._logged_events()
        assert logged.provider_event_id == "evt_ok"
        assert logged.status == "processed"
        assert logged.signature_verified
        assert logged.related_booking_id == self.booking.id

    def test_replayed_event_is_not_reprocessed(self):
        payload, headers = _signed(_checkout_completed("evt_replay", self.booking.id, "cs_webhook_1"))
        self.client.post(WEBHOOK_URL, content=payload, headers=headers)

        response = self.client.post(WEBHOOK_URL, content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "already_processed", "event_id": "evt_replay"}
        assert len(self._logged_events()) == 1

    def test_unhandled_event_type_is_acknowledged(self):
        event = {
            "id": "evt_other",
            "type": "invoice.finalized",
            "created": int(time.time()),
            "data": {"object": {"id": "in_1", "status": "open"}},
        }
        payload, headers = _signed(event)

        response = self.client.post(WEBHOOK_URL, content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
