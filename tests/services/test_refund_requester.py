"""
Tests for fire-and-forget refunds.

Verifies that:
- Refunds are sent with a per-booking idempotency key
- Provider errors are logged and never raised to the caller
"""

from unittest.mock import AsyncMock, MagicMock

from booking_service.services.payment.provider_interface import (
    RefundReason,
    RefundResult,
    RefundStatusEnum,
)
from booking_service.services.payment.providers.stripe_provider import PaymentError
from booking_service.services.payment.refund_requester import RefundRequester


class TestRefundRequester:

    def setup_method(self):
        self.provider = MagicMock()
        self.provider.create_refund = AsyncMock(
            return_value=RefundResult(
                refund_id="re_1", status=RefundStatusEnum.PENDING, amount=1500, currency="GBP"
            )
        )
        self.requester = RefundRequester(provider_getter=lambda: self.provider, max_workers=1)

    def teardown_method(self):
        self.requester.shutdown()

    def test_refund_sent_with_idempotency_key(self):
        future = self.requester.request_refund(
            booking_id="bkg_1",
            payment_reference="pi_1",
            amount=1500,
            reason=RefundReason.SESSION_CANCELLED,
        )

        result = future.result(timeout=5)

        assert result.refund_id == "re_1"
        params = self.provider.create_refund.call_args.args[0]
        assert params.payment_id == "pi_1"
        assert params.idempotency_key == "refund_bkg_1"
        assert params.reason == RefundReason.SESSION_CANCELLED
        assert params.metadata == {"booking_id": "bkg_1"}

    def test_provider_error_is_contained(self):
        self.provider.create_refund.side_effect = PaymentError(
            code="INVALID_REFUND", message="already refunded", retryable=False
        )

        future = self.requester.request_refund(booking_id="bkg_2", payment_reference="pi_2")

        assert future.result(timeout=5) is None

    def test_missing_provider_is_contained(self):
        def no_provider():
            raise ValueError("Stripe is not configured")

        requester = RefundRequester(provider_getter=no_provider, max_workers=1)
        try:
            assert requester.request_refund(booking_id="bkg_3", payment_reference="pi_3").result(
                timeout=5
            ) is None
        finally:
            requester.shutdown()
