# booking_service/services/payment/providers/stripe_provider.py
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import stripe

from ..provider_interface import (
    CheckoutSessionResult,
    CreateCheckoutSessionParams,
    CreateRefundParams,
    PaymentProviderInterface,
    RefundReason,
    RefundResult,
    RefundStatusEnum,
    WebhookEvent,
    WebhookEventType,
)

logger = logging.getLogger(__name__)

# Stripe rejects checkout sessions that expire less than 30 minutes after creation
MIN_CHECKOUT_LIFETIME = timedelta(minutes=31)


@dataclass
class StripeConfig:
    """Configuration for Stripe provider."""
    secret_key: str
    webhook_secret: str
    publishable_key: Optional[str] = None
    api_version: str = "2023-10-16"
    max_retries: int = 2


# Mapping from Stripe event types to our standardized event types
STRIPE_EVENT_MAP: Dict[str, WebhookEventType] = {
    "checkout.session.completed": WebhookEventType.CHECKOUT_SESSION_COMPLETED,
    "checkout.session.expired": WebhookEventType.CHECKOUT_SESSION_EXPIRED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_INTENT_FAILED,
    "customer.subscription.created": WebhookEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_DELETED,
}

# Mapping from our refund reasons to Stripe refund reasons
REFUND_REASON_MAP: Dict[RefundReason, str] = {
    RefundReason.REQUESTED_BY_CUSTOMER: "requested_by_customer",
    RefundReason.DUPLICATE: "duplicate",
    RefundReason.SESSION_CANCELLED: "requested_by_customer",  # Stripe doesn't have this
    RefundReason.OTHER: "requested_by_customer",
}

REFUND_STATUS_MAP: Dict[str, RefundStatusEnum] = {
    "succeeded": RefundStatusEnum.SUCCEEDED,
    "pending": RefundStatusEnum.PENDING,
    "failed": RefundStatusEnum.FAILED,
    "canceled": RefundStatusEnum.CANCELLED,
}


def _subscription_period(obj: Dict[str, Any]) -> Dict[str, Optional[int]]:
    """
    Period bounds of a subscription. Newer API versions carry them on the
    subscription items instead of the subscription itself.
    """
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None or end is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return {"currentPeriodStart": start, "currentPeriodEnd": end}


class StripeProvider(PaymentProviderInterface):
    """
    Stripe implementation of PaymentProviderInterface.

    SECURITY NOTES:
    - Always verify webhook signatures
    - Use idempotency keys for all mutations
    """

    def __init__(self, config: StripeConfig):
        self._config = config

        # Initialize Stripe with locked API version
        stripe.api_key = config.secret_key
        stripe.api_version = config.api_version
        stripe.max_network_retries = config.max_retries

    @property
    def code(self) -> str:
        return "stripe"

    async def create_checkout_session(
        self, params: CreateCheckoutSessionParams
    ) -> CheckoutSessionResult:
        """Create a hosted Checkout Session. Uses idempotency keys for safe retries."""
        line_items = []
        for item in params.line_items:
            if item.price_id:
                line_items.append({"price": item.price_id, "quantity": item.quantity})
            else:
                line_items.append(
                    {
                        "price_data": {
                            "currency": params.currency.lower(),
                            "unit_amount": item.unit_amount,
                            "product_data": {"name": item.name},
                        },
                        "quantity": item.quantity,
                    }
                )

        session_params: Dict[str, Any] = {
            "mode": params.mode,
            "line_items": line_items,
            "success_url": params.success_url,
            "cancel_url": params.cancel_url,
            "metadata": params.metadata,
            "expires_at": int(
                max(params.expires_at, datetime.now(timezone.utc) + MIN_CHECKOUT_LIFETIME).timestamp()
            ),
        }
        if params.customer_email:
            session_params["customer_email"] = params.customer_email
        if params.mode == "subscription":
            session_params["subscription_data"] = {
                "metadata": {**params.metadata, **params.subscription_metadata}
            }
        else:
            session_params["payment_intent_data"] = {"metadata": params.metadata}

        try:
            session = stripe.checkout.Session.create(
                **session_params,
                idempotency_key=params.idempotency_key,
            )
        except stripe.InvalidRequestError as e:
            logger.error(f"Invalid checkout session request: {e}")
            raise PaymentError(code="INVALID_REQUEST", message=str(e), retryable=False)
        except stripe.StripeError as e:
            logger.error(f"Error creating checkout session: {e}")
            raise PaymentError(
                code="PROVIDER_ERROR",
                message="Could not start checkout",
                retryable=True,
            )

        return CheckoutSessionResult(
            session_id=session.id,
            url=session.url,
            expires_at=datetime.fromtimestamp(session.expires_at, tz=timezone.utc)
            if session.get("expires_at")
            else None,
        )

    def _resolve_payment_intent(self, payment_id: str) -> str:
        """Subscription checkouts have no intent on the session itself, only on its invoice."""
        if not payment_id.startswith("cs_"):
            return payment_id
        session = stripe.checkout.Session.retrieve(payment_id, expand=["invoice"])
        intent = session.get("payment_intent")
        if not intent and session.get("invoice"):
            intent = session["invoice"].get("payment_intent")
        if not intent:
            raise PaymentError(
                code="INVALID_REFUND",
                message=f"Checkout session {payment_id} has no payment to refund",
                retryable=False,
            )
        return intent if isinstance(intent, str) else intent["id"]

    async def create_refund(self, params: CreateRefundParams) -> RefundResult:
        """Refund a completed payment."""
        try:
            refund_params: Dict[str, Any] = {
                "payment_intent": self._resolve_payment_intent(params.payment_id),
                "reason": REFUND_REASON_MAP.get(params.reason, "requested_by_customer"),
            }
            if params.amount:
                refund_params["amount"] = params.amount
            if params.metadata:
                refund_params["metadata"] = params.metadata

            refund = stripe.Refund.create(
                **refund_params,
                idempotency_key=params.idempotency_key,
            )

            return RefundResult(
                refund_id=refund.id,
                status=REFUND_STATUS_MAP.get(refund.status, RefundStatusEnum.PENDING),
                amount=refund.amount,
                currency=refund.currency.upper(),
                provider_metadata={
                    "charge_id": refund.get("charge"),
                    "reason": refund.get("reason"),
                },
            )

        except stripe.InvalidRequestError as e:
            logger.error(f"Invalid refund request: {e}")
            raise PaymentError(code="INVALID_REFUND", message=str(e), retryable=False)
        except stripe.StripeError as e:
            logger.error(f"Error creating refund: {e}")
            raise PaymentError(
                code="PROVIDER_ERROR",
                message="Could not process refund",
                retryable=True,
            )

    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription now, without proration."""
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                logger.info(f"Subscription {subscription_id} no longer exists, nothing to cancel")
                return
            logger.error(f"Invalid subscription cancel request: {e}")
            raise PaymentError(code="INVALID_REQUEST", message=str(e), retryable=False)
        except stripe.StripeError as e:
            logger.error(f"Error cancelling subscription {subscription_id}: {e}")
            raise PaymentError(
                code="PROVIDER_ERROR",
                message="Could not cancel subscription",
                retryable=True,
            )
        logger.info(f"Cancelled subscription {subscription_id}")

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify Stripe webhook signature."""
        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self._config.webhook_secret,
            )
            return True
        except stripe.SignatureVerificationError:
            return False
        except ValueError as e:
            logger.warning(f"Malformed webhook payload: {e}")
            return False

    def parse_webhook_event(self, payload: bytes) -> WebhookEvent:
        """Parse Stripe webhook event into standardized format."""
        try:
            event = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Error parsing webhook event: {e}")
            raise PaymentError(
                code="PARSE_ERROR",
                message="Could not parse webhook event",
                retryable=False,
            )
        return self.normalize_event(event)

    def normalize_event(self, event: Dict[str, Any]) -> WebhookEvent:
        try:
            provider_type = event["type"]
            data_object = event["data"]["object"]
            event_id = event["id"]
        except (KeyError, TypeError):
            raise PaymentError(
                code="PARSE_ERROR",
                message="Webhook event is missing id, type or data.object",
                retryable=False,
            )

        event_type = STRIPE_EVENT_MAP.get(provider_type, WebhookEventType.UNKNOWN)
        data: Dict[str, Any] = {
            "status": data_object.get("status"),
            "metadata": data_object.get("metadata") or {},
        }

        if provider_type.startswith("checkout.session."):
            customer_details = data_object.get("customer_details") or {}
            data.update(
                {
                    "checkoutSessionId": data_object.get("id"),
                    "paymentIntentId": data_object.get("payment_intent"),
                    "paymentStatus": data_object.get("payment_status"),
                    "amountTotal": data_object.get("amount_total"),
                    "currency": (data_object.get("currency") or "").upper(),
                    "mode": data_object.get("mode"),
                    "subscriptionId": data_object.get("subscription"),
                    "customerId": data_object.get("customer"),
                    "customerEmail": customer_details.get("email")
                    or data_object.get("customer_email"),
                    "customerName": customer_details.get("name"),
                }
            )
        elif provider_type.startswith("payment_intent."):
            data["paymentIntentId"] = data_object.get("id")
            error = data_object.get("last_payment_error") or {}
            if error:
                data["failureCode"] = error.get("code")
                data["failureMessage"] = error.get("message")
        elif provider_type.startswith("customer.subscription."):
            data.update(
                {
                    "subscriptionId": data_object.get("id"),
                    "customerId": data_object.get("customer"),
                    "cancelAtPeriodEnd": bool(data_object.get("cancel_at_period_end")),
                    **_subscription_period(data_object),
                }
            )

        created = event.get("created")
        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            provider_event_type=provider_type,
            data=data,
            created_at=datetime.fromtimestamp(created, tz=timezone.utc)
            if created
            else datetime.now(timezone.utc),
            raw_payload=event,
        )


class PaymentError(Exception):
    """Custom exception for payment errors."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(message)
