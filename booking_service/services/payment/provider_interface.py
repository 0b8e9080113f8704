# booking_service/services/payment/provider_interface.py
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime


class RefundStatusEnum(str, Enum):
    """Standardized refund status."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WebhookEventType(str, Enum):
    """Standardized webhook event types."""
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"
    PAYMENT_INTENT_FAILED = "payment_intent.failed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    UNKNOWN = "unknown"


class RefundReason(str, Enum):
    """Refund reasons."""
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE = "duplicate"
    SESSION_CANCELLED = "session_cancelled"
    OTHER = "other"


@dataclass
class CheckoutLineItem:
    """A line on a hosted checkout page. Either an ad-hoc amount or a catalogue price."""
    name: str
    quantity: int = 1
    unit_amount: Optional[int] = None  # smallest currency unit
    price_id: Optional[str] = None  # provider catalogue price (e.g. a membership plan)


@dataclass
class CreateCheckoutSessionParams:
    """Parameters for creating a hosted checkout session."""
    line_items: List[CheckoutLineItem]
    currency: str  # ISO 4217
    success_url: str
    cancel_url: str
    metadata: Dict[str, str]
    idempotency_key: str
    expires_at: datetime
    customer_email: Optional[str] = None
    mode: str = "payment"  # 'payment' | 'subscription'
    subscription_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutSessionResult:
    """Result of creating a checkout session."""
    session_id: str
    url: str
    expires_at: Optional[datetime] = None


@dataclass
class CreateRefundParams:
    """Parameters for refunding a completed payment in full."""
    payment_id: str  # payment intent id, or checkout session id when there is none
    idempotency_key: str
    amount: Optional[int] = None
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result of a refund operation."""
    refund_id: str
    status: RefundStatusEnum
    amount: int
    currency: str
    provider_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """Provider-neutral webhook event."""
    event_id: str
    event_type: WebhookEventType
    provider_event_type: str
    data: Dict[str, Any]
    created_at: datetime
    raw_payload: Dict[str, Any]


class PaymentProviderInterface(ABC):
    """
    Interface every payment provider implements. Booking logic only talks to
    this, never to a provider SDK directly.
    """

    @property
    @abstractmethod
    def code(self) -> str:
        """Provider code, e.g. 'stripe'."""

    @abstractmethod
    async def create_checkout_session(
        self, params: CreateCheckoutSessionParams
    ) -> CheckoutSessionResult:
        """Create a hosted checkout session."""

    @abstractmethod
    async def create_refund(self, params: CreateRefundParams) -> RefundResult:
        """Refund a completed payment."""

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription immediately. Already-gone subscriptions are not an error."""

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify that a webhook body was signed by the provider."""

    @abstractmethod
    def parse_webhook_event(self, payload: bytes) -> WebhookEvent:
        """Parse a verified webhook body."""

    @abstractmethod
    def normalize_event(self, event: Dict[str, Any]) -> WebhookEvent:
        """Normalize an already-decoded event (used when replaying stored events)."""
