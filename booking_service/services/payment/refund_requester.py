# booking_service/services/payment/refund_requester.py
"""
Fire-and-forget refunds.

Cancelling a session or a paid booking must not wait on the payment
provider. Refund requests are queued on a small thread pool; each booking
uses a stable idempotency key so a booking is refunded at most once even if
the request is queued twice. Failures are logged for follow-up.
"""
import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from booking_service.core.config import settings
from .provider_factory import get_payment_provider
from .provider_interface import (
    CreateRefundParams,
    PaymentProviderInterface,
    RefundReason,
    RefundResult,
)
from .providers.stripe_provider import PaymentError

logger = logging.getLogger(__name__)


class RefundRequester:
    def __init__(
        self,
        provider_getter: Callable[[], PaymentProviderInterface] = get_payment_provider,
        max_workers: int = 4,
    ):
        self._provider_getter = provider_getter
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="refund"
        )

    def request_refund(
        self,
        *,
        booking_id: str,
        payment_reference: str,
        amount: Optional[int] = None,
        reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER,
    ) -> Future:
        params = CreateRefundParams(
            payment_id=payment_reference,
            idempotency_key=f"refund_{booking_id}",
            amount=amount,
            reason=reason,
            metadata={"booking_id": booking_id},
        )
        logger.info(f"Queued refund for booking {booking_id} ({payment_reference})")
        return self._executor.submit(self._run, booking_id, params)

    def _run(self, booking_id: str, params: CreateRefundParams) -> Optional[RefundResult]:
        try:
            provider = self._provider_getter()
            result = asyncio.run(provider.create_refund(params))
        except PaymentError as e:
            level = logging.WARNING if e.retryable else logging.ERROR
            logger.log(
                level,
                f"Refund for booking {booking_id} failed [{e.code}]: {e.message}",
            )
            return None
        except ValueError as e:
            logger.error(f"Refund for booking {booking_id} not sent, no provider: {e}")
            return None

        logger.info(
            f"Refund {result.refund_id} for booking {booking_id}: "
            f"{result.status.value} {result.amount} {result.currency}"
        )
        return result

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


_refund_requester: Optional[RefundRequester] = None


def get_refund_requester() -> RefundRequester:
    """FastAPI dependency returning the process-wide refund requester."""
    global _refund_requester
    if _refund_requester is None:
        _refund_requester = RefundRequester(max_workers=settings.REFUND_WORKERS)
    return _refund_requester


def shutdown_refund_requester() -> None:
    global _refund_requester
    if _refund_requester is not None:
        _refund_requester.shutdown()
        _refund_requester = None
