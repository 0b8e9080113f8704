# booking_service/api/error_handlers.py
"""Maps booking engine errors to HTTP responses."""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from booking_service.core.exceptions import (
    BookingError,
    BookingNotFound,
    BookingRejected,
    CapacityExceeded,
    InvalidStateTransition,
    UpstreamLookupFailed,
)
from booking_service.services.payment.providers.stripe_provider import PaymentError

logger = logging.getLogger(__name__)


def _status_for(error: BookingError) -> int:
    if isinstance(error, BookingRejected):
        return error.status_code
    if isinstance(error, BookingNotFound):
        return 404
    if isinstance(error, (CapacityExceeded, InvalidStateTransition)):
        return 409
    if isinstance(error, UpstreamLookupFailed):
        return 503
    return 500


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status_code = _status_for(exc)
    if isinstance(exc, InvalidStateTransition):
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    elif status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")

    content = {"error": type(exc).__name__, "detail": exc.message}
    if isinstance(exc, CapacityExceeded):
        content["spots_remaining"] = exc.remaining
    return JSONResponse(status_code=status_code, content=content)


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    logger.error(f"Payment provider error on {request.url.path} [{exc.code}]: {exc.message}")
    return JSONResponse(
        status_code=503 if exc.retryable else 502,
        content={"error": exc.code, "detail": "Payment provider error, please try again"},
        headers={"Retry-After": "10"} if exc.retryable else None,
    )
