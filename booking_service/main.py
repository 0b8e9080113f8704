# booking_service/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking_service.api.error_handlers import booking_error_handler, payment_error_handler
from booking_service.api.v1.api import api_router
from booking_service.core.config import settings
from booking_service.core.exceptions import BookingError
from booking_service.core.kafka_producer import shutdown_event_publisher
from booking_service.core.logging import configure_logging
from booking_service.scheduler import get_scheduler_status, init_scheduler, shutdown_scheduler
from booking_service.services.payment.providers.stripe_provider import PaymentError
from booking_service.services.payment.refund_requester import shutdown_refund_requester

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Session booking service starting up...")
    if settings.ENABLE_SCHEDULER:
        init_scheduler()
    yield
    logger.info("Session booking service shutting down...")
    shutdown_scheduler()
    shutdown_refund_requester()
    shutdown_event_publisher()


app = FastAPI(
    title="Session Booking Microservice",
    version="1.0.0",
    description="""
        **Session Booking Service**

        Capacity-limited session scheduling with membership pricing and
        payment-gated bookings.

        ## Features

        * **Sessions**: Recurring and one-off templates expanded into bookable instances
        * **Bookings**: Free and paid bookings, guest checkout, check-in
        * **Membership pricing**: Organization and tier member rates
        * **Payments**: Stripe checkout with idempotent webhook reconciliation

        ## Authentication

        Most endpoints require JWT authentication via the `Authorization: Bearer <token>` header.
        Guests can quote and book without a token.
        """,
    lifespan=lifespan,
)

origins = [
    settings.APP_BASE_URL,
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BookingError, booking_error_handler)
app.add_exception_handler(PaymentError, payment_error_handler)

app.include_router(api_router, prefix="/api/v1")


@app.get("/")
def read_root():
    return {"status": "Session Booking Service is running"}


@app.get("/health/scheduler")
def scheduler_health():
    return get_scheduler_status()
