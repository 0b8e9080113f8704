from fastapi import APIRouter

from booking_service.api.v1.endpoints import bookings, memberships, organizations, sessions, webhooks

api_router = APIRouter()

api_router.include_router(bookings.router, tags=["Bookings"])
api_router.include_router(sessions.router, tags=["Sessions"])
api_router.include_router(memberships.router, tags=["Memberships"])
api_router.include_router(organizations.router, tags=["Organizations"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
