# booking_service/api/deps.py
from typing import Generator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from booking_service.core.cache import LookupCache, get_lookup_cache
from booking_service.core.config import settings
from booking_service.core.kafka_producer import BookingEventPublisher, get_event_publisher
from booking_service.db.session import SessionLocal
from booking_service.schemas.token import TokenPayload
from booking_service.services.checkout import CheckoutService
from booking_service.services.payment.provider_factory import get_payment_provider
from booking_service.services.payment.refund_requester import (
    RefundRequester,
    get_refund_requester,
)


def get_db() -> Generator:
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# tokenUrl is only used by the OpenAPI docs; tokens come from the identity provider.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")
# Optional version that doesn't raise an error when token is missing
oauth2_scheme_optional = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


def _decode(token: str) -> TokenPayload:
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    return TokenPayload(**payload)


def get_current_user(token: str = Depends(oauth2_scheme)) -> TokenPayload:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        return _decode(token)
    except (JWTError, ValueError):
        # Catches any error from jose or Pydantic validation
        raise credentials_exception


def get_current_user_optional(
    token: Optional[str] = Depends(oauth2_scheme_optional),
) -> Optional[TokenPayload]:
    """Guests book without a token; a token that is present must be valid."""
    if token is None:
        return None
    try:
        return _decode(token)
    except (JWTError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_admin(
    current_user: TokenPayload = Depends(get_current_user),
) -> TokenPayload:
    if not current_user.is_admin or not current_user.org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization admin access required",
        )
    return current_user


def get_checkout_service(
    db: Session = Depends(get_db),
    publisher: BookingEventPublisher = Depends(get_event_publisher),
    refund_requester: RefundRequester = Depends(get_refund_requester),
    cache: LookupCache = Depends(get_lookup_cache),
) -> CheckoutService:
    return CheckoutService(
        db,
        publisher=publisher,
        refund_requester=refund_requester,
        cache=cache,
        provider_getter=get_payment_provider,
    )
