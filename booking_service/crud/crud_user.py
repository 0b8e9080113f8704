# booking_service/crud/crud_user.py
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_service.models.user import User

logger = logging.getLogger(__name__)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class CRUDUser:
    """Users are keyed by identity provider id, guests by (organization, email)."""

    def get(self, db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    def get_by_external_id(self, db: Session, external_id: str) -> Optional[User]:
        return db.query(User).filter(User.external_id == external_id).first()

    def get_by_email(self, db: Session, organization_id: str, email: str) -> Optional[User]:
        return (
            db.query(User)
            .filter(
                User.organization_id == organization_id,
                func.lower(User.email) == _normalize_email(email),
            )
            .first()
        )

    def get_or_create_guest(
        self,
        db: Session,
        *,
        organization_id: str,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        """
        Return the user owning this email in the organization, creating a guest
        if none exists. The returned user may be a registered account; callers
        decide whether that is acceptable.
        """
        existing = self.get_by_email(db, organization_id, email)
        if existing:
            return existing

        guest = User(
            organization_id=organization_id,
            email=_normalize_email(email),
            first_name=first_name,
            last_name=last_name,
            is_guest=True,
            role="guest",
        )
        db.add(guest)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            winner = self.get_by_email(db, organization_id, email)
            if winner is None:
                raise
            return winner
        db.refresh(guest)
        logger.info(f"Created guest user {guest.id} for organization {organization_id}")
        return guest

    def sync_registered(
        self,
        db: Session,
        *,
        organization_id: str,
        external_id: str,
        email: Optional[str],
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        """
        Resolve the local row for an authenticated identity. A guest row with the
        same email is upgraded in place so its bookings follow the account.
        """
        user = self.get_by_external_id(db, external_id)
        if user:
            return user

        if not email:
            raise ValueError(f"Identity {external_id} has no local user and no email")

        user = self.get_by_email(db, organization_id, email)
        if user:
            if user.external_id and user.external_id != external_id:
                raise ValueError(
                    f"Email {email} already belongs to another account in {organization_id}"
                )
            user.external_id = external_id
            user.is_guest = False
            user.role = role
            user.first_name = first_name or user.first_name
            user.last_name = last_name or user.last_name
            logger.info(f"Upgrading guest {user.id} to registered account {external_id}")
        else:
            user = User(
                organization_id=organization_id,
                external_id=external_id,
                email=_normalize_email(email),
                first_name=first_name,
                last_name=last_name,
                is_guest=False,
                role=role,
            )
            db.add(user)

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            winner = self.get_by_external_id(db, external_id)
            if winner is None:
                raise
            return winner
        db.refresh(user)
        return user


user = CRUDUser()
