# booking_service/crud/crud_session_template.py
from datetime import date
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from booking_service.crud.base import CRUDBase
from booking_service.models.session_template import (
    SessionMembershipPrice,
    SessionSchedule,
    SessionTemplate,
)
from booking_service.schemas.session import SessionMembershipPriceIn, SessionTemplateCreate


class CRUDSessionTemplate(CRUDBase[SessionTemplate, SessionTemplateCreate, SessionTemplateCreate]):

    def get_for_organization(
        self, db: Session, *, template_id: str, organization_id: str
    ) -> Optional[SessionTemplate]:
        return (
            db.query(self.model)
            .filter(
                self.model.id == template_id,
                self.model.organization_id == organization_id,
            )
            .first()
        )

    def create_with_schedules(
        self,
        db: Session,
        *,
        obj_in: SessionTemplateCreate,
        organization_id: str,
        created_by_id: Optional[str],
        default_timezone: str,
    ) -> SessionTemplate:
        data = obj_in.model_dump(exclude={"schedules"})
        data["timezone"] = data.get("timezone") or default_timezone
        if data["pricing_type"] == "free":
            data["drop_in_price"] = None
            data["member_price"] = None

        template = SessionTemplate(
            **data,
            organization_id=organization_id,
            created_by_id=created_by_id,
        )
        if obj_in.is_recurring:
            template.schedules = [
                SessionSchedule(**schedule.model_dump()) for schedule in obj_in.schedules
            ]
        db.add(template)
        db.commit()
        db.refresh(template)
        return template

    def get_membership_price(
        self, db: Session, *, template_id: str, membership_id: str
    ) -> Optional[SessionMembershipPrice]:
        return (
            db.query(SessionMembershipPrice)
            .filter(
                SessionMembershipPrice.session_template_id == template_id,
                SessionMembershipPrice.membership_id == membership_id,
            )
            .first()
        )

    def replace_membership_prices(
        self, db: Session, *, template: SessionTemplate, prices: List[SessionMembershipPriceIn]
    ) -> List[SessionMembershipPrice]:
        """Swap the template's tier prices for `prices` in one transaction."""
        db.query(SessionMembershipPrice).filter(
            SessionMembershipPrice.session_template_id == template.id
        ).delete(synchronize_session=False)
        rows = [
            SessionMembershipPrice(session_template_id=template.id, **price.model_dump())
            for price in prices
        ]
        db.add_all(rows)
        db.commit()
        return rows

    def get_generatable(self, db: Session, *, today: date) -> List[SessionTemplate]:
        """Bookable recurring templates whose recurrence has not ended."""
        return (
            db.query(self.model)
            .filter(
                self.model.is_recurring.is_(True),
                self.model.visibility != "closed",
                or_(
                    self.model.recurrence_end_date.is_(None),
                    self.model.recurrence_end_date >= today,
                ),
            )
            .all()
        )


session_template = CRUDSessionTemplate(SessionTemplate)
