# booking_service/crud/crud_organization.py
from sqlalchemy.orm import Session

from booking_service.crud.base import CRUDBase
from booking_service.models.organization import Organization
from booking_service.schemas.organization import OrganizationPricingUpdate


class CRUDOrganization(CRUDBase[Organization, OrganizationPricingUpdate, OrganizationPricingUpdate]):

    def update_pricing(
        self, db: Session, *, db_obj: Organization, obj_in: OrganizationPricingUpdate
    ) -> Organization:
        # Full replacement: clearing the type clears member pricing entirely
        return self.update(db, db_obj=db_obj, obj_in=obj_in.model_dump())


organization = CRUDOrganization(Organization)
