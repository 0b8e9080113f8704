# booking_service/api/v1/endpoints/organizations.py
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.api.deps import get_current_admin, get_db
from booking_service.core.cache import LookupCache, get_lookup_cache
from booking_service.schemas.organization import OrganizationPricing, OrganizationPricingUpdate
from booking_service.schemas.token import TokenPayload
from booking_service.services.checkout import org_pricing_cache_key

logger = logging.getLogger(__name__)

router = APIRouter()


@router.put("/organizations/pricing", response_model=OrganizationPricing)
def update_member_pricing(
    pricing_in: OrganizationPricingUpdate,
    db: Session = Depends(get_db),
    admin: TokenPayload = Depends(get_current_admin),
    cache: LookupCache = Depends(get_lookup_cache),
):
    """Replace the organization's default member pricing."""
    org = crud.organization.get(db, id=admin.org_id)
    if org is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    org = crud.organization.update_pricing(db, db_obj=org, obj_in=pricing_in)
    cache.invalidate(org_pricing_cache_key(org.id))
    logger.info(f"Member pricing of {org.id} set to {pricing_in.model_dump()}")
    return org
