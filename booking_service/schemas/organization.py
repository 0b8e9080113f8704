# booking_service/schemas/organization.py
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class OrganizationPricingUpdate(BaseModel):
    member_price_type: Optional[Literal["discount", "fixed"]] = None
    member_discount_percent: Optional[int] = Field(default=None, ge=0, le=100)
    member_fixed_price: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_mode_has_value(self):
        if self.member_price_type == "discount" and self.member_discount_percent is None:
            raise ValueError("member_discount_percent is required for discount pricing")
        if self.member_price_type == "fixed" and self.member_fixed_price is None:
            raise ValueError("member_fixed_price is required for fixed pricing")
        return self


class OrganizationPricing(BaseModel):
    id: str
    member_price_type: Optional[str] = None
    member_discount_percent: Optional[int] = None
    member_fixed_price: Optional[int] = None

    model_config = {"from_attributes": True}
