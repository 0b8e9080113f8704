# booking_service/schemas/session.py
from datetime import date, datetime, time as local_time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class SessionScheduleCreate(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Monday")
    time: local_time
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    is_active: bool = True


class SessionScheduleRead(SessionScheduleCreate):
    id: str

    model_config = {"from_attributes": True}


class SessionTemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    capacity: int = Field(..., gt=0)
    duration_minutes: int = Field(..., gt=0)
    visibility: Literal["open", "hidden", "closed"] = "open"
    pricing_type: Literal["free", "paid"] = "free"
    drop_in_price: Optional[int] = Field(default=None, ge=0)
    member_price: Optional[int] = Field(default=None, ge=0)
    is_recurring: bool = False
    recurrence_start_date: Optional[date] = None
    recurrence_end_date: Optional[date] = None
    timezone: Optional[str] = None
    one_off_date: Optional[date] = None
    one_off_start_time: Optional[local_time] = None
    schedules: List[SessionScheduleCreate] = []

    @model_validator(mode="after")
    def check_pricing_and_timing(self):
        if self.pricing_type == "paid" and self.drop_in_price is None:
            raise ValueError("drop_in_price is required for paid sessions")
        if self.is_recurring:
            if not self.schedules:
                raise ValueError("recurring sessions need at least one schedule")
            if (
                self.recurrence_start_date
                and self.recurrence_end_date
                and self.recurrence_end_date < self.recurrence_start_date
            ):
                raise ValueError("recurrence_end_date is before recurrence_start_date")
        elif self.one_off_date is None or self.one_off_start_time is None:
            raise ValueError("one-off sessions need one_off_date and one_off_start_time")
        return self


class SessionTemplateRead(BaseModel):
    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    capacity: int
    duration_minutes: int
    visibility: str
    pricing_type: str
    drop_in_price: Optional[int] = None
    member_price: Optional[int] = None
    is_recurring: bool
    recurrence_start_date: Optional[date] = None
    recurrence_end_date: Optional[date] = None
    timezone: str
    one_off_date: Optional[date] = None
    one_off_start_time: Optional[local_time] = None
    schedules: List[SessionScheduleRead] = []

    model_config = {"from_attributes": True}


class SessionInstanceRead(BaseModel):
    id: str
    template_id: str
    template_name: str
    start_time: datetime
    end_time: datetime
    status: str
    capacity: int
    spots_remaining: int
    pricing_type: str
    drop_in_price: Optional[int] = None


class SpotsRemaining(BaseModel):
    session_instance_id: str
    capacity: int
    spots_remaining: int


class PriceQuote(BaseModel):
    session_template_id: str
    number_of_spots: int
    currency: str
    is_member: bool
    drop_in_price: int
    member_price: int
    person1_price: int
    additional_person_price: int
    additional_people: int
    subtotal: int
    membership_fee: int
    discount_amount: int
    total: int


class InstanceCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class CancellationSummary(BaseModel):
    session_instance_id: str
    cancelled_bookings: int
    refunded_bookings: int


class InstanceGenerationResult(BaseModel):
    session_template_id: str
    created: int
    skipped: int


class SessionMembershipPriceIn(BaseModel):
    membership_id: str
    override_price: Optional[int] = Field(default=None, ge=0)
    is_enabled: bool = True


class SessionMembershipPriceRead(SessionMembershipPriceIn):
    id: str
    session_template_id: str

    model_config = {"from_attributes": True}


class SessionMembershipPricesUpdate(BaseModel):
    prices: List[SessionMembershipPriceIn] = []

    @model_validator(mode="after")
    def check_unique_tiers(self):
        tier_ids = [price.membership_id for price in self.prices]
        if len(tier_ids) != len(set(tier_ids)):
            raise ValueError("each membership can be priced once per session")
        return self
