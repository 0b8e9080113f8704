# booking_service/schemas/booking.py
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class BookingCreate(BaseModel):
    """
    A booking request. Either an existing instance id, or a template plus a
    start time (the instance is created on demand).
    """

    session_instance_id: Optional[str] = None
    session_template_id: Optional[str] = None
    start_time: Optional[datetime] = None
    number_of_spots: int = Field(default=1, ge=1, le=50)

    # Guest checkout
    guest_email: Optional[EmailStr] = None
    guest_first_name: Optional[str] = Field(default=None, max_length=100)
    guest_last_name: Optional[str] = Field(default=None, max_length=100)

    # Buy a membership tier in the same checkout
    purchase_membership_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def check_target(self):
        if self.session_instance_id is None and (
            self.session_template_id is None or self.start_time is None
        ):
            raise ValueError(
                "Provide session_instance_id, or session_template_id with start_time"
            )
        return self


class InstanceSummary(BaseModel):
    id: str
    template_id: str
    template_name: str
    start_time: datetime
    end_time: datetime
    status: str


class UserSummary(BaseModel):
    id: str
    email: str
    name: str
    is_guest: bool


class BookingRead(BaseModel):
    id: str
    status: str
    payment_status: str
    number_of_spots: int
    currency: str
    total_amount: int
    amount_paid: Optional[int] = None
    unit_price: Optional[int] = None
    discount_amount: Optional[int] = None
    booked_at: datetime
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    session_instance: InstanceSummary
    user: UserSummary


class BookingCreateResponse(BaseModel):
    booking: Optional[BookingRead] = None
    checkout_session_id: Optional[str] = None
    checkout_url: Optional[str] = None


class BookingUpdate(BaseModel):
    """Spots and notes of an existing booking. An empty string clears the notes."""

    number_of_spots: Optional[int] = Field(default=None, ge=1, le=50)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def check_has_change(self):
        if self.number_of_spots is None and self.notes is None:
            raise ValueError("Provide number_of_spots or notes")
        return self


class BookingCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class CheckoutStatus(BaseModel):
    checkout_session_id: str
    status: Literal[
        "confirmed", "pending", "payment_failed", "cancelled", "still_processing"
    ]
    booking_id: Optional[str] = None
    attempt: int
    max_attempts: int
    retry_after_ms: Optional[int] = None
