from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UserMembershipRead(BaseModel):
    id: str
    organization_id: str
    membership_id: Optional[str] = None
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
