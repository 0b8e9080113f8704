# booking_service/schemas/token.py
from pydantic import BaseModel, Field
from typing import Optional


class TokenPayload(BaseModel):
    sub: str  # identity provider subject (external user id)
    # Parses 'orgId' from the token into org_id
    org_id: Optional[str] = Field(default=None, alias="orgId")
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    role: str = "user"
    exp: int  # Standard claim for expiration time

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,
    }

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
