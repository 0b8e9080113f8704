# booking_service/schemas/webhook.py
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class WebhookEventStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    processed = "processed"
    failed = "failed"
    skipped = "skipped"
    needs_review = "needs_review"


class WebhookEventCreate(BaseModel):
    provider_code: str
    provider_event_id: str
    provider_event_type: str
    payload: Dict[str, Any]
    signature_verified: bool = False
    ip_address: Optional[str] = None


class WebhookEventUpdate(BaseModel):
    status: Optional[WebhookEventStatus] = None
    processing_error: Optional[str] = None
