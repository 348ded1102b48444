"""Activity request and response schemas."""

from decimal import Decimal
from typing import Optional

from pydantic import Field

from ..models.activity import ActivityStatus
from .base import StandardizedModel, StrictModel


class ActivityUpdate(StrictModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=64)
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    capacity: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None


class ActivityModerationRequest(StrictModel):
    target_status: ActivityStatus
    notes: Optional[str] = Field(default=None, max_length=2000)


class ActivityResponse(StandardizedModel):
    id: str
    vendor_id: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    base_price: Decimal
    currency: str
    capacity: int
    is_active: bool
    moderation_status: ActivityStatus
    moderation_notes: Optional[str] = None
