"""Analytics request and response schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, model_validator

from .base import StandardizedModel, StrictModel

# Fields each client event type cannot do without
_REQUIRED_FIELDS = {
    "click": ("element_id",),
    "form": ("form_id", "action"),
    "scroll": ("depth_percent",),
    "custom": ("event_name",),
}


class ClientEventRequest(StrictModel):
    """Interaction reported by a browser or app client."""

    type: Literal["click", "form", "scroll", "custom"]
    page: str = Field(..., min_length=1, max_length=512)
    element_id: Optional[str] = Field(default=None, max_length=128)
    form_id: Optional[str] = Field(default=None, max_length=128)
    action: Optional[str] = Field(default=None, pattern=r"^[a-z_]{1,32}$")
    depth_percent: Optional[float] = Field(default=None, ge=0, le=100)
    event_name: Optional[str] = Field(default=None, pattern=r"^[a-z][a-z0-9_]{0,63}$")
    properties: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fields_for_type(self) -> "ClientEventRequest":
        missing = [name for name in _REQUIRED_FIELDS[self.type] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.type} events need {', '.join(missing)}")
        return self


class ClientEventAck(StandardizedModel):
    accepted: bool


class UserInteractionSummary(StandardizedModel):
    recent_clicks: List[Dict[str, Any]]
    recent_page_views: List[Dict[str, Any]]
    recent_forms: List[Dict[str, Any]]
    recent_scrolls: List[Dict[str, Any]]


class PagePerformanceResponse(StandardizedModel):
    page: str
    total_views: int
    last_viewed: Optional[datetime] = None
    scroll_depth_distribution: Dict[str, int]


class AnalyticsInsightsResponse(StandardizedModel):
    active_users: int
    sampled_events: int
    recent_revenue: List[Dict[str, Any]]
    system_health: Optional[Dict[str, Any]] = None
    generated_at: datetime


class VendorPerformanceResponse(StandardizedModel):
    vendor_id: str
    day: date = Field(..., alias="date")
    total_bookings: int
    total_revenue: Decimal
    conversion_rate: float
    customer_count: int
    average_rating: Optional[float] = None
