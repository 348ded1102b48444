"""Booking request and response schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from ..core.enums import PaymentStatus
from ..integrations.moyasar_client import VALID_PAYMENT_METHODS
from ..models.booking import BookingStatus
from .base import StandardizedModel, StrictModel


class BookingCreate(StrictModel):
    activity_id: str = Field(..., min_length=1, max_length=64)
    booking_date: datetime
    participant_count: int = Field(default=1, ge=1, le=50)
    notes: Optional[str] = Field(default=None, max_length=2000)


class BookingTransitionRequest(StrictModel):
    """Generic transition body: target status plus optional notes."""

    target_status: BookingStatus
    notes: Optional[str] = Field(default=None, max_length=2000)
    payment_source: Optional[Dict[str, Any]] = None


class BookingPaymentRequest(StrictModel):
    source: Optional[Dict[str, Any]] = Field(
        default=None, description="Moyasar payment source (token, creditcard, applepay...)"
    )
    payment_id: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Existing Moyasar payment to verify, e.g. after a 3-D Secure redirect",
    )

    @field_validator("source")
    @classmethod
    def _known_source_type(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None and value.get("type", "creditcard") not in VALID_PAYMENT_METHODS:
            raise ValueError(f"Unsupported payment source type: {value.get('type')}")
        return value


class BookingCancelRequest(StrictModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class BookingResponse(StandardizedModel):
    id: str
    user_id: str
    activity_id: str
    vendor_id: str
    booking_date: datetime
    participant_count: int
    unit_price: Decimal
    total_amount: Decimal
    currency: str
    status: BookingStatus
    confirmation_code: str
    notes: Optional[str] = None
    payment_status: PaymentStatus
    payment_id: Optional[str] = None
    payment_url: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
