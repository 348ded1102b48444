"""Booking domain events."""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class BookingCreated:
    """Fired after a pending booking is created."""

    booking_id: str
    user_id: str
    activity_id: str
    vendor_id: str
    total_amount: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingConfirmed:
    """Fired after payment capture confirms a booking."""

    booking_id: str
    payment_id: str
    confirmed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingCancelled:
    """Fired after a booking is cancelled."""

    booking_id: str
    cancelled_by: str  # 'user', 'vendor' or 'admin'
    cancelled_at: datetime
    refund_amount: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingCompleted:
    """Fired after a booking is marked complete."""

    booking_id: str
    completed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingRefunded:
    """Fired after a cancelled booking's refund is processed."""

    booking_id: str
    refund_id: Optional[str]
    refund_amount: Optional[str]
    refunded_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
