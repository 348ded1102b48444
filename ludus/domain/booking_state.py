"""
Booking status machine and cancellation policy.

Permitted edges:

    pending   -> confirmed   payment captured
    pending   -> cancelled   cancelled before confirmation
    confirmed -> completed   activity took place
    confirmed -> cancelled   cancelled within the policy window
    cancelled -> refunded    refund processed

``completed`` and ``refunded`` are terminal.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..core.constants import (
    FULL_REFUND_WINDOW_HOURS,
    PARTIAL_REFUND_RATIO,
    PARTIAL_REFUND_WINDOW_HOURS,
)
from ..models.booking import Booking, BookingStatus
from .status_machine import StatusMachine

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset({BookingStatus.REFUNDED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.REFUNDED: frozenset(),
}

BOOKING_MACHINE: StatusMachine[BookingStatus] = StatusMachine(
    "booking",
    BookingStatus,
    BOOKING_TRANSITIONS,
    timestamps={
        BookingStatus.CONFIRMED: "confirmed_at",
        BookingStatus.CANCELLED: "cancelled_at",
        BookingStatus.COMPLETED: "completed_at",
        BookingStatus.REFUNDED: "refunded_at",
    },
)

_CENTS = Decimal("0.01")


def refund_amount_for(booking: Booking, now: Optional[datetime] = None) -> Decimal:
    """
    Refund owed when a paid booking is cancelled now.

    More than 48h ahead: full total. 24-48h ahead: half. Otherwise nothing.
    """
    hours = booking.hours_until_start(now)
    total = booking.total
    if hours > FULL_REFUND_WINDOW_HOURS:
        return total.quantize(_CENTS)
    if hours > PARTIAL_REFUND_WINDOW_HOURS:
        return (total * Decimal(str(PARTIAL_REFUND_RATIO))).quantize(_CENTS, ROUND_HALF_UP)
    return Decimal("0.00")


def within_cancellation_window(booking: Booking, now: Optional[datetime] = None) -> bool:
    """Confirmed bookings may be cancelled only more than 24h before they start."""
    return booking.hours_until_start(now) > PARTIAL_REFUND_WINDOW_HOURS
