"""Event primitives for server-side analytics streams."""

from ludus.events.booking_events import (
    BookingCancelled,
    BookingCompleted,
    BookingConfirmed,
    BookingCreated,
    BookingRefunded,
)
from ludus.events.tracked_event import TrackedEvent

__all__ = [
    "BookingCreated",
    "BookingConfirmed",
    "BookingCancelled",
    "BookingCompleted",
    "BookingRefunded",
    "TrackedEvent",
]
