"""SQLAlchemy models for the LUDUS platform."""

from .activity import Activity, ActivityStatus
from .booking import Booking, BookingStatus

__all__ = ["Activity", "ActivityStatus", "Booking", "BookingStatus"]
