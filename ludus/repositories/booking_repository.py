"""Data access for bookings."""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.booking import Booking, BookingStatus
from .base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def count_active_for_activity(self, activity_id: str) -> int:
        """Participants already holding a pending or confirmed seat."""
        rows = (
            self.db.query(Booking.participant_count)
            .filter(
                Booking.activity_id == activity_id,
                Booking.status.in_([BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value]),
            )
            .all()
        )
        return sum(row[0] for row in rows)

    def get_by_payment_id(self, payment_id: str) -> Optional[Booking]:
        return self.db.query(Booking).filter(Booking.payment_id == payment_id).first()

    def booking_history_for_user(self, user_id: str) -> Tuple[Optional[datetime], int]:
        """When the user first booked, and how many bookings they hold in total."""
        first, count = (
            self.db.query(func.min(Booking.created_at), func.count(Booking.id))
            .filter(Booking.user_id == user_id)
            .one()
        )
        return first, int(count or 0)

    def list_for_vendor_between(
        self, vendor_id: str, start: datetime, end: datetime
    ) -> List[Booking]:
        """Vendor bookings created in ``[start, end)``."""
        return (
            self.db.query(Booking)
            .filter(
                Booking.vendor_id == vendor_id,
                Booking.created_at >= start,
                Booking.created_at < end,
            )
            .order_by(Booking.created_at)
            .all()
        )
