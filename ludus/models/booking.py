# ludus/models/booking.py
"""
Booking model for the LUDUS platform.

A booking reserves a number of participants on a vendor's activity for a
given date. Pricing is snapshotted at checkout so later activity price
changes never alter an existing booking.

The ``status`` column is owned by the booking status machine
(``ludus.domain.booking_state``); plain attribute assignment of a new
status on an existing booking is rejected.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import validates
from sqlalchemy.sql import func
import ulid

from ..core.constants import DEFAULT_CURRENCY
from ..core.enums import PaymentStatus
from ..core.exceptions import InvalidTransitionException
from ..database import Base
from ..domain.status_machine import status_change_allowed

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"  # Checkout started, payment not captured
    CONFIRMED = "confirmed"  # Payment captured
    COMPLETED = "completed"  # Activity took place
    CANCELLED = "cancelled"  # Cancelled by user, vendor or admin
    REFUNDED = "refunded"  # Refund processed after cancellation


class Booking(Base):
    """
    Self-contained booking record between a user and a vendor activity.
    """

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    user_id = Column(String(64), nullable=False, index=True)
    activity_id = Column(String(64), nullable=False, index=True)
    vendor_id = Column(String(64), nullable=False, index=True)

    booking_date = Column(DateTime(timezone=True), nullable=False, index=True)
    participant_count = Column(Integer, nullable=False, default=1)

    # Pricing snapshot
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default=DEFAULT_CURRENCY)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    confirmation_code = Column(String(12), nullable=False, unique=True)
    notes = Column(Text, nullable=True)

    # Payment
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_id = Column(String(255), nullable=True, comment="Gateway payment id")
    payment_url = Column(
        String(512), nullable=True, comment="3-D Secure page awaiting the customer"
    )
    refund_id = Column(String(255), nullable=True, comment="Gateway refund id")
    refund_amount = Column(Numeric(10, 2), nullable=True)

    # Cancellation
    cancelled_by = Column(String(64), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled', 'refunded')",
            name="ck_bookings_status",
        ),
        CheckConstraint("participant_count > 0", name="ck_bookings_participants_positive"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_non_negative"),
        Index("ix_bookings_user_status", "user_id", "status"),
    )

    @validates("status")
    def _guard_status(self, key: str, value: Any) -> str:
        new_value = BookingStatus(value).value
        current = self.status
        if current is not None and current != new_value and not status_change_allowed(self):
            raise InvalidTransitionException(
                "booking",
                current=str(current),
                target=new_value,
            )
        return new_value

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    @property
    def total(self) -> Decimal:
        return Decimal(self.total_amount or 0)

    def hours_until_start(self, now: Optional[datetime] = None) -> float:
        current = now or datetime.now(timezone.utc)
        start = self.booking_date
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return (start - current).total_seconds() / 3600

    def __repr__(self) -> str:
        return f"<Booking {self.id} status={self.status} total={self.total_amount}>"
