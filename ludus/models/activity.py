"""
Activity model for the LUDUS platform.

Activities are vendor listings. They go through admin moderation before
they become bookable; rejected listings can be re-submitted for review.
"""

from enum import Enum
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import validates
from sqlalchemy.sql import func
import ulid

from ..core.constants import DEFAULT_CURRENCY
from ..core.exceptions import InvalidTransitionException
from ..database import Base
from ..domain.status_machine import status_change_allowed


class ActivityStatus(str, Enum):
    """Moderation statuses."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    vendor_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(64), nullable=True, index=True)
    base_price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default=DEFAULT_CURRENCY)
    capacity = Column(Integer, nullable=False, default=10)
    is_active = Column(Boolean, nullable=False, default=True)

    moderation_status = Column(
        String(20), nullable=False, default=ActivityStatus.PENDING.value, index=True
    )
    moderation_notes = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @validates("moderation_status")
    def _guard_status(self, key: str, value: Any) -> str:
        new_value = ActivityStatus(value).value
        current = self.moderation_status
        if current is not None and current != new_value and not status_change_allowed(self):
            raise InvalidTransitionException("activity", current=str(current), target=new_value)
        return new_value

    @property
    def is_bookable(self) -> bool:
        return bool(self.is_active) and self.moderation_status == ActivityStatus.APPROVED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "base_price": str(self.base_price) if self.base_price is not None else None,
            "currency": self.currency,
            "capacity": self.capacity,
            "is_active": self.is_active,
            "moderation_status": self.moderation_status,
            "moderation_notes": self.moderation_notes,
        }
