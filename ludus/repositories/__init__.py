from .activity_repository import ActivityRepository
from .base_repository import BaseRepository
from .booking_repository import BookingRepository

__all__ = ["ActivityRepository", "BaseRepository", "BookingRepository"]
