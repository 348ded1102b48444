"""Data access for activities."""

from sqlalchemy.orm import Session

from ..models.activity import Activity
from .base_repository import BaseRepository


class ActivityRepository(BaseRepository[Activity]):
    def __init__(self, db: Session):
        super().__init__(db, Activity)
