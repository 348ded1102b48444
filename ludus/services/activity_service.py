# ludus/services/activity_service.py
"""
Activity Service for the LUDUS backend

Reads go through the cache; every write that can change what a cached
activity, search page or recommendation list shows invalidates them.
Session work runs in worker threads.
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.constants import CACHE_NS_ACTIVITY
from ..core.exceptions import ForbiddenException, NotFoundException, ValidationException
from ..domain.activity_moderation import ACTIVITY_MACHINE
from ..models.activity import Activity, ActivityStatus
from ..principal import Actor
from ..repositories.activity_repository import ActivityRepository
from .analytics_service import AnalyticsService
from .base import BaseService
from .cache_service import CacheKeyBuilder, CacheService

logger = logging.getLogger(__name__)

# Fields a vendor may edit; moderation fields are owned by the machine
EDITABLE_FIELDS = frozenset(
    {"title", "description", "category", "base_price", "currency", "capacity", "is_active"}
)


class ActivityService(BaseService):
    def __init__(
        self,
        db: Session,
        cache: Optional[CacheService] = None,
        analytics: Optional[AnalyticsService] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(db, cache)
        self.analytics = analytics
        self.repository = ActivityRepository(db)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _load(self, activity_id: str) -> Activity:
        activity = self.repository.get_by_id(activity_id)
        if activity is None:
            raise NotFoundException(f"Activity {activity_id} not found", code="ACTIVITY_NOT_FOUND")
        return activity

    @BaseService.measure_operation("get_activity")
    async def get_activity(self, activity_id: str) -> Dict[str, Any]:
        """Activity detail, served from cache when present."""

        async def loader() -> Dict[str, Any]:
            return await asyncio.to_thread(self._load_data, activity_id)

        if self.cache is None:
            return await loader()
        return await self.cache.get_or_set(
            CacheKeyBuilder.activity(activity_id), loader, self.cache.ttls[CACHE_NS_ACTIVITY]
        )

    def _load_data(self, activity_id: str) -> Dict[str, Any]:
        return self._load(activity_id).to_dict()

    @BaseService.measure_operation("update_activity")
    async def update_activity(
        self, activity_id: str, actor: Actor, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply vendor edits and drop every cache entry that may embed the old version."""
        activity = await asyncio.to_thread(self._apply_edits, activity_id, actor, changes)

        if self.cache is not None:
            await self.cache.invalidate_activity_caches(activity.id)
        self._track(actor, "activity_updated", activity, {"fields": sorted(changes)})
        return activity.to_dict()

    def _apply_edits(self, activity_id: str, actor: Actor, changes: Dict[str, Any]) -> Activity:
        activity = self._load(activity_id)
        if not (actor.is_admin or (actor.is_vendor and actor.id == activity.vendor_id)):
            raise ForbiddenException("Only the owning vendor can edit this activity")

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationException(
                "Fields cannot be edited", details={"fields": sorted(unknown)}
            )

        with self.transaction():
            for field, value in changes.items():
                setattr(activity, field, value)
            activity.updated_at = self._clock()
        return activity

    @BaseService.measure_operation("moderate_activity")
    async def moderate(
        self,
        activity_id: str,
        target_status: Any,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move an activity through moderation.

        Admins approve or reject; the owning vendor re-submits a rejected
        activity by targeting ``pending``.
        """
        activity, target = await asyncio.to_thread(
            self._apply_moderation, activity_id, target_status, actor, notes
        )

        if self.cache is not None:
            await self.cache.invalidate_activity_caches(activity.id)
        self._track(actor, f"activity_{target.value}", activity, {"notes": notes})
        self.logger.info(f"Activity {activity.id} moderation -> {target.value} by {actor.id}")
        return activity.to_dict()

    def _apply_moderation(
        self, activity_id: str, target_status: Any, actor: Actor, notes: Optional[str]
    ) -> Tuple[Activity, ActivityStatus]:
        activity = self._load(activity_id)
        target = ACTIVITY_MACHINE.validate(activity.moderation_status, target_status)

        if target == ActivityStatus.PENDING:
            if not (actor.is_admin or actor.id == activity.vendor_id):
                raise ForbiddenException("Only the owning vendor can re-submit this activity")
        elif not actor.is_admin:
            raise ForbiddenException("Only admins can review activities")

        with self.transaction():
            if notes is not None:
                activity.moderation_notes = notes
            ACTIVITY_MACHINE.apply(activity, target, at=self._clock())
        return activity, target

    async def resubmit(
        self, activity_id: str, actor: Actor, notes: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.moderate(activity_id, ActivityStatus.PENDING, actor, notes)

    def _track(
        self, actor: Actor, action: str, activity: Activity, properties: Dict[str, Any]
    ) -> None:
        if self.analytics is None:
            return
        self.analytics.dispatch(
            self.analytics.track_user_action(
                action,
                actor.id,
                {"activity_id": activity.id, "vendor_id": activity.vendor_id, **properties},
            )
        )
