# ludus/routes/admin.py
"""
Admin routes

Endpoints:
    GET /cache/stats                        - Hit/miss counters and store introspection
    POST /cache/invalidate                  - Drop keys by pattern, activity or vendor
    GET /analytics/insights                 - Active users, latest revenue and health
    POST /vendors/{vendor_id}/performance   - Daily vendor snapshot, also tracked
    GET /services/metrics                   - Per-operation timings of the services
"""

from datetime import date
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Path, Query

from ..api.dependencies import get_activity_service, get_booking_service, require_admin
from ..core.exceptions import ValidationException
from ..principal import Actor
from ..schemas.analytics import AnalyticsInsightsResponse, VendorPerformanceResponse
from ..schemas.cache import CacheInvalidateRequest, CacheInvalidateResponse, CacheStatsResponse
from ..services.activity_service import ActivityService
from ..services.analytics_service import (
    DEFAULT_SCAN_SIZE,
    AnalyticsService,
    get_analytics_service,
)
from ..services.booking_service import BookingService
from ..services.cache_service import CacheService, get_cache_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats(
    _: Actor = Depends(require_admin),
    cache: CacheService = Depends(get_cache_service),
) -> CacheStatsResponse:
    stats = await cache.get_stats()
    return CacheStatsResponse.model_validate(stats)


@router.post("/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    request: CacheInvalidateRequest = Body(...),
    current_actor: Actor = Depends(require_admin),
    cache: CacheService = Depends(get_cache_service),
) -> CacheInvalidateResponse:
    """
    Invalidate cache entries.

    Exactly one of ``pattern``, ``activity_id`` or ``vendor_id`` selects what
    is dropped. Matching nothing is not an error.
    """
    selectors = [s for s in (request.pattern, request.activity_id, request.vendor_id) if s]
    if len(selectors) != 1:
        raise ValidationException(
            "Provide exactly one of pattern, activity_id or vendor_id",
            code="INVALID_CACHE_SELECTOR",
        )

    if request.activity_id:
        deleted = await cache.invalidate_activity_caches(request.activity_id)
    elif request.vendor_id:
        deleted = await cache.invalidate_vendor_caches(request.vendor_id)
    else:
        deleted = await cache.invalidate(request.pattern or "", reason=request.reason)

    logger.info(f"Cache invalidated by {current_actor.id}: {deleted} keys ({request.reason})")
    return CacheInvalidateResponse(deleted=deleted, reason=request.reason)


@router.get("/analytics/insights", response_model=AnalyticsInsightsResponse)
async def get_analytics_insights(
    sample_size: int = Query(default=DEFAULT_SCAN_SIZE, ge=1, le=10_000),
    _: Actor = Depends(require_admin),
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> AnalyticsInsightsResponse:
    insights = await analytics.generate_insights(sample_size)
    return AnalyticsInsightsResponse.model_validate(insights)


@router.post("/vendors/{vendor_id}/performance", response_model=VendorPerformanceResponse)
async def record_vendor_performance(
    vendor_id: str = Path(..., min_length=1),
    day: Optional[date] = Query(default=None, description="Defaults to today (UTC)"),
    _: Actor = Depends(require_admin),
    booking_service: BookingService = Depends(get_booking_service),
) -> VendorPerformanceResponse:
    """Compute a vendor's daily snapshot and send it to analytics."""
    snapshot = await booking_service.vendor_performance(vendor_id, day)
    return VendorPerformanceResponse.model_validate(snapshot)


@router.get("/services/metrics")
def get_service_metrics(
    _: Actor = Depends(require_admin),
    booking_service: BookingService = Depends(get_booking_service),
    activity_service: ActivityService = Depends(get_activity_service),
) -> Dict[str, Any]:
    """Operation counts and timings collected since the process started."""
    return {
        "BookingService": booking_service.get_metrics(),
        "ActivityService": activity_service.get_metrics(),
    }
