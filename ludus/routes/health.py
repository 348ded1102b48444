# ludus/routes/health.py
"""
Health check and metrics endpoints.

Both paths are in the analytics middleware's default skip list, so health checks
and scrapes never show up as tracked traffic.
"""

import asyncio
from datetime import datetime, timezone
import logging
import time

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..core.constants import API_TITLE, API_VERSION
from ..database import get_db
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..schemas.health import HealthCheckResponse
from ..services.analytics_service import AnalyticsService, get_analytics_service
from ..services.cache_service import CacheService, get_cache_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

_STARTED_AT = time.monotonic()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> HealthCheckResponse:
    """
    Basic health check endpoint.

    Returns:
        ``healthy`` when the database and the cache store answer, ``degraded``
        otherwise. The in-memory cache store always answers. Each check is
        also recorded as a system-health event.
    """
    db_status = await asyncio.to_thread(_check_database, db)
    cache_status = await cache.ping()
    status = "healthy" if db_status and cache_status else "degraded"
    analytics.dispatch(
        analytics.track_system_health(
            {
                "status": status,
                "database": db_status,
                "cache": cache_status,
                "cache_backend": cache.backend,
                "uptime_seconds": round(time.monotonic() - _STARTED_AT, 1),
                "pending_analytics_tasks": analytics.pending_tasks,
            }
        )
    )

    return HealthCheckResponse(
        status=status,
        service=API_TITLE,
        version=API_VERSION,
        timestamp=datetime.now(timezone.utc),
        checks={"database": db_status, "cache": cache_status},
        cache_backend=cache.backend,
    )


def _check_database(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


@router.get("/metrics", include_in_schema=False, response_class=Response, response_model=None)
def get_metrics() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
        headers={"Cache-Control": "no-store"},
    )
