"""
FastAPI dependencies.

Process-wide services (cache, analytics, payment gateway) are built once in
the application lifespan and read from ``app.state``; request-scoped
services are assembled here around the request's database session.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..core.config import Settings, settings
from ..core.constants import ANONYMOUS_IDENTITY
from ..core.enums import RoleName
from ..core.request_context import get_request_context
from ..database import get_db
from ..integrations.moyasar_client import PaymentGateway
from ..principal import Actor
from ..services.activity_service import ActivityService
from ..services.analytics_service import AnalyticsService, get_analytics_service
from ..services.booking_service import BookingService
from ..services.cache_service import CacheService, get_cache_service


def get_settings() -> Settings:
    return settings


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway  # type: ignore[no-any-return]


# Roles a caller may claim; system actions never come from a request
_REQUEST_ROLES = frozenset(role.value for role in RoleName if role != RoleName.SYSTEM)


def get_current_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """Caller identity from the ``X-User-ID`` / ``X-User-Role`` headers."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Authentication required", "code": "AUTH_REQUIRED"},
        )
    requested = (x_user_role or RoleName.USER.value).strip().lower()
    if requested not in _REQUEST_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": f"Unknown role '{x_user_role}'", "code": "UNKNOWN_ROLE"},
        )
    role = RoleName(requested)
    return Actor(user_id=x_user_id, role=role)


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Admin role required", "code": "ADMIN_REQUIRED"},
        )
    return actor


def get_booking_service(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    analytics: AnalyticsService = Depends(get_analytics_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> BookingService:
    return BookingService(db, cache, analytics, gateway)


def get_activity_service(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> ActivityService:
    return ActivityService(db, cache, analytics)


def _request_properties(request: Request) -> Dict[str, Any]:
    context = get_request_context()
    return {
        "path": request.url.path,
        "method": request.method,
        "path_params": dict(request.path_params),
        "session_id": context.session_id if context else None,
    }


def track_action(action: str, **metadata: Any) -> Callable[..., Awaitable[None]]:
    """
    Route dependency that records ``action`` for the current caller.

    Usage:
        @router.post("/x", dependencies=[Depends(track_action("x_clicked"))])
    """

    # Must run on the event loop; dispatch schedules a task there
    async def _track(
        request: Request, analytics: AnalyticsService = Depends(get_analytics_service)
    ) -> None:
        context = get_request_context()
        if context is not None and not analytics.should_track_request(context.do_not_track):
            return
        identity = context.identity if context else ANONYMOUS_IDENTITY
        analytics.dispatch(
            analytics.track_user_action(
                action, identity, {**metadata, **_request_properties(request)}
            )
        )

    return _track


def track_conversion_step(
    funnel: str, step: int, step_name: str, **metadata: Any
) -> Callable[..., Awaitable[None]]:
    """Route dependency that records a funnel step for the current caller."""

    async def _track(
        request: Request, analytics: AnalyticsService = Depends(get_analytics_service)
    ) -> None:
        context = get_request_context()
        if context is not None and not analytics.should_track_request(context.do_not_track):
            return
        identity = context.identity if context else ANONYMOUS_IDENTITY
        analytics.dispatch(
            analytics.track_conversion(
                funnel,
                step,
                step_name,
                identity,
                None,
                {**metadata, **_request_properties(request)},
            )
        )

    return _track
