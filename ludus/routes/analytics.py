# ludus/routes/analytics.py
"""
Analytics routes

Endpoints:
    POST /events                    - Client interaction (click, form, scroll, custom)
    GET /users/{user_id}/summary    - Recent interactions of one user (self or admin)
    GET /pages/performance          - Views and scroll depth of one page (admin)
"""

import logging
from typing import Any, Coroutine, Dict

from fastapi import APIRouter, Body, Depends, Path, Query, status

from ..api.dependencies import get_current_actor, require_admin
from ..core.constants import ANONYMOUS_IDENTITY
from ..core.exceptions import ForbiddenException
from ..core.request_context import get_request_context
from ..principal import Actor
from ..schemas.analytics import (
    ClientEventAck,
    ClientEventRequest,
    PagePerformanceResponse,
    UserInteractionSummary,
)
from ..services.analytics_service import (
    DEFAULT_SCAN_SIZE,
    AnalyticsService,
    get_analytics_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analytics"])


@router.post("/events", response_model=ClientEventAck, status_code=status.HTTP_202_ACCEPTED)
async def record_client_event(
    event: ClientEventRequest = Body(...),
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> ClientEventAck:
    """
    Record an interaction reported by the client.

    Recording happens in the background. ``accepted`` is false when the
    caller opted out through Do-Not-Track.
    """
    context = get_request_context()
    if context is not None and not analytics.should_track_request(context.do_not_track):
        return ClientEventAck(accepted=False)

    identity = context.identity if context else ANONYMOUS_IDENTITY
    properties: Dict[str, Any] = {
        **event.properties,
        "session_id": context.session_id if context else None,
    }

    tracking: Coroutine[Any, Any, Any]
    if event.type == "click":
        tracking = analytics.track_click(identity, event.element_id or "", event.page, properties)
    elif event.type == "form":
        tracking = analytics.track_form_interaction(
            identity, event.form_id or "", event.action or "", event.page, properties
        )
    elif event.type == "scroll":
        tracking = analytics.track_scroll(
            identity, event.page, event.depth_percent or 0.0, properties
        )
    else:
        tracking = analytics.track_user_action(
            event.event_name or "", identity, {"page": event.page, **properties}
        )
    analytics.dispatch(tracking)
    return ClientEventAck(accepted=True)


@router.get("/users/{user_id}/summary", response_model=UserInteractionSummary)
async def get_user_summary(
    user_id: str = Path(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    current_actor: Actor = Depends(get_current_actor),
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> UserInteractionSummary:
    if not (current_actor.is_admin or current_actor.id == user_id):
        raise ForbiddenException("You can only read your own interaction summary")
    summary = await analytics.get_user_interaction_summary(user_id, limit)
    return UserInteractionSummary.model_validate(summary)


@router.get("/pages/performance", response_model=PagePerformanceResponse)
async def get_page_performance(
    page: str = Query(..., min_length=1, max_length=512),
    sample_size: int = Query(default=DEFAULT_SCAN_SIZE, ge=1, le=10_000),
    _: Actor = Depends(require_admin),
    analytics: AnalyticsService = Depends(get_analytics_service),
) -> PagePerformanceResponse:
    metrics = await analytics.get_page_performance_metrics(page, sample_size)
    return PagePerformanceResponse.model_validate(metrics)
