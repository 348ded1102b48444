# ludus/routes/activities.py
"""
Activity routes

Endpoints:
    GET /{activity_id}                 - Activity detail (read-through cache)
    PATCH /{activity_id}               - Vendor edit; drops cached copies
    POST /{activity_id}/moderation     - Approve, reject or re-submit
"""

import logging

from fastapi import APIRouter, Body, Depends, Path

from ..api.dependencies import get_activity_service, get_current_actor, track_conversion_step
from ..principal import Actor
from ..schemas.activity import ActivityModerationRequest, ActivityResponse, ActivityUpdate
from ..services.activity_service import ActivityService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["activities"])


@router.get(
    "/{activity_id}",
    response_model=ActivityResponse,
    dependencies=[Depends(track_conversion_step("discovery", 1, "activity_viewed"))],
    responses={404: {"description": "Activity not found"}},
)
async def get_activity(
    activity_id: str = Path(..., description="Activity ULID"),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityResponse:
    data = await activity_service.get_activity(activity_id)
    return ActivityResponse.model_validate(data)


@router.patch(
    "/{activity_id}",
    response_model=ActivityResponse,
    responses={
        403: {"description": "Permission denied"},
        404: {"description": "Activity not found"},
    },
)
async def update_activity(
    activity_id: str = Path(..., description="Activity ULID"),
    update_data: ActivityUpdate = Body(...),
    current_actor: Actor = Depends(get_current_actor),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityResponse:
    """
    Edit an activity.

    Only fields present in the body are changed. Requires the owning vendor
    or an admin.
    """
    changes = update_data.model_dump(exclude_unset=True)
    data = await activity_service.update_activity(activity_id, current_actor, changes)
    return ActivityResponse.model_validate(data)


@router.post(
    "/{activity_id}/moderation",
    response_model=ActivityResponse,
    responses={
        400: {"description": "Transition not allowed from the current status"},
        403: {"description": "Permission denied"},
        404: {"description": "Activity not found"},
    },
)
async def moderate_activity(
    activity_id: str = Path(..., description="Activity ULID"),
    request: ActivityModerationRequest = Body(...),
    current_actor: Actor = Depends(get_current_actor),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityResponse:
    """
    Move an activity through moderation.

    Admins approve or reject pending activities; the owning vendor moves a
    rejected activity back to ``pending``.
    """
    data = await activity_service.moderate(
        activity_id, request.target_status, current_actor, request.notes
    )
    return ActivityResponse.model_validate(data)
