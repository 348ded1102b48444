# ludus/routes/bookings.py
"""
Booking routes

Every status change goes through the booking service's transition, either
directly (``/transition``) or through one of the named shortcuts.

Endpoints:
    POST /                          - Create a pending booking
    GET /{booking_id}               - Booking detail (owner, vendor or admin)
    POST /{booking_id}/transition   - Move to any target status
    POST /{booking_id}/pay          - Capture payment and confirm
    POST /{booking_id}/cancel       - Cancel, refunding per policy
    POST /{booking_id}/complete     - Mark as completed
    POST /{booking_id}/refund       - Refund a cancelled booking (admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, status

from ..api.dependencies import get_booking_service, get_current_actor, track_action
from ..principal import Actor
from ..schemas.booking import (
    BookingCancelRequest,
    BookingCreate,
    BookingPaymentRequest,
    BookingResponse,
    BookingTransitionRequest,
)
from ..services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])

_BOOKING_RESPONSES = {
    400: {"description": "Transition not allowed from the current status"},
    403: {"description": "Permission denied"},
    404: {"description": "Booking not found"},
}


@router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(track_action("booking_requested"))],
    responses={
        404: {"description": "Activity not found"},
        409: {"description": "Activity is full"},
    },
)
async def create_booking(
    booking_data: BookingCreate = Body(...),
    current_actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Create a booking in ``pending`` status.

    The price is taken from the activity at creation time; payment is
    captured later through ``/pay``.
    """
    booking = await booking_service.create_booking(
        current_actor,
        booking_data.activity_id,
        booking_data.booking_date,
        participant_count=booking_data.participant_count,
        notes=booking_data.notes,
    )
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}", response_model=BookingResponse, responses=_BOOKING_RESPONSES)
def get_booking(
    booking_id: str = Path(..., description="Booking ULID"),
    current_actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    booking = booking_service.get_booking_for_actor(booking_id, current_actor)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/transition", response_model=BookingResponse, responses=_BOOKING_RESPONSES
)
async def transition_booking(
    booking_id: str = Path(..., description="Booking ULID"),
    request: BookingTransitionRequest = Body(...),
    current_actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Move a booking to ``target_status``.

    Illegal edges are rejected with 400 and the booking is left unchanged.
    """
    booking = await booking_service.transition(
        booking_id,
        request.target_status,
        current_actor,
        request.notes,
        payment_source=request.payment_source,
    )
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/pay",
    response_model=BookingResponse,
    dependencies=[Depends(track_action("payment_submitted"))],
    responses={**_BOOKING_RESPONSES, 422: {"description": "Payment declined"}},
)
async def pay_booking(
    booking_id: str = Path(..., description="Booking ULID"),
    payment_data: Optional[BookingPaymentRequest] = Body(default=None),
    current_actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Capture payment for a pending booking and confirm it.

    Sending ``payment_id`` verifies a payment made earlier (after a 3-D Secure
    redirect). A payment still awaiting the customer leaves the booking
    pending with ``payment_url`` set.
    """
    booking = await booking_service.confirm_payment(
        booking_id,
        current_actor,
        payment_source=payment_data.source if payment_data else None,
        payment_id=payment_data.payment_id if payment_data else None,
    )
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    responses={**_BOOKING_RESPONSES, 422: {"description": "Outside the cancellation window"}},
)
async def cancel_booking(
    booking_id: str = Path(..., description="Booking ULID"),
    cancel_data: Optional[BookingCancelRequest] = Body(default=None),
    current_actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Cancel a booking.

    Paid bookings cancelled by the customer are refunded according to how far
    ahead of the activity the cancellation happens.
    """
    reason = cancel_data.reason if cancel_data else None
    booking = await booking_service.cancel_booking(booking_id, current_actor, reason)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse, responses=_BOOKING_RESPONSES)
async def complete_booking(
    booking_id: str = Path(..., description="Booking ULID"),
    current_actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Mark a booking as completed. Vendor of the booking or admin only."""
    booking = await booking_service.complete_booking(booking_id, current_actor)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/refund", response_model=BookingResponse, responses=_BOOKING_RESPONSES)
async def refund_booking(
    booking_id: str = Path(..., description="Booking ULID"),
    current_actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    booking = await booking_service.mark_refunded(booking_id, current_actor)
    return BookingResponse.model_validate(booking)
