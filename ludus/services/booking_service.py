# ludus/services/booking_service.py
"""
Booking Service for the LUDUS backend

Owns the booking lifecycle. Every status change goes through
``BookingService.transition``, which validates the edge against the booking
status machine, runs the side effect the edge requires (payment capture,
refund) and only then applies the new status.

Session work runs in worker threads through ``asyncio.to_thread``; the event
loop only awaits the gateway, the cache and the thread hand-offs.
"""

import asyncio
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
import logging
import secrets
import string
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.constants import PARTIAL_REFUND_WINDOW_HOURS
from ..core.enums import PaymentStatus
from ..core.exceptions import (
    BusinessRuleException,
    CancellationWindowException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    PaymentCaptureException,
    ServiceException,
    ValidationException,
)
from ..domain.booking_state import BOOKING_MACHINE, refund_amount_for, within_cancellation_window
from ..events.booking_events import (
    BookingCancelled,
    BookingCompleted,
    BookingConfirmed,
    BookingCreated,
    BookingRefunded,
)
from ..integrations.moyasar_client import CaptureResult, MoyasarError, PaymentGateway, from_halalas
from ..models.booking import Booking, BookingStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import PAYMENT_WEBHOOK_ACTOR, Actor
from ..repositories.activity_repository import ActivityRepository
from ..repositories.booking_repository import BookingRepository
from .analytics_service import AnalyticsService
from .base import BaseService
from .cache_service import CacheKeyBuilder, CacheService

logger = logging.getLogger(__name__)

BOOKING_FUNNEL = "booking"
_CODE_ALPHABET = string.ascii_uppercase + string.digits

# Moyasar webhook event types
PAYMENT_PAID = "payment_paid"
PAYMENT_FAILED = "payment_failed"
PAYMENT_REFUNDED = "payment_refunded"


def generate_confirmation_code(length: int = 8) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class BookingService(BaseService):
    """Creates bookings and drives them through their status machine."""

    def __init__(
        self,
        db: Session,
        cache: Optional[CacheService] = None,
        analytics: Optional[AnalyticsService] = None,
        payment_gateway: Optional[PaymentGateway] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(db, cache)
        self.analytics = analytics
        self.payment_gateway = payment_gateway
        self.repository = BookingRepository(db)
        self.activity_repository = ActivityRepository(db)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Queries

    def get_booking(self, booking_id: str, *, for_update: bool = False) -> Booking:
        booking = self.repository.get_by_id(booking_id, for_update=for_update)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    def get_booking_for_actor(self, booking_id: str, actor: Actor) -> Booking:
        booking = self.get_booking(booking_id)
        if not (actor.is_admin or actor.id in (booking.user_id, booking.vendor_id)):
            raise ForbiddenException("You do not have access to this booking")
        return booking

    # Creation

    @BaseService.measure_operation("create_booking")
    async def create_booking(
        self,
        actor: Actor,
        activity_id: str,
        booking_date: datetime,
        participant_count: int = 1,
        notes: Optional[str] = None,
    ) -> Booking:
        """Create a pending booking priced from the activity's current base price."""
        if participant_count < 1:
            raise ValidationException("At least one participant is required")

        booking_date = _as_utc(booking_date)
        if booking_date <= self._clock():
            raise ValidationException("Booking date must be in the future")

        booking = await asyncio.to_thread(
            self._insert_booking, actor, activity_id, booking_date, participant_count, notes
        )

        self.logger.info(f"Booking {booking.id} created for activity {activity_id}")
        event = BookingCreated(
            booking_id=booking.id,
            user_id=booking.user_id,
            activity_id=booking.activity_id,
            vendor_id=booking.vendor_id,
            total_amount=str(booking.total_amount),
            created_at=self._clock(),
        )
        self._track("booking_created", booking, event.to_dict())
        self._track_conversion(booking, 1, "booking_created")
        await self._track_retention(booking)
        return booking

    def _insert_booking(
        self,
        actor: Actor,
        activity_id: str,
        booking_date: datetime,
        participant_count: int,
        notes: Optional[str],
    ) -> Booking:
        activity = self.activity_repository.get_by_id(activity_id)
        if activity is None:
            raise NotFoundException(f"Activity {activity_id} not found", code="ACTIVITY_NOT_FOUND")
        if not activity.is_bookable:
            raise BusinessRuleException(
                "Activity is not open for booking", code="ACTIVITY_NOT_BOOKABLE"
            )

        taken = self.repository.count_active_for_activity(activity_id)
        if taken + participant_count > activity.capacity:
            raise ConflictException(
                "Not enough places left for this activity",
                code="ACTIVITY_FULL",
                details={"capacity": activity.capacity, "taken": taken},
            )

        unit_price = Decimal(activity.base_price)
        with self.transaction():
            return self.repository.create(
                user_id=actor.id,
                activity_id=activity.id,
                vendor_id=activity.vendor_id,
                booking_date=booking_date,
                participant_count=participant_count,
                unit_price=unit_price,
                total_amount=unit_price * participant_count,
                currency=activity.currency,
                status=BookingStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                confirmation_code=generate_confirmation_code(),
                notes=notes,
                created_at=self._clock(),
            )

    # Transitions

    @BaseService.measure_operation("transition")
    async def transition(
        self,
        booking_id: str,
        target_status: Any,
        actor: Actor,
        notes: Optional[str] = None,
        *,
        payment_source: Optional[Dict[str, Any]] = None,
        payment_id: Optional[str] = None,
    ) -> Booking:
        """
        Move a booking to ``target_status``.

        Raises InvalidTransitionException for edges outside the machine, and
        typed domain exceptions when a side effect or rule fails. The booking
        is left as it was in every failure case except a declined payment,
        which records ``payment_status=failed`` and keeps the booking pending.

        Confirmation captures a new payment from ``payment_source``, or
        verifies an existing gateway payment when ``payment_id`` is given. A
        payment that still needs customer action (3-D Secure) is recorded and
        the booking is returned pending.
        """
        booking = await asyncio.to_thread(self.get_booking, booking_id, for_update=True)
        current = BOOKING_MACHINE.coerce(booking.status)
        target = BOOKING_MACHINE.validate(current, target_status)
        self._authorize(booking, actor, target)

        now = self._clock()
        if target == BookingStatus.CONFIRMED:
            if not await self._confirm(booking, notes, payment_source, payment_id, now):
                self.logger.info(f"Booking {booking.id} awaiting payment action")
                return booking
        elif target == BookingStatus.CANCELLED:
            await self._cancel(booking, actor, notes, now)
        elif target == BookingStatus.COMPLETED:
            await self._complete(booking, actor, now)
        elif target == BookingStatus.REFUNDED:
            await self._refund(booking, now)

        prometheus_metrics.record_booking_transition(current.value, target.value)
        self.logger.info(f"Booking {booking.id}: {current.value} -> {target.value} by {actor.id}")
        return booking

    def _authorize(self, booking: Booking, actor: Actor, target: BookingStatus) -> None:
        if actor.is_admin or actor.is_system:
            return
        is_owner = actor.id == booking.user_id
        is_vendor = actor.is_vendor and actor.id == booking.vendor_id

        if target == BookingStatus.CONFIRMED:
            allowed = is_owner
        elif target == BookingStatus.CANCELLED:
            allowed = is_owner or is_vendor
        elif target == BookingStatus.COMPLETED:
            allowed = is_vendor
        else:
            allowed = False

        if not allowed:
            raise ForbiddenException(
                f"Not allowed to move this booking to {target.value}",
                details={"booking_id": booking.id, "target_status": target.value},
            )

    def _apply_status(
        self, booking: Booking, target: BookingStatus, now: datetime, **fields: Any
    ) -> None:
        """Write ``fields`` and the new status in one transaction."""
        with self.transaction():
            for name, value in fields.items():
                setattr(booking, name, value)
            BOOKING_MACHINE.apply(booking, target, at=now)

    def _record_payment(self, booking: Booking, **fields: Any) -> None:
        with self.transaction():
            for name, value in fields.items():
                setattr(booking, name, value)

    async def _confirm(
        self,
        booking: Booking,
        notes: Optional[str],
        payment_source: Optional[Dict[str, Any]],
        payment_id: Optional[str],
        now: datetime,
    ) -> bool:
        """Returns False when the payment is waiting on the customer."""
        if self.payment_gateway is None:
            raise ServiceException("No payment gateway configured")

        result: CaptureResult
        if payment_id:
            result = await self.payment_gateway.verify(payment_id)
        else:
            result = await self.payment_gateway.capture(
                booking_id=booking.id,
                amount=booking.total,
                currency=booking.currency,
                description=f"Booking {booking.confirmation_code}",
                source=payment_source,
                metadata={"user_id": booking.user_id, "activity_id": booking.activity_id},
            )

        if result.status == PaymentStatus.PENDING and result.payment_id:
            await asyncio.to_thread(
                self._record_payment,
                booking,
                payment_id=result.payment_id,
                payment_status=PaymentStatus.PENDING.value,
                payment_url=result.transaction_url,
            )
            self._track("payment_action_required", booking, {"payment_id": result.payment_id})
            return False

        if not result.is_paid:
            fields: Dict[str, Any] = {"payment_status": PaymentStatus.FAILED.value}
            if result.payment_id:
                fields["payment_id"] = result.payment_id
            await asyncio.to_thread(self._record_payment, booking, **fields)
            self.logger.warning(
                f"Payment capture failed for booking {booking.id}: {result.message}"
            )
            self._track("payment_failed", booking, {"reason": result.message})
            raise PaymentCaptureException(
                booking.id,
                result.message or "payment was not captured",
                payment_id=result.payment_id,
            )

        if result.amount < booking.total:
            self.logger.warning(
                f"Payment {result.payment_id} for booking {booking.id} covers "
                f"{result.amount} of {booking.total}"
            )
            raise PaymentCaptureException(
                booking.id,
                "paid amount does not cover the booking total",
                payment_id=result.payment_id,
            )

        confirmed_fields: Dict[str, Any] = {
            "payment_status": PaymentStatus.PAID.value,
            "payment_id": result.payment_id,
            "payment_url": None,
        }
        if notes:
            confirmed_fields["notes"] = notes
        await asyncio.to_thread(
            self._apply_status, booking, BookingStatus.CONFIRMED, now, **confirmed_fields
        )

        event = BookingConfirmed(
            booking_id=booking.id, payment_id=result.payment_id or "", confirmed_at=now
        )
        self._track("booking_confirmed", booking, event.to_dict())
        self._track_conversion(booking, 2, "payment_completed", value=float(booking.total))
        if self.analytics is not None:
            self.analytics.dispatch(
                self.analytics.track_revenue(
                    booking.user_id,
                    booking.total,
                    booking.currency,
                    booking.activity_id,
                    booking.vendor_id,
                    payment_method=(payment_source or {}).get("type", "creditcard"),
                    transaction_id=result.payment_id,
                )
            )
        await self._forget_recommendations(booking.user_id)
        return True

    async def _cancel(
        self, booking: Booking, actor: Actor, reason: Optional[str], now: datetime
    ) -> None:
        refund_amount: Optional[Decimal] = None
        refund_id: Optional[str] = None

        if booking.status == BookingStatus.CONFIRMED.value:
            if not actor.is_admin and not within_cancellation_window(booking, now):
                raise CancellationWindowException(
                    PARTIAL_REFUND_WINDOW_HOURS, booking.hours_until_start(now)
                )
            if booking.is_paid:
                # Vendor and admin cancellations are refunded in full
                if actor.is_admin or actor.is_vendor:
                    refund_amount = booking.total
                else:
                    refund_amount = refund_amount_for(booking, now)
                if refund_amount > 0:
                    refund_id = await self._issue_refund(booking, refund_amount, reason)

        fields: Dict[str, Any] = {
            "cancelled_by": actor.role.value,
            "cancellation_reason": reason,
        }
        if refund_amount is not None:
            fields["refund_amount"] = refund_amount
        if refund_id:
            fields["refund_id"] = refund_id
            fields["payment_status"] = PaymentStatus.REFUNDED.value
        await asyncio.to_thread(self._apply_status, booking, BookingStatus.CANCELLED, now, **fields)

        event = BookingCancelled(
            booking_id=booking.id,
            cancelled_by=actor.role.value,
            cancelled_at=now,
            refund_amount=str(refund_amount) if refund_amount is not None else None,
        )
        self._track("booking_cancelled", booking, event.to_dict())
        await self._forget_recommendations(booking.user_id)

    async def _complete(self, booking: Booking, actor: Actor, now: datetime) -> None:
        if not actor.is_admin and booking.hours_until_start(now) > 0:
            raise BusinessRuleException(
                "A booking can only be completed once the activity has taken place",
                code="BOOKING_NOT_STARTED",
            )

        await asyncio.to_thread(self._apply_status, booking, BookingStatus.COMPLETED, now)

        self._track(
            "booking_completed",
            booking,
            BookingCompleted(booking_id=booking.id, completed_at=now).to_dict(),
        )
        self._track_conversion(booking, 3, "activity_completed")

    async def _refund(self, booking: Booking, now: datetime) -> None:
        fields: Dict[str, Any] = {"payment_status": PaymentStatus.REFUNDED.value}
        if not booking.refund_id:
            if not booking.is_paid or not booking.payment_id:
                raise BusinessRuleException(
                    "Booking has no captured payment to refund", code="NOTHING_TO_REFUND"
                )
            amount = booking.total
            fields["refund_id"] = await self._issue_refund(booking, amount, "Refund processed")
            fields["refund_amount"] = amount

        await asyncio.to_thread(self._apply_status, booking, BookingStatus.REFUNDED, now, **fields)

        event = BookingRefunded(
            booking_id=booking.id,
            refund_id=booking.refund_id,
            refund_amount=str(booking.refund_amount) if booking.refund_amount is not None else None,
            refunded_at=now,
        )
        self._track("booking_refunded", booking, event.to_dict())

    async def _issue_refund(self, booking: Booking, amount: Decimal, reason: Optional[str]) -> str:
        if self.payment_gateway is None:
            raise ServiceException("No payment gateway configured")
        try:
            refund = await self.payment_gateway.refund(
                payment_id=booking.payment_id,
                amount=amount,
                reason=reason or "Booking cancellation refund",
            )
        except MoyasarError as exc:
            self.logger.error(f"Refund failed for booking {booking.id}: {exc}")
            raise ServiceException(
                "Refund could not be processed, booking left unchanged",
                code="REFUND_FAILED",
                details={"booking_id": booking.id},
            ) from exc
        return refund.refund_id

    # Convenience wrappers

    async def confirm_payment(
        self,
        booking_id: str,
        actor: Actor,
        payment_source: Optional[Dict[str, Any]] = None,
        payment_id: Optional[str] = None,
    ) -> Booking:
        return await self.transition(
            booking_id,
            BookingStatus.CONFIRMED,
            actor,
            payment_source=payment_source,
            payment_id=payment_id,
        )

    async def cancel_booking(
        self, booking_id: str, actor: Actor, reason: Optional[str] = None
    ) -> Booking:
        return await self.transition(booking_id, BookingStatus.CANCELLED, actor, notes=reason)

    async def complete_booking(self, booking_id: str, actor: Actor) -> Booking:
        return await self.transition(booking_id, BookingStatus.COMPLETED, actor)

    async def mark_refunded(self, booking_id: str, actor: Actor) -> Booking:
        return await self.transition(booking_id, BookingStatus.REFUNDED, actor)

    # Gateway callbacks

    @BaseService.measure_operation("apply_payment_event")
    async def apply_payment_event(
        self, event_type: str, payment: Dict[str, Any]
    ) -> Optional[Booking]:
        """
        Reconcile a booking with a payment webhook.

        ``payment_paid`` confirms a pending booking after re-reading the
        payment from the gateway, ``payment_failed`` cancels it, and
        ``payment_refunded`` settles a cancelled booking as refunded. Events
        for bookings that have already moved on are ignored, so redelivery is
        harmless. Returns the booking, or None when no booking matches.
        """
        payment_id = payment.get("id")
        metadata = payment.get("metadata") or {}
        booking = await asyncio.to_thread(
            self._find_for_payment, payment_id, metadata.get("booking_id")
        )
        if booking is None:
            self.logger.warning(f"No booking for {event_type} payment {payment_id}")
            return None

        status = BOOKING_MACHINE.coerce(booking.status)
        actor = PAYMENT_WEBHOOK_ACTOR

        if event_type == PAYMENT_PAID and status == BookingStatus.PENDING:
            return await self.transition(
                booking.id, BookingStatus.CONFIRMED, actor, payment_id=payment_id
            )

        if event_type == PAYMENT_FAILED and status == BookingStatus.PENDING:
            fields: Dict[str, Any] = {"payment_status": PaymentStatus.FAILED.value}
            if payment_id:
                fields["payment_id"] = payment_id
            await asyncio.to_thread(self._record_payment, booking, **fields)
            self._track("payment_failed", booking, {"reason": _failure_reason(payment)})
            return await self.transition(
                booking.id, BookingStatus.CANCELLED, actor, notes="Payment failed"
            )

        if event_type == PAYMENT_REFUNDED and status == BookingStatus.CANCELLED:
            refunded = payment.get("refunded")
            await asyncio.to_thread(
                self._record_payment,
                booking,
                refund_id=booking.refund_id or payment_id,
                refund_amount=(
                    from_halalas(int(refunded))
                    if refunded
                    else booking.refund_amount or booking.total
                ),
            )
            return await self.transition(booking.id, BookingStatus.REFUNDED, actor)

        self.logger.info(
            f"Ignoring {event_type} for booking {booking.id} in status {status.value}"
        )
        return booking

    def _find_for_payment(
        self, payment_id: Optional[str], booking_id: Optional[str]
    ) -> Optional[Booking]:
        if payment_id:
            booking = self.repository.get_by_payment_id(payment_id)
            if booking is not None:
                return booking
        if not booking_id:
            return None
        booking = self.repository.get_by_id(booking_id, for_update=True)
        # A booking bound to another payment is not reconciled from this one
        if booking is not None and booking.payment_id and booking.payment_id != payment_id:
            return None
        return booking

    # Reporting

    @BaseService.measure_operation("vendor_performance")
    async def vendor_performance(
        self, vendor_id: str, day: Optional[date] = None
    ) -> Dict[str, Any]:
        """
        Snapshot of one vendor's bookings created on ``day`` (default today).

        The snapshot is also sent to analytics as a vendor-performance event.
        """
        day = day or self._clock().date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        bookings = await asyncio.to_thread(
            self.repository.list_for_vendor_between, vendor_id, start, start + timedelta(days=1)
        )

        paid = [
            booking
            for booking in bookings
            if booking.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value)
        ]
        revenue = sum(
            (booking.total - Decimal(booking.refund_amount or 0) for booking in paid),
            Decimal("0"),
        )
        snapshot: Dict[str, Any] = {
            "vendor_id": vendor_id,
            "date": day,
            "total_bookings": len(bookings),
            "total_revenue": revenue.quantize(Decimal("0.01")),
            "conversion_rate": round(len(paid) / len(bookings), 4) if bookings else 0.0,
            "customer_count": len({booking.user_id for booking in bookings}),
            "average_rating": None,
        }
        if self.analytics is not None:
            self.analytics.dispatch(
                self.analytics.track_vendor_performance(
                    vendor_id,
                    day,
                    snapshot["total_bookings"],
                    snapshot["total_revenue"],
                    snapshot["conversion_rate"],
                    snapshot["customer_count"],
                )
            )
        return snapshot

    # Side channels

    def _track(self, action: str, booking: Booking, properties: Dict[str, Any]) -> None:
        if self.analytics is None:
            return
        self.analytics.dispatch(
            self.analytics.track_user_action(
                action,
                booking.user_id,
                {"activity_id": booking.activity_id, "vendor_id": booking.vendor_id, **properties},
            )
        )

    def _track_conversion(
        self, booking: Booking, step: int, step_name: str, value: Optional[float] = None
    ) -> None:
        if self.analytics is None:
            return
        self.analytics.dispatch(
            self.analytics.track_conversion(
                BOOKING_FUNNEL,
                step,
                step_name,
                booking.user_id,
                value,
                {"booking_id": booking.id, "activity_id": booking.activity_id},
            )
        )

    async def _track_retention(self, booking: Booking) -> None:
        """Cohort is the month of the user's first booking; retained once they book again."""
        if self.analytics is None:
            return
        first_booked_at, booking_count = await asyncio.to_thread(
            self.repository.booking_history_for_user, booking.user_id
        )
        if first_booked_at is None:
            return
        first_booked_at = _as_utc(first_booked_at)
        self.analytics.dispatch(
            self.analytics.track_retention(
                booking.user_id,
                first_booked_at.strftime("%Y-%m"),
                max(0, (self._clock() - first_booked_at).days),
                is_retained=booking_count > 1,
                activity_count=booking_count,
            )
        )

    async def _forget_recommendations(self, user_id: str) -> None:
        # Recommendation lists exclude activities the user already holds
        if self.cache is not None:
            await self.cache.delete(CacheKeyBuilder.recommendations(user_id))


def _failure_reason(payment: Dict[str, Any]) -> Optional[str]:
    source = payment.get("source") or {}
    return source.get("message") or payment.get("status")
