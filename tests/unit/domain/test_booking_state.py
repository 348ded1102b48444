from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import product
from types import SimpleNamespace

import pytest

from ludus.core.exceptions import InvalidTransitionException
from ludus.domain.booking_state import (
    BOOKING_MACHINE,
    BOOKING_TRANSITIONS,
    refund_amount_for,
    within_cancellation_window,
)
from ludus.models.booking import Booking, BookingStatus

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

ALLOWED = {
    (BookingStatus.PENDING, BookingStatus.CONFIRMED),
    (BookingStatus.PENDING, BookingStatus.CANCELLED),
    (BookingStatus.CONFIRMED, BookingStatus.COMPLETED),
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
    (BookingStatus.CANCELLED, BookingStatus.REFUNDED),
}
ILLEGAL = [pair for pair in product(BookingStatus, BookingStatus) if pair not in ALLOWED]


def _entity(status: BookingStatus) -> SimpleNamespace:
    return SimpleNamespace(
        id="b1",
        status=status.value,
        confirmed_at=None,
        cancelled_at=None,
        completed_at=None,
        refunded_at=None,
    )


def _booking(hours_ahead: float, total: str = "200.00") -> Booking:
    return Booking(
        booking_date=NOW + timedelta(hours=hours_ahead),
        total_amount=Decimal(total),
        status=BookingStatus.CONFIRMED.value,
    )


class TestBookingMachine:
    def test_edge_table(self) -> None:
        edges = {
            (source, target) for source, targets in BOOKING_TRANSITIONS.items() for target in targets
        }
        assert edges == ALLOWED

    def test_terminal_states(self) -> None:
        assert BOOKING_MACHINE.is_terminal(BookingStatus.COMPLETED)
        assert BOOKING_MACHINE.is_terminal("refunded")
        assert not BOOKING_MACHINE.is_terminal(BookingStatus.CANCELLED)

    @pytest.mark.parametrize("source,target", sorted(ALLOWED))
    def test_allowed_edges_apply_and_stamp(self, source, target) -> None:
        entity = _entity(source)
        assert BOOKING_MACHINE.apply(entity, target, at=NOW) == target
        assert entity.status == target.value
        assert getattr(entity, f"{target.value}_at") == NOW

    @pytest.mark.parametrize("source,target", ILLEGAL)
    def test_illegal_edges_leave_entity_unchanged(self, source, target) -> None:
        entity = _entity(source)
        before = dict(vars(entity))

        with pytest.raises(InvalidTransitionException) as exc_info:
            BOOKING_MACHINE.apply(entity, target, at=NOW)

        assert vars(entity) == before
        assert exc_info.value.details["current_status"] == source.value
        assert exc_info.value.details["target_status"] == target.value
        assert not BOOKING_MACHINE.can_transition(source, target)

    def test_unknown_status_is_rejected(self) -> None:
        with pytest.raises(InvalidTransitionException):
            BOOKING_MACHINE.validate("pending", "teleported")
        assert BOOKING_MACHINE.can_transition("pending", "teleported") is False


class TestModelStatusGuard:
    def test_direct_assignment_is_rejected(self) -> None:
        booking = Booking(status=BookingStatus.PENDING.value)
        with pytest.raises(InvalidTransitionException):
            booking.status = BookingStatus.CONFIRMED.value
        assert booking.status == BookingStatus.PENDING.value

    def test_machine_assignment_passes_the_guard(self) -> None:
        booking = Booking(status=BookingStatus.PENDING.value)
        BOOKING_MACHINE.apply(booking, BookingStatus.CONFIRMED, at=NOW)
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.confirmed_at == NOW

    def test_machine_rejects_illegal_edge_on_model(self) -> None:
        booking = Booking(status=BookingStatus.COMPLETED.value)
        with pytest.raises(InvalidTransitionException):
            BOOKING_MACHINE.apply(booking, BookingStatus.CANCELLED, at=NOW)
        assert booking.status == BookingStatus.COMPLETED.value
        assert booking.cancelled_at is None


class TestCancellationPolicy:
    @pytest.mark.parametrize(
        "hours_ahead,expected",
        [
            (72, Decimal("200.00")),
            (48.5, Decimal("200.00")),
            (36, Decimal("100.00")),
            (24.5, Decimal("100.00")),
            (12, Decimal("0.00")),
            (-1, Decimal("0.00")),
        ],
    )
    def test_refund_amount(self, hours_ahead, expected) -> None:
        assert refund_amount_for(_booking(hours_ahead), NOW) == expected

    def test_half_refund_rounds_to_cents(self) -> None:
        assert refund_amount_for(_booking(30, total="99.99"), NOW) == Decimal("50.00")

    def test_cancellation_window(self) -> None:
        assert within_cancellation_window(_booking(25), NOW)
        assert not within_cancellation_window(_booking(24), NOW)
        assert not within_cancellation_window(_booking(2), NOW)
