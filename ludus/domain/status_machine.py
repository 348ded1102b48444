"""
Guarded status transitions shared by bookings and activity moderation.

The machine owns the permitted-edge table for one entity type. Callers never
assign ``status`` directly; ``apply`` validates the current status, then sets
the new one and the matching timestamp in a single step.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, Dict, FrozenSet, Generic, Iterator, Mapping, Optional, TypeVar

from ..core.exceptions import InvalidTransitionException

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)

# Instance flag checked by the models' ``status`` validators
STATUS_CHANGE_FLAG = "_status_change_allowed"


@contextmanager
def allow_status_change(entity: Any) -> Iterator[None]:
    """Open the model-level status guard for the duration of one assignment."""
    setattr(entity, STATUS_CHANGE_FLAG, True)
    try:
        yield
    finally:
        setattr(entity, STATUS_CHANGE_FLAG, False)


def status_change_allowed(entity: Any) -> bool:
    return bool(getattr(entity, STATUS_CHANGE_FLAG, False))


class StatusMachine(Generic[S]):
    """Finite status machine over an Enum of states."""

    def __init__(
        self,
        entity_name: str,
        status_enum: type[S],
        transitions: Mapping[S, FrozenSet[S]],
        *,
        timestamps: Optional[Mapping[S, str]] = None,
        status_attr: str = "status",
    ) -> None:
        self.entity_name = entity_name
        self.status_enum = status_enum
        self._transitions: Dict[S, FrozenSet[S]] = {
            state: frozenset(transitions.get(state, frozenset())) for state in status_enum
        }
        self._timestamps = dict(timestamps or {})
        self.status_attr = status_attr

    def coerce(self, value: Any) -> S:
        if isinstance(value, self.status_enum):
            return value
        try:
            return self.status_enum(value)
        except ValueError:
            raise InvalidTransitionException(
                self.entity_name,
                current="unknown",
                target=str(value),
            ) from None

    def allowed_targets(self, current: Any) -> FrozenSet[S]:
        return self._transitions[self.coerce(current)]

    def can_transition(self, current: Any, target: Any) -> bool:
        try:
            target_state = self.coerce(target)
            return target_state in self.allowed_targets(current)
        except InvalidTransitionException:
            return False

    def is_terminal(self, status: Any) -> bool:
        return not self.allowed_targets(status)

    def validate(self, current: Any, target: Any) -> S:
        """Return the coerced target state or raise InvalidTransitionException."""
        current_state = self.coerce(current)
        target_state = self.coerce(target)
        allowed = self._transitions[current_state]
        if target_state not in allowed:
            raise InvalidTransitionException(
                self.entity_name,
                current=current_state.value,
                target=target_state.value,
                allowed=[state.value for state in allowed],
            )
        return target_state

    def apply(self, entity: Any, target: Any, *, at: Optional[datetime] = None) -> S:
        """
        Move ``entity`` to ``target`` if the edge is permitted.

        On rejection the entity is left untouched. On success the matching
        timestamp attribute (if any) is stamped with ``at`` or now (UTC).
        """
        current = getattr(entity, self.status_attr)
        target_state = self.validate(current, target)

        with allow_status_change(entity):
            setattr(entity, self.status_attr, target_state.value)

        timestamp_attr = self._timestamps.get(target_state)
        if timestamp_attr:
            setattr(entity, timestamp_attr, at or datetime.now(timezone.utc))

        logger.debug(
            "%s %s: %s -> %s",
            self.entity_name,
            getattr(entity, "id", "?"),
            self.coerce(current).value,
            target_state.value,
        )
        return target_state
