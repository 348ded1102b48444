"""Immutable analytics event record."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
import json
from typing import Any, Dict, Mapping

from ..core.enums import EventCategory


def json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return str(value)


@dataclass(frozen=True)
class TrackedEvent:
    """
    One event appended to the event sink.

    Events are never mutated or deleted by this service; retention is
    applied by the sink per ``category``.
    """

    event_name: str
    identity: str
    properties: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    category: EventCategory = EventCategory.USER_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["properties"] = dict(self.properties)
        payload["timestamp"] = self.timestamp.isoformat()
        payload["category"] = self.category.value
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=json_default, sort_keys=True)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TrackedEvent":
        timestamp = payload.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            event_name=payload["event_name"],
            identity=payload["identity"],
            properties=dict(payload.get("properties") or {}),
            timestamp=timestamp or datetime.now(timezone.utc),
            category=EventCategory(payload.get("category", EventCategory.USER_EVENTS.value)),
        )

    @classmethod
    def from_json(cls, raw: str) -> "TrackedEvent":
        return cls.from_dict(json.loads(raw))
