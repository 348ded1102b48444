"""Request principals: who is acting on a booking or activity."""

from __future__ import annotations

from dataclasses import dataclass

from .core.enums import RoleName


@dataclass(frozen=True)
class Actor:
    """The caller behind a state-changing request."""

    user_id: str
    role: RoleName = RoleName.USER

    @property
    def id(self) -> str:
        return self.user_id

    @property
    def is_admin(self) -> bool:
        return self.role == RoleName.ADMIN

    @property
    def is_vendor(self) -> bool:
        return self.role == RoleName.VENDOR

    @property
    def is_system(self) -> bool:
        return self.role == RoleName.SYSTEM


# Acts on bookings when Moyasar reports a payment outcome
PAYMENT_WEBHOOK_ACTOR = Actor(user_id="moyasar-webhook", role=RoleName.SYSTEM)
