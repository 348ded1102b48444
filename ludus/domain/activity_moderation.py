"""
Activity moderation machine.

    pending  -> approved   admin approves the listing
    pending  -> rejected   admin rejects with notes
    rejected -> pending    vendor re-submits for review
"""

from ..models.activity import ActivityStatus
from .status_machine import StatusMachine

ACTIVITY_TRANSITIONS = {
    ActivityStatus.PENDING: frozenset({ActivityStatus.APPROVED, ActivityStatus.REJECTED}),
    ActivityStatus.REJECTED: frozenset({ActivityStatus.PENDING}),
    ActivityStatus.APPROVED: frozenset(),
}

ACTIVITY_MACHINE: StatusMachine[ActivityStatus] = StatusMachine(
    "activity",
    ActivityStatus,
    ACTIVITY_TRANSITIONS,
    timestamps={
        ActivityStatus.PENDING: "submitted_at",
        ActivityStatus.APPROVED: "reviewed_at",
        ActivityStatus.REJECTED: "reviewed_at",
    },
    status_attr="moderation_status",
)
