"""
Core enums for the LUDUS platform.

This module contains enumeration types used throughout the application
for type safety and consistency.
"""

from enum import Enum


class RoleName(str, Enum):
    """
    Roles a request principal can act under.
    """

    ADMIN = "admin"
    VENDOR = "vendor"
    USER = "user"
    # Platform-originated actions (payment webhooks); never accepted from a request
    SYSTEM = "system"


class EventSeverity(str, Enum):
    """
    Severity attached to tracked error events.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventCategory(str, Enum):
    """
    Retention buckets for tracked events.

    The value doubles as the settings suffix (``retention_<value>_days``)
    and the Redis list name (``events:<value>``).
    """

    USER_EVENTS = "user_events"
    PAGE_VIEWS = "page_views"
    CLICKS = "clicks"
    FORMS = "forms"
    SCROLLS = "scrolls"
    ERRORS = "errors"
    REVENUE = "revenue"
    CONVERSIONS = "conversions"
    RETENTION = "retention"
    VENDOR_ANALYTICS = "vendor_analytics"
    SYSTEM_HEALTH = "system_health"


class PaymentStatus(str, Enum):
    """
    Payment state of a booking as reported by the gateway.
    """

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
