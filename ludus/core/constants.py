"""Application-wide constants for the LUDUS platform."""

from __future__ import annotations

BRAND_NAME = "LUDUS"

API_TITLE = f"{BRAND_NAME} API"
API_DESCRIPTION = "Activity booking marketplace: activities, bookings, payments and analytics."
API_VERSION = "0.4.0"
API_PREFIX = "/api/v1"

# Identity used when a request carries no authenticated principal
ANONYMOUS_IDENTITY = "anonymous"

# Identity for events and actions the platform originates itself
SYSTEM_IDENTITY = "system"

# Request headers understood by the analytics middleware
USER_ID_HEADER = "x-user-id"
SESSION_ID_HEADER = "x-session-id"
REQUEST_ID_HEADER = "x-request-id"
MOYASAR_SIGNATURE_HEADER = "x-moyasar-signature"

# Cache key namespaces
CACHE_NS_ACTIVITY = "activity"
CACHE_NS_RECOMMENDATIONS = "recommendations"
CACHE_NS_SEARCH = "search"
CACHE_NS_VENDOR = "vendor"

# Length of the base64 query hash used in search cache keys
SEARCH_HASH_LENGTH = 16

# Cancellation policy windows (hours before the activity starts)
FULL_REFUND_WINDOW_HOURS = 48
PARTIAL_REFUND_WINDOW_HOURS = 24
PARTIAL_REFUND_RATIO = 0.5

DEFAULT_CURRENCY = "SAR"
