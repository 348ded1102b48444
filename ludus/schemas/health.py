"""Health check response schema."""

from datetime import datetime
from typing import Dict

from .base import StandardizedModel


class HealthCheckResponse(StandardizedModel):
    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, bool]
    cache_backend: str
