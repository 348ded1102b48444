"""Admin cache schemas."""

from typing import Any, Dict, Optional

from pydantic import Field

from .base import StandardizedModel, StrictModel


class CacheInvalidateRequest(StrictModel):
    pattern: Optional[str] = Field(default=None, min_length=1, max_length=256)
    activity_id: Optional[str] = None
    vendor_id: Optional[str] = None
    reason: str = Field(default="manual", max_length=64)


class CacheInvalidateResponse(StandardizedModel):
    deleted: int
    reason: str


class CacheStatsResponse(StandardizedModel):
    backend: str
    hits: int
    misses: int
    sets: int
    errors: int
    total_requests: int
    hit_rate: float
    tracked_keys: int
    memory_usage: int
    memory_usage_human: Optional[str] = None
    key_count: int
    circuit_breaker: Dict[str, Any]
