# ludus/services/cache_service.py
"""
Dedicated Cache Service for the LUDUS backend

Centralizes all caching logic: namespaced keys, per-entity TTLs,
glob-pattern invalidation and hit/miss statistics.

The backing store is Redis when ``REDIS_URL`` is configured. Without it the
service keeps an in-memory TTL store with the same semantics, which is what
local development and the unit tests run against. Store failures never reach
callers: they are logged at error level and surface as a miss or a no-op.
"""

import base64
from collections import OrderedDict
from datetime import date, datetime, timezone
from enum import Enum
import fnmatch
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from fastapi import Request
from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from ..core.config import settings
from ..core.constants import (
    CACHE_NS_ACTIVITY,
    CACHE_NS_RECOMMENDATIONS,
    CACHE_NS_SEARCH,
    CACHE_NS_VENDOR,
    SEARCH_HASH_LENGTH,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from .base import BaseService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _CacheMiss:
    """Sentinel returned by ``get`` when nothing usable is cached."""

    _instance: Optional["_CacheMiss"] = None

    def __new__(cls) -> "_CacheMiss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "CACHE_MISS"


CACHE_MISS = _CacheMiss()


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    Circuit breaker around backing-store calls.

    Prevents a dead Redis from adding a connect timeout to every request.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        expected_exception: type[BaseException] = RedisError,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            recovery_timeout: Seconds before attempting recovery
            expected_exception: Exception type counted as a store failure
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock

        self.failure_count: int = 0
        self._last_failure_time: Optional[float] = None
        self._state: CircuitState = CircuitState.CLOSED

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func`` and record the outcome.

        Raises whatever ``func`` raises; the caller decides how a failure
        degrades.
        """
        try:
            result = await func()
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            logger.info("Circuit breaker recovered, closing circuit")

    def _on_failure(self) -> None:
        self.failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(f"Circuit breaker opened after {self.failure_count} failures")
            self._state = CircuitState.OPEN


class CacheKeyBuilder:
    """Standardized cache key generation."""

    @staticmethod
    def build(*parts: Union[str, int, date]) -> str:
        """
        Build a cache key from parts.

        Examples:
            build('activity', 'a1') -> 'activity:a1'
            build('recommendations', 'u1') -> 'recommendations:u1'
        """
        formatted_parts = []
        for part in parts:
            if isinstance(part, (date, datetime)):
                formatted_parts.append(part.isoformat())
            else:
                formatted_parts.append(str(part))
        return ":".join(formatted_parts)

    @staticmethod
    def search_hash(query: str, filters: Optional[Dict[str, Any]] = None) -> str:
        """
        Short hash of a search request.

        base64 of the canonical JSON, cut to a fixed length. Distinct searches
        sharing a prefix collide, so search entries stay short-lived.
        """
        payload = json.dumps({"query": query, "filters": filters or {}}, sort_keys=True, default=str)
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")[:SEARCH_HASH_LENGTH]

    @classmethod
    def activity(cls, activity_id: str) -> str:
        return cls.build(CACHE_NS_ACTIVITY, activity_id)

    @classmethod
    def recommendations(cls, user_id: str) -> str:
        return cls.build(CACHE_NS_RECOMMENDATIONS, user_id)

    @classmethod
    def search(cls, query: str, filters: Optional[Dict[str, Any]] = None) -> str:
        return cls.build(CACHE_NS_SEARCH, cls.search_hash(query, filters))

    @classmethod
    def vendor(cls, vendor_id: str) -> str:
        return cls.build(CACHE_NS_VENDOR, vendor_id)


_OUTCOME_LABELS = {"hits": "hit", "misses": "miss", "sets": "set"}


def _namespace(key: str) -> str:
    return key.split(":", 1)[0]


class CacheService:
    """
    Process-wide cache with Redis backing and in-memory fallback.

    One instance is created in the application lifespan and shared by every
    request; counters are only touched between awaits on the event loop.
    """

    def __init__(
        self,
        redis_client: Optional[AsyncRedis] = None,
        *,
        ttls: Optional[Dict[str, int]] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
        max_tracked_keys: Optional[int] = None,
        sweep_interval: Optional[float] = None,
    ) -> None:
        self.redis: Optional[AsyncRedis] = redis_client
        self.ttls: Dict[str, int] = {**settings.cache_ttls(), **(ttls or {})}
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.cache_circuit_failure_threshold,
            recovery_timeout=settings.cache_circuit_recovery_timeout,
        )
        self.key_builder = CacheKeyBuilder()
        self._clock = clock

        # In-memory fallback: serialized values plus absolute expiry on self._clock
        self._memory_cache: Dict[str, str] = {}
        self._memory_expiry: Dict[str, float] = {}
        self.sweep_interval = (
            settings.cache_sweep_interval if sweep_interval is None else sweep_interval
        )
        self._last_sweep = self._clock()

        # Per-key counters are an LRU capped at max_tracked_keys; totals stay exact
        self.max_tracked_keys = (
            settings.cache_max_tracked_keys if max_tracked_keys is None else max_tracked_keys
        )
        self._key_stats: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
        self._totals: Dict[str, int] = self._empty_counters()
        self._errors = 0

        if self.redis is None:
            logger.info("Cache running with in-memory fallback store")

    @staticmethod
    def _empty_counters() -> Dict[str, int]:
        return {"hits": 0, "misses": 0, "sets": 0}

    @property
    def backend(self) -> str:
        return "redis" if self.redis is not None else "memory"

    def default_ttl(self, key: str) -> int:
        return self.ttls.get(_namespace(key), self.ttls.get(CACHE_NS_ACTIVITY, 3600))

    def _count(self, key: str, counter: str) -> None:
        self._totals[counter] += 1
        counters = self._key_stats.get(key)
        if counters is None:
            counters = self._key_stats[key] = self._empty_counters()
            while len(self._key_stats) > self.max_tracked_keys:
                self._key_stats.popitem(last=False)
        else:
            self._key_stats.move_to_end(key)
        counters[counter] += 1
        prometheus_metrics.record_cache_operation(_namespace(key), _OUTCOME_LABELS[counter])

    def _record_error(self, key: str) -> None:
        self._errors += 1
        prometheus_metrics.record_cache_operation(_namespace(key), "error")

    # Core Cache Operations

    @BaseService.measure_operation("cache_set")
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Serialize ``value`` and store it under ``key`` with an expiry."""
        if ttl is None or ttl <= 0:
            ttl = self.default_ttl(key)

        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache set error for key {key}: value not serializable: {e}")
            self._record_error(key)
            return False

        if self.redis is None:
            self._sweep_expired()
            self._memory_cache[key] = serialized
            self._memory_expiry[key] = self._clock() + ttl
            self._count(key, "sets")
            return True

        if self.circuit_breaker.is_open:
            logger.debug(f"Circuit breaker open, skipping cache set for {key}")
            return False

        redis_client = self.redis
        try:
            await self.circuit_breaker.call(lambda: redis_client.setex(key, ttl, serialized))
        except Exception as e:
            logger.error(f"Cache set error for key {key}: {e}")
            self._record_error(key)
            return False

        self._count(key, "sets")
        return True

    @BaseService.measure_operation("cache_get")
    async def get(self, key: str) -> Any:
        """Return the cached value for ``key`` or ``CACHE_MISS``."""
        raw: Optional[str] = None

        if self.redis is None:
            raw = self._memory_get(key)
        elif not self.circuit_breaker.is_open:
            redis_client = self.redis
            try:
                raw = await self.circuit_breaker.call(lambda: redis_client.get(key))
            except Exception as e:
                logger.error(f"Cache get error for key {key}: {e}")
                self._record_error(key)
                raw = None

        if raw is None:
            self._count(key, "misses")
            return CACHE_MISS

        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache get error for key {key}: corrupt payload: {e}")
            self._record_error(key)
            self._count(key, "misses")
            return CACHE_MISS

        self._count(key, "hits")
        return value

    def _memory_get(self, key: str) -> Optional[str]:
        if key not in self._memory_cache:
            return None
        if self._clock() >= self._memory_expiry.get(key, 0.0):
            self._memory_cache.pop(key, None)
            self._memory_expiry.pop(key, None)
            return None
        return self._memory_cache[key]

    def _sweep_expired(self) -> int:
        """Drop expired memory entries, at most once per ``sweep_interval``."""
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval:
            return 0
        self._last_sweep = now
        expired = [key for key, expires_at in self._memory_expiry.items() if expires_at <= now]
        for key in expired:
            self._memory_cache.pop(key, None)
            self._memory_expiry.pop(key, None)
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    @BaseService.measure_operation("cache_delete")
    async def delete(self, key: str) -> bool:
        """Delete a single key."""
        if self.redis is None:
            existed = self._memory_get(key) is not None
            self._memory_cache.pop(key, None)
            self._memory_expiry.pop(key, None)
            return existed

        if self.circuit_breaker.is_open:
            return False

        redis_client = self.redis
        try:
            return bool(await self.circuit_breaker.call(lambda: redis_client.delete(key)))
        except Exception as e:
            logger.error(f"Cache delete error for key {key}: {e}")
            self._record_error(key)
            return False

    @BaseService.measure_operation("cache_invalidate")
    async def invalidate(self, pattern: str, reason: str = "manual") -> int:
        """
        Delete every key matching a glob ``pattern``.

        Keys are enumerated with SCAN and removed with a single DEL. Returns the
        number of keys removed; zero matches is a no-op.
        """
        try:
            if self.redis is None:
                count = self._invalidate_memory(pattern)
            elif self.circuit_breaker.is_open:
                logger.warning(f"Circuit breaker open, skipping invalidation of {pattern}")
                return 0
            else:
                count = await self._invalidate_redis(pattern)
        except Exception as e:
            logger.error(f"Cache invalidate error for pattern {pattern}: {e}")
            self._record_error(pattern)
            return 0

        if count:
            logger.info(f"Invalidated {count} cache keys matching {pattern} (reason: {reason})")
            prometheus_metrics.record_cache_invalidation(reason, count)
        else:
            logger.debug(f"No cache keys matched {pattern} (reason: {reason})")
        return count

    async def _invalidate_redis(self, pattern: str) -> int:
        redis_client = self.redis
        if redis_client is None:
            return 0

        async def _scan_and_delete() -> int:
            keys: List[str] = [key async for key in redis_client.scan_iter(match=pattern, count=500)]
            if not keys:
                return 0
            return int(await redis_client.delete(*keys))

        return await self.circuit_breaker.call(_scan_and_delete)

    def _invalidate_memory(self, pattern: str) -> int:
        now = self._clock()
        matched = [key for key in self._memory_cache if fnmatch.fnmatchcase(key, pattern)]
        count = 0
        for key in matched:
            # Expired entries are dropped but not counted
            if self._memory_expiry.pop(key, 0.0) > now:
                count += 1
            self._memory_cache.pop(key, None)
        return count

    # Domain invalidation

    @BaseService.measure_operation("invalidate_activity_caches")
    async def invalidate_activity_caches(self, activity_id: str) -> int:
        """Drop an activity entry plus every search and recommendation list."""
        patterns = [
            self.key_builder.activity(activity_id),
            f"{CACHE_NS_SEARCH}:*",
            f"{CACHE_NS_RECOMMENDATIONS}:*",
        ]
        total = 0
        for pattern in patterns:
            total += await self.invalidate(pattern, reason="activity_update")
        return total

    @BaseService.measure_operation("invalidate_vendor_caches")
    async def invalidate_vendor_caches(self, vendor_id: str) -> int:
        """Drop a vendor entry and everything that may embed vendor data."""
        patterns = [
            self.key_builder.vendor(vendor_id),
            f"{CACHE_NS_ACTIVITY}:*",
            f"{CACHE_NS_SEARCH}:*",
            f"{CACHE_NS_RECOMMENDATIONS}:*",
        ]
        total = 0
        for pattern in patterns:
            total += await self.invalidate(pattern, reason="vendor_update")
        return total

    # Domain-Specific Methods

    async def set_activity(self, activity_id: str, data: Any) -> bool:
        return await self.set(self.key_builder.activity(activity_id), data, self.ttls[CACHE_NS_ACTIVITY])

    async def get_activity(self, activity_id: str) -> Any:
        return await self.get(self.key_builder.activity(activity_id))

    async def set_user_recommendations(self, user_id: str, recommendations: Any) -> bool:
        return await self.set(
            self.key_builder.recommendations(user_id),
            recommendations,
            self.ttls[CACHE_NS_RECOMMENDATIONS],
        )

    async def get_user_recommendations(self, user_id: str) -> Any:
        return await self.get(self.key_builder.recommendations(user_id))

    async def set_search_results(
        self, query: str, filters: Optional[Dict[str, Any]], results: Any
    ) -> bool:
        payload = {
            "query": query,
            "filters": filters or {},
            "results": results,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return await self.set(
            self.key_builder.search(query, filters), payload, self.ttls[CACHE_NS_SEARCH]
        )

    async def get_search_results(self, query: str, filters: Optional[Dict[str, Any]] = None) -> Any:
        return await self.get(self.key_builder.search(query, filters))

    async def set_vendor(self, vendor_id: str, data: Any) -> bool:
        return await self.set(self.key_builder.vendor(vendor_id), data, self.ttls[CACHE_NS_VENDOR])

    async def get_vendor(self, vendor_id: str) -> Any:
        return await self.get(self.key_builder.vendor(vendor_id))

    async def get_or_set(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
    ) -> T:
        """
        Read-through helper.

        On a miss the loader runs and its result is written back. Concurrent
        misses for the same key each run the loader.
        """
        cached = await self.get(key)
        if cached is not CACHE_MISS:
            return cached  # type: ignore[no-any-return]

        value = await loader()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    # Monitoring

    def key_stats(self, key: str) -> Dict[str, int]:
        return dict(self._key_stats.get(key, self._empty_counters()))

    @BaseService.measure_operation("get_cache_stats")
    async def get_stats(self) -> Dict[str, Any]:
        """Aggregate counters across keys plus best-effort store introspection."""
        hits = self._totals["hits"]
        misses = self._totals["misses"]
        sets = self._totals["sets"]
        total_requests = hits + misses

        stats: Dict[str, Any] = {
            "backend": self.backend,
            "hits": hits,
            "misses": misses,
            "sets": sets,
            "errors": self._errors,
            "total_requests": total_requests,
            "hit_rate": (hits / total_requests) if total_requests else 0.0,
            "tracked_keys": len(self._key_stats),
            "circuit_breaker": {
                "state": self.circuit_breaker.state.value,
                "failure_count": self.circuit_breaker.failure_count,
                "threshold": self.circuit_breaker.failure_threshold,
            },
        }
        stats.update(await self._store_info())
        return stats

    async def _store_info(self) -> Dict[str, Any]:
        if self.redis is None:
            now = self._clock()
            live = [k for k, exp in self._memory_expiry.items() if exp > now]
            return {
                "memory_usage": sum(len(self._memory_cache[k]) for k in live),
                "memory_usage_human": None,
                "key_count": len(live),
            }

        if self.circuit_breaker.is_open:
            return {"memory_usage": 0, "memory_usage_human": None, "key_count": 0}

        try:
            info = await self.redis.info("memory")
            key_count = await self.redis.dbsize()
        except Exception as e:
            logger.error(f"Cache stats introspection failed: {e}")
            return {"memory_usage": 0, "memory_usage_human": None, "key_count": 0}

        return {
            "memory_usage": int(info.get("used_memory", 0) or 0),
            "memory_usage_human": info.get("used_memory_human"),
            "key_count": int(key_count or 0),
        }

    async def ping(self) -> bool:
        """True when the backing store answers; the memory store always does."""
        if self.redis is None:
            return True
        if self.circuit_breaker.is_open:
            return False
        redis_client = self.redis
        try:
            return bool(await self.circuit_breaker.call(lambda: redis_client.ping()))
        except Exception as e:
            logger.error(f"Cache ping failed: {e}")
            return False

    def reset_stats(self) -> None:
        """Reset hit/miss/set counters."""
        self._key_stats.clear()
        self._totals = self._empty_counters()
        self._errors = 0


def get_cache_service(request: Request) -> CacheService:
    """
    FastAPI dependency returning the process-wide cache.

    The instance is created in the application lifespan and lives on
    ``app.state``.
    """
    return request.app.state.cache_service  # type: ignore[no-any-return]
