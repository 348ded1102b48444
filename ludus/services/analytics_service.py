# ludus/services/analytics_service.py
"""
Server-side analytics for the LUDUS backend.

Events are appended to one or more sinks: Redis lists with per-category
retention, Mixpanel, or an in-memory list for local runs and tests. Tracking
is fire-and-forget from the request path: ``dispatch`` schedules the write
as a background task and returns immediately. A failing sink drops the
event after logging it; it is never retried inline.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
import ipaddress
import json
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from fastapi import Request
import httpx
from redis.asyncio import Redis as AsyncRedis
import ulid

from ..core.config import Settings, settings
from ..core.constants import ANONYMOUS_IDENTITY, SYSTEM_IDENTITY
from ..core.enums import EventCategory, EventSeverity
from ..events.tracked_event import TrackedEvent, json_default
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

# Newest events read when a query filters by identity or page
DEFAULT_SCAN_SIZE = 1000

SCROLL_DEPTH_BUCKETS = ("0-25", "25-50", "50-75", "75-100")

_INTERACTION_CATEGORIES: Tuple[Tuple[str, EventCategory], ...] = (
    ("recent_clicks", EventCategory.CLICKS),
    ("recent_page_views", EventCategory.PAGE_VIEWS),
    ("recent_forms", EventCategory.FORMS),
    ("recent_scrolls", EventCategory.SCROLLS),
)


def anonymize_ip(ip_address: Optional[str]) -> Optional[str]:
    """
    Zero the host part of an address.

    IPv4 keeps the first three octets, IPv6 the first 48 bits. Values that do
    not parse as an address are dropped.
    """
    if not ip_address:
        return None
    try:
        parsed = ipaddress.ip_address(ip_address)
    except ValueError:
        return None
    prefix = 24 if parsed.version == 4 else 48
    network = ipaddress.ip_network(f"{parsed}/{prefix}", strict=False)
    return str(network.network_address)


def scroll_depth_bucket(depth_percent: Any) -> str:
    try:
        depth = float(depth_percent)
    except (TypeError, ValueError):
        depth = 0.0
    index = min(max(int(depth // 25), 0), len(SCROLL_DEPTH_BUCKETS) - 1)
    return SCROLL_DEPTH_BUCKETS[index]


class EventSink(Protocol):
    """Anything that can durably accept a tracked event."""

    name: str

    async def record(self, event: TrackedEvent) -> None:
        ...


class EventReader(Protocol):
    """A sink that can also hand back what it stored, newest first."""

    async def recent(self, category: EventCategory, limit: int) -> List[TrackedEvent]:
        ...


class InMemoryEventSink:
    """List-backed sink used when Redis is not configured, and in tests."""

    name = "memory"

    def __init__(self, max_events: int = 10_000) -> None:
        self.events: List[TrackedEvent] = []
        self.max_events = max_events

    async def record(self, event: TrackedEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    async def recent(self, category: EventCategory, limit: int = 50) -> List[TrackedEvent]:
        matched = [event for event in reversed(self.events) if event.category == category]
        return matched[:limit]

    def named(self, event_name: str) -> List[TrackedEvent]:
        return [event for event in self.events if event.event_name == event_name]

    def clear(self) -> None:
        self.events.clear()


class RedisEventSink:
    """
    Appends events to ``events:<category>`` lists.

    Every write refreshes the list expiry to the category retention, so a
    list disappears once nothing has been appended for that long.
    """

    name = "redis"

    def __init__(
        self,
        redis_client: AsyncRedis,
        retention_days: Callable[[str], int] = settings.retention_days,
        key_prefix: str = "events",
    ) -> None:
        self.redis = redis_client
        self.retention_days = retention_days
        self.key_prefix = key_prefix

    def key_for(self, category: EventCategory) -> str:
        return f"{self.key_prefix}:{category.value}"

    async def record(self, event: TrackedEvent) -> None:
        key = self.key_for(event.category)
        ttl_seconds = max(1, self.retention_days(event.category.value)) * 86400
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.lpush(key, event.to_json())
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def recent(self, category: EventCategory, limit: int = 50) -> List[TrackedEvent]:
        key = self.key_for(category)
        events: List[TrackedEvent] = []
        for raw in await self.redis.lrange(key, 0, max(0, limit - 1)):
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            try:
                events.append(TrackedEvent.from_json(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable event in %s: %s", key, exc)
        return events


class MixpanelEventSink:
    """Posts events to the Mixpanel ingestion API."""

    name = "mixpanel"

    def __init__(
        self,
        *,
        token: str,
        api_url: str = "https://api.mixpanel.com",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not token:
            raise ValueError("Mixpanel token must be provided")
        self._token = token
        self._url = f"{api_url.rstrip('/')}/track"
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "text/plain"},
            )
        return self._client

    def build_payload(self, event: TrackedEvent) -> List[Dict[str, Any]]:
        properties: Dict[str, Any] = {
            **json.loads(json.dumps(dict(event.properties), default=json_default)),
            "token": self._token,
            "distinct_id": event.identity,
            "time": int(event.timestamp.timestamp()),
            "$insert_id": str(ulid.ULID()),
            "category": event.category.value,
        }
        return [{"event": event.event_name, "properties": properties}]

    async def record(self, event: TrackedEvent) -> None:
        response = await self._http().post(self._url, json=self.build_payload(event))
        response.raise_for_status()
        if response.text.strip() == "0":
            raise httpx.HTTPStatusError(
                "Mixpanel rejected event", request=response.request, response=response
            )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class AnalyticsService:
    """
    Process-wide event tracker.

    ``track_*`` coroutines build a ``TrackedEvent`` and hand it to every sink.
    They return the event, or ``None`` when tracking for that kind of event is
    switched off.
    """

    def __init__(self, sinks: Sequence[EventSink], config: Settings = settings) -> None:
        self.sinks: List[EventSink] = list(sinks)
        self.config = config
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def enabled(self) -> bool:
        return self.config.analytics_enabled and bool(self.sinks)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def should_track_request(self, do_not_track: bool) -> bool:
        if not self.enabled:
            return False
        return not (do_not_track and self.config.respect_do_not_track)

    def client_ip(self, ip_address: Optional[str]) -> Optional[str]:
        if self.config.anonymize_ips:
            return anonymize_ip(ip_address)
        return ip_address

    # Sink fan-out

    async def record(self, event: TrackedEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.record(event)
            except Exception as exc:
                logger.error(
                    "Analytics sink %s dropped event %s: %s",
                    getattr(sink, "name", type(sink).__name__),
                    event.event_name,
                    exc,
                )
                prometheus_metrics.inc_analytics_failure(getattr(sink, "name", "unknown"))
        prometheus_metrics.record_analytics_event(event.category.value)

    async def _emit(
        self,
        event_name: str,
        identity: Optional[str],
        properties: Mapping[str, Any],
        category: EventCategory,
    ) -> TrackedEvent:
        event = TrackedEvent(
            event_name=event_name,
            identity=identity or ANONYMOUS_IDENTITY,
            properties=dict(properties),
            timestamp=datetime.now(timezone.utc),
            category=category,
        )
        await self.record(event)
        logger.debug("Tracked %s for %s", event_name, event.identity)
        return event

    # Event kinds

    async def track_user_action(
        self,
        action: str,
        identity: Optional[str],
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_user_tracking:
            return None
        return await self._emit(action, identity, properties or {}, EventCategory.USER_EVENTS)

    async def track_page_view(
        self,
        identity: Optional[str],
        session_id: str,
        page: str,
        referrer: Optional[str] = None,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_page_view_tracking:
            return None
        payload = {
            "page": page,
            "referrer": referrer,
            "session_id": session_id,
            **(properties or {}),
        }
        return await self._emit("page_view", identity, payload, EventCategory.PAGE_VIEWS)

    async def track_error(
        self,
        message: str,
        identity: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        severity: EventSeverity = EventSeverity.MEDIUM,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_error_tracking:
            return None
        severity = EventSeverity(severity)
        payload = {
            "error_id": str(ulid.ULID()),
            "message": message,
            "severity": severity.value,
            **(context or {}),
        }
        if severity in (EventSeverity.HIGH, EventSeverity.CRITICAL):
            logger.error("Tracked %s error: %s", severity.value, message)
        return await self._emit("error", identity, payload, EventCategory.ERRORS)

    async def track_conversion(
        self,
        funnel: str,
        step: int,
        step_name: str,
        identity: Optional[str],
        value: Optional[float] = None,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_conversion_tracking:
            return None
        payload = {
            "funnel": funnel,
            "step": step,
            "step_name": step_name,
            "value": value,
            **(properties or {}),
        }
        return await self._emit(
            f"funnel_step_{step}_{step_name}", identity, payload, EventCategory.CONVERSIONS
        )

    async def track_revenue(
        self,
        identity: Optional[str],
        amount: Any,
        currency: str,
        activity_id: str,
        vendor_id: str,
        payment_method: str = "unknown",
        transaction_id: Optional[str] = None,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_revenue_tracking:
            return None
        payload = {
            "amount": str(amount),
            "currency": currency,
            "activity_id": activity_id,
            "vendor_id": vendor_id,
            "payment_method": payment_method,
            "transaction_id": transaction_id or f"txn_{ulid.ULID()}",
        }
        return await self._emit("revenue_generated", identity, payload, EventCategory.REVENUE)

    async def track_request_event(
        self,
        name: str,
        identity: Optional[str],
        properties: Mapping[str, Any],
    ) -> Optional[TrackedEvent]:
        """
        Request lifecycle events (``api_request``, ``api_response``...).

        Only the master switch turns these off; the per-kind flags govern
        explicit tracking calls.
        """
        if not self.enabled:
            return None
        return await self._emit(name, identity, properties, EventCategory.USER_EVENTS)

    async def track_click(
        self,
        identity: Optional[str],
        element_id: str,
        page: str,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_user_tracking:
            return None
        payload = {"element_id": element_id, "page": page, **(properties or {})}
        return await self._emit("click", identity, payload, EventCategory.CLICKS)

    async def track_form_interaction(
        self,
        identity: Optional[str],
        form_id: str,
        action: str,
        page: str,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_user_tracking:
            return None
        payload = {"form_id": form_id, "action": action, "page": page, **(properties or {})}
        return await self._emit(f"form_{action}", identity, payload, EventCategory.FORMS)

    async def track_scroll(
        self,
        identity: Optional[str],
        page: str,
        depth_percent: float,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_user_tracking:
            return None
        payload = {
            "page": page,
            "depth_percent": max(0.0, min(100.0, float(depth_percent))),
            **(properties or {}),
        }
        return await self._emit("scroll", identity, payload, EventCategory.SCROLLS)

    async def track_retention(
        self,
        identity: str,
        cohort: str,
        retention_day: int,
        is_retained: bool,
        activity_count: int = 0,
    ) -> Optional[TrackedEvent]:
        """One user's standing in a cohort ``retention_day`` days after joining it."""
        if not self.enabled or not self.config.analytics_user_tracking:
            return None
        payload = {
            "cohort": cohort,
            "retention_day": retention_day,
            "is_retained": is_retained,
            "activity_count": activity_count,
        }
        return await self._emit("retention_check", identity, payload, EventCategory.RETENTION)

    async def track_vendor_performance(
        self,
        vendor_id: str,
        day: date,
        total_bookings: int,
        total_revenue: Any,
        conversion_rate: float,
        customer_count: int,
        average_rating: Optional[float] = None,
    ) -> Optional[TrackedEvent]:
        """Daily snapshot of a vendor's bookings and revenue."""
        if not self.enabled or not self.config.analytics_revenue_tracking:
            return None
        payload = {
            "vendor_id": vendor_id,
            "date": day.isoformat(),
            "total_bookings": total_bookings,
            "total_revenue": str(total_revenue),
            "conversion_rate": conversion_rate,
            "customer_count": customer_count,
            "average_rating": average_rating,
        }
        return await self._emit(
            "vendor_performance", vendor_id, payload, EventCategory.VENDOR_ANALYTICS
        )

    async def track_system_health(self, metrics: Mapping[str, Any]) -> Optional[TrackedEvent]:
        if not self.enabled or not self.config.analytics_performance_tracking:
            return None
        return await self._emit(
            "system_health", SYSTEM_IDENTITY, metrics, EventCategory.SYSTEM_HEALTH
        )

    # Read side

    def _reader(self) -> Optional[EventReader]:
        for sink in self.sinks:
            if callable(getattr(sink, "recent", None)):
                return sink  # type: ignore[return-value]
        return None

    async def recent_events(
        self,
        category: EventCategory,
        *,
        limit: int = 50,
        identity: Optional[str] = None,
        scan: int = DEFAULT_SCAN_SIZE,
    ) -> List[TrackedEvent]:
        """
        Newest-first events of one category from the first readable sink.

        With ``identity`` the newest ``scan`` events are read and filtered.
        Read failures are logged and yield an empty list.
        """
        reader = self._reader()
        if reader is None:
            return []
        try:
            events = await reader.recent(category, scan if identity is not None else limit)
        except Exception as exc:
            logger.error("Reading %s events failed: %s", category.value, exc)
            return []
        if identity is not None:
            events = [event for event in events if event.identity == identity]
        return events[:limit]

    async def get_user_interaction_summary(self, identity: str, limit: int = 50) -> Dict[str, Any]:
        """Recent clicks, page views, form interactions and scrolls of one user."""
        summary: Dict[str, Any] = {}
        for key, category in _INTERACTION_CATEGORIES:
            events = await self.recent_events(category, limit=limit, identity=identity)
            summary[key] = [event.to_dict() for event in events]
        return summary

    async def get_page_performance_metrics(
        self, page: str, sample_size: int = DEFAULT_SCAN_SIZE
    ) -> Dict[str, Any]:
        views = [
            event
            for event in await self.recent_events(EventCategory.PAGE_VIEWS, limit=sample_size)
            if event.properties.get("page") == page
        ]
        distribution = {label: 0 for label in SCROLL_DEPTH_BUCKETS}
        for event in await self.recent_events(EventCategory.SCROLLS, limit=sample_size):
            if event.properties.get("page") == page:
                distribution[scroll_depth_bucket(event.properties.get("depth_percent"))] += 1
        return {
            "page": page,
            "total_views": len(views),
            "last_viewed": views[0].timestamp if views else None,
            "scroll_depth_distribution": distribution,
        }

    async def generate_insights(self, sample_size: int = DEFAULT_SCAN_SIZE) -> Dict[str, Any]:
        """Active users in the recent sample, latest revenue and latest health snapshot."""
        user_events = await self.recent_events(EventCategory.USER_EVENTS, limit=sample_size)
        revenue = await self.recent_events(EventCategory.REVENUE, limit=10)
        health = await self.recent_events(EventCategory.SYSTEM_HEALTH, limit=1)
        active_users = {
            event.identity for event in user_events if event.identity != ANONYMOUS_IDENTITY
        }
        return {
            "active_users": len(active_users),
            "sampled_events": len(user_events),
            "recent_revenue": [event.to_dict() for event in revenue],
            "system_health": dict(health[0].properties) if health else None,
            "generated_at": datetime.now(timezone.utc),
        }

    # Background dispatch

    def dispatch(self, coro: Coroutine[Any, Any, Any]) -> Optional["asyncio.Task[Any]"]:
        """
        Schedule ``coro`` without awaiting it.

        The task is referenced until it finishes so it cannot be garbage
        collected mid-flight. Exceptions are logged and dropped.
        """
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.error("Analytics dispatch without a running event loop; event dropped")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def fire(self, method: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
        """``dispatch`` shorthand: ``analytics.fire(analytics.track_error, "boom")``."""
        self.dispatch(method(*args, **kwargs))  # type: ignore[arg-type]

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Analytics background task failed: %s", exc)
            prometheus_metrics.inc_analytics_failure("dispatch")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight tracking tasks (shutdown and tests)."""
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            self._tasks.difference_update(done)
            if not_done:
                logger.warning("Analytics drain timed out with %d tasks pending", len(not_done))
                for task in not_done:
                    task.cancel()
                return

    async def aclose(self) -> None:
        await self.drain(timeout=5.0)
        for sink in self.sinks:
            closer = getattr(sink, "aclose", None)
            if closer is not None:
                await closer()


def build_sinks(config: Settings, redis_client: Optional[AsyncRedis]) -> List[EventSink]:
    """Sinks for the running configuration."""
    sinks: List[EventSink] = []
    if redis_client is not None:
        sinks.append(RedisEventSink(redis_client, retention_days=config.retention_days))
    else:
        sinks.append(InMemoryEventSink())
    if config.mixpanel_active:
        sinks.append(
            MixpanelEventSink(
                token=config.mixpanel_token.get_secret_value(),
                api_url=config.mixpanel_api_url,
                timeout=config.mixpanel_timeout_seconds,
            )
        )
    else:
        logger.info("Mixpanel token not configured; Mixpanel analytics disabled")
    return sinks


def get_analytics_service(request: Request) -> AnalyticsService:
    """FastAPI dependency returning the process-wide analytics service."""
    return request.app.state.analytics_service  # type: ignore[no-any-return]
