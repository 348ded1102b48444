import asyncio
from datetime import date
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ludus.core.config import settings
from ludus.core.enums import EventCategory, EventSeverity
from ludus.events.tracked_event import TrackedEvent
from ludus.services.analytics_service import (
    AnalyticsService,
    InMemoryEventSink,
    MixpanelEventSink,
    RedisEventSink,
    anonymize_ip,
    build_sinks,
)


def _service(sink: InMemoryEventSink, **overrides) -> AnalyticsService:
    return AnalyticsService([sink], config=settings.model_copy(update=overrides))


class TestAnonymizeIp:
    def test_ipv4_keeps_network(self) -> None:
        assert anonymize_ip("192.168.14.201") == "192.168.14.0"

    def test_ipv6_keeps_48_bits(self) -> None:
        assert anonymize_ip("2001:db8:abcd:12::1") == "2001:db8:abcd::"

    def test_invalid_is_dropped(self) -> None:
        assert anonymize_ip("not-an-ip") is None
        assert anonymize_ip(None) is None

    def test_client_ip_respects_setting(self, event_sink) -> None:
        assert _service(event_sink, anonymize_ips=True).client_ip("10.1.2.3") == "10.1.2.0"
        assert _service(event_sink, anonymize_ips=False).client_ip("10.1.2.3") == "10.1.2.3"


class TestTracking:
    @pytest.mark.asyncio
    async def test_user_action(self, analytics, event_sink) -> None:
        event = await analytics.track_user_action("clicked", "u1", {"button": "book"})
        assert event is not None
        assert event_sink.events == [event]
        assert event.category == EventCategory.USER_EVENTS
        assert event.properties == {"button": "book"}

    @pytest.mark.asyncio
    async def test_missing_identity_is_anonymous(self, analytics) -> None:
        event = await analytics.track_user_action("clicked", None)
        assert event.identity == "anonymous"

    @pytest.mark.asyncio
    async def test_page_view(self, analytics) -> None:
        event = await analytics.track_page_view("u1", "session_1_x", "/activities", "https://g.co")
        assert event.event_name == "page_view"
        assert event.category == EventCategory.PAGE_VIEWS
        assert event.properties["referrer"] == "https://g.co"

    @pytest.mark.asyncio
    async def test_error_event(self, analytics) -> None:
        event = await analytics.track_error("boom", "u1", {"path": "/x"}, "high")
        assert event.event_name == "error"
        assert event.category == EventCategory.ERRORS
        assert event.properties["severity"] == EventSeverity.HIGH.value
        assert event.properties["error_id"]

    @pytest.mark.asyncio
    async def test_conversion_event_name(self, analytics) -> None:
        event = await analytics.track_conversion("booking", 2, "payment_completed", "u1", 300.0)
        assert event.event_name == "funnel_step_2_payment_completed"
        assert event.category == EventCategory.CONVERSIONS
        assert event.properties["value"] == 300.0

    @pytest.mark.asyncio
    async def test_revenue_event(self, analytics) -> None:
        event = await analytics.track_revenue("u1", "300.00", "SAR", "a1", "v1", "mada")
        assert event.event_name == "revenue_generated"
        assert event.category == EventCategory.REVENUE
        assert event.properties["transaction_id"].startswith("txn_")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "flag,call",
        [
            ("analytics_user_tracking", lambda a: a.track_user_action("x", "u1")),
            ("analytics_page_view_tracking", lambda a: a.track_page_view("u1", "s", "/")),
            ("analytics_error_tracking", lambda a: a.track_error("boom")),
            ("analytics_conversion_tracking", lambda a: a.track_conversion("f", 1, "s", "u1")),
            ("analytics_revenue_tracking", lambda a: a.track_revenue("u1", 1, "SAR", "a", "v")),
            ("analytics_user_tracking", lambda a: a.track_click("u1", "cta", "/")),
            ("analytics_user_tracking", lambda a: a.track_scroll("u1", "/", 40)),
            ("analytics_user_tracking", lambda a: a.track_retention("u1", "2026-05", 7, True)),
            (
                "analytics_revenue_tracking",
                lambda a: a.track_vendor_performance("v1", date(2026, 5, 1), 3, "450.00", 0.5, 2),
            ),
            ("analytics_performance_tracking", lambda a: a.track_system_health({"uptime": 1})),
        ],
    )
    async def test_feature_flags_disable_event_kinds(self, event_sink, flag, call) -> None:
        service = _service(event_sink, **{flag: False})
        assert await call(service) is None
        assert event_sink.events == []

    @pytest.mark.asyncio
    async def test_request_events_ignore_per_kind_flags(self, event_sink) -> None:
        service = _service(event_sink, analytics_user_tracking=False)

        event = await service.track_request_event("api_request", "u1", {"path": "/x"})

        assert event is not None
        assert event.category == EventCategory.USER_EVENTS
        assert event_sink.named("api_request") == [event]

        off = _service(event_sink, analytics_enabled=False)
        assert await off.track_request_event("api_request", "u1", {}) is None

    @pytest.mark.asyncio
    async def test_master_switch(self, event_sink) -> None:
        service = _service(event_sink, analytics_enabled=False)
        assert not service.enabled
        assert await service.track_user_action("x", "u1") is None
        assert not service.should_track_request(False)

    def test_do_not_track(self, event_sink) -> None:
        assert not _service(event_sink, respect_do_not_track=True).should_track_request(True)
        assert _service(event_sink, respect_do_not_track=False).should_track_request(True)
        assert _service(event_sink).should_track_request(False)


class TestSinkFailures:
    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_others(self, event_sink, caplog) -> None:
        broken = MagicMock()
        broken.name = "broken"
        broken.record = AsyncMock(side_effect=RuntimeError("sink down"))
        service = AnalyticsService([broken, event_sink], config=settings)

        with caplog.at_level(logging.ERROR):
            event = await service.track_user_action("x", "u1")

        assert event_sink.events == [event]
        assert "Analytics sink broken dropped event x" in caplog.text


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_is_fire_and_forget(self, analytics, event_sink) -> None:
        release = asyncio.Event()

        async def slow_record(event: TrackedEvent) -> None:
            await release.wait()
            event_sink.events.append(event)

        analytics.sinks = [MagicMock(name="slow", record=slow_record)]
        task = analytics.dispatch(analytics.track_user_action("x", "u1"))

        assert task is not None
        assert analytics.pending_tasks == 1
        assert event_sink.events == []

        release.set()
        await analytics.drain()
        assert analytics.pending_tasks == 0
        assert len(event_sink.events) == 1

    @pytest.mark.asyncio
    async def test_failed_task_is_logged(self, analytics, caplog) -> None:
        async def boom() -> None:
            raise RuntimeError("kaboom")

        with caplog.at_level(logging.ERROR):
            analytics.dispatch(boom())
            await analytics.drain()

        assert "Analytics background task failed: kaboom" in caplog.text

    def test_dispatch_without_loop_drops_event(self, analytics, caplog) -> None:
        with caplog.at_level(logging.ERROR):
            assert analytics.dispatch(analytics.track_user_action("x", "u1")) is None
        assert "event dropped" in caplog.text

    @pytest.mark.asyncio
    async def test_fire_shorthand(self, analytics, event_sink) -> None:
        analytics.fire(analytics.track_error, "boom", "u1")
        await analytics.drain()
        assert [e.event_name for e in event_sink.events] == ["error"]

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels(self, analytics) -> None:
        task = analytics.dispatch(asyncio.sleep(10))
        await analytics.drain(timeout=0.01)
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        assert analytics.pending_tasks == 0


class TestRedisEventSink:
    @pytest.mark.asyncio
    async def test_appends_with_category_retention(self) -> None:
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True])
        pipeline_cm = MagicMock()
        pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
        pipeline_cm.__aexit__ = AsyncMock(return_value=False)
        redis = MagicMock()
        redis.pipeline.return_value = pipeline_cm

        sink = RedisEventSink(redis, retention_days=lambda category: 7)
        event = TrackedEvent(event_name="error", identity="u1", category=EventCategory.ERRORS)
        await sink.record(event)

        pipe.lpush.assert_called_once_with("events:errors", event.to_json())
        pipe.expire.assert_called_once_with("events:errors", 7 * 86400)
        pipe.execute.assert_awaited_once()


class TestMixpanelEventSink:
    @pytest.mark.asyncio
    async def test_posts_event_with_token(self) -> None:
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, text="1")

        sink = MixpanelEventSink(
            token="tok", api_url="https://mp.test", transport=httpx.MockTransport(handler)
        )
        await sink.record(TrackedEvent(event_name="page_view", identity="u1", properties={"p": 1}))
        await sink.aclose()

        assert captured["url"] == "https://mp.test/track"
        [entry] = captured["body"]
        assert entry["event"] == "page_view"
        assert entry["properties"]["token"] == "tok"
        assert entry["properties"]["distinct_id"] == "u1"
        assert entry["properties"]["p"] == 1
        assert entry["properties"]["$insert_id"]

    @pytest.mark.asyncio
    async def test_rejected_event_raises(self) -> None:
        sink = MixpanelEventSink(
            token="tok",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="0")),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await sink.record(TrackedEvent(event_name="x", identity="u1"))
        await sink.aclose()

    def test_requires_token(self) -> None:
        with pytest.raises(ValueError):
            MixpanelEventSink(token="")


class TestBuildSinks:
    def test_memory_sink_without_redis(self) -> None:
        sinks = build_sinks(settings.model_copy(update={"mixpanel_enabled": False}), None)
        assert [type(s) for s in sinks] == [InMemoryEventSink]

    def test_redis_and_mixpanel(self) -> None:
        from pydantic import SecretStr

        config = settings.model_copy(
            update={"mixpanel_token": SecretStr("tok"), "mixpanel_enabled": True}
        )
        sinks = build_sinks(config, MagicMock())
        assert [type(s) for s in sinks] == [RedisEventSink, MixpanelEventSink]


class TestInteractionTrackers:
    @pytest.mark.asyncio
    async def test_categories(self, analytics, event_sink) -> None:
        await analytics.track_click("u1", "book-now", "/activities/a1")
        await analytics.track_form_interaction("u1", "checkout", "submit", "/checkout")
        await analytics.track_scroll("u1", "/activities/a1", 140)

        categories = [event.category for event in event_sink.events]
        assert categories == [EventCategory.CLICKS, EventCategory.FORMS, EventCategory.SCROLLS]
        assert event_sink.events[1].event_name == "form_submit"
        assert event_sink.events[2].properties["depth_percent"] == 100.0

    @pytest.mark.asyncio
    async def test_retention(self, analytics) -> None:
        event = await analytics.track_retention("u1", "2026-04", 30, True, activity_count=3)

        assert event.category == EventCategory.RETENTION
        assert event.properties == {
            "cohort": "2026-04",
            "retention_day": 30,
            "is_retained": True,
            "activity_count": 3,
        }

    @pytest.mark.asyncio
    async def test_vendor_performance(self, analytics) -> None:
        event = await analytics.track_vendor_performance(
            "v1", date(2026, 5, 1), 4, "600.00", 0.75, 3
        )

        assert event.identity == "v1"
        assert event.category == EventCategory.VENDOR_ANALYTICS
        assert event.properties["date"] == "2026-05-01"
        assert event.properties["total_revenue"] == "600.00"
        assert event.properties["average_rating"] is None

    @pytest.mark.asyncio
    async def test_system_health(self, analytics) -> None:
        event = await analytics.track_system_health({"uptime_seconds": 12.5, "database": True})

        assert event.identity == "system"
        assert event.category == EventCategory.SYSTEM_HEALTH


class TestReadSide:
    @pytest.mark.asyncio
    async def test_user_interaction_summary_is_per_user(self, analytics) -> None:
        await analytics.track_click("u1", "first", "/")
        await analytics.track_click("u2", "other", "/")
        await analytics.track_click("u1", "second", "/")
        await analytics.track_page_view("u1", "s1", "/activities")

        summary = await analytics.get_user_interaction_summary("u1")

        assert [c["properties"]["element_id"] for c in summary["recent_clicks"]] == [
            "second",
            "first",
        ]
        assert len(summary["recent_page_views"]) == 1
        assert summary["recent_forms"] == []
        assert summary["recent_scrolls"] == []

    @pytest.mark.asyncio
    async def test_page_performance_metrics(self, analytics) -> None:
        await analytics.track_page_view("u1", "s1", "/activities")
        await analytics.track_page_view("u2", "s2", "/activities")
        await analytics.track_page_view("u2", "s2", "/about")
        await analytics.track_scroll("u1", "/activities", 10)
        await analytics.track_scroll("u2", "/activities", 80)
        await analytics.track_scroll("u2", "/activities", 100)

        metrics = await analytics.get_page_performance_metrics("/activities")

        assert metrics["total_views"] == 2
        assert metrics["last_viewed"] is not None
        assert metrics["scroll_depth_distribution"] == {
            "0-25": 1,
            "25-50": 0,
            "50-75": 0,
            "75-100": 2,
        }

    @pytest.mark.asyncio
    async def test_insights(self, analytics) -> None:
        await analytics.track_user_action("search", "u1")
        await analytics.track_user_action("search", "u2")
        await analytics.track_user_action("search", None)
        await analytics.track_revenue("u1", "150.00", "SAR", "a1", "v1")
        await analytics.track_system_health({"uptime_seconds": 1})
        await analytics.track_system_health({"uptime_seconds": 2})

        insights = await analytics.generate_insights()

        assert insights["active_users"] == 2
        assert insights["sampled_events"] == 3
        assert [r["properties"]["amount"] for r in insights["recent_revenue"]] == ["150.00"]
        assert insights["system_health"] == {"uptime_seconds": 2}

    @pytest.mark.asyncio
    async def test_without_readable_sink(self, event_sink) -> None:
        service = AnalyticsService([MagicMock(spec=["name", "record"])], config=settings)

        assert await service.recent_events(EventCategory.USER_EVENTS) == []
        assert (await service.generate_insights())["system_health"] is None

    @pytest.mark.asyncio
    async def test_redis_recent_skips_unreadable_entries(self) -> None:
        stored = TrackedEvent(event_name="click", identity="u1", category=EventCategory.CLICKS)
        redis = MagicMock()
        redis.lrange = AsyncMock(return_value=[stored.to_json().encode("utf-8"), b"not json"])

        events = await RedisEventSink(redis).recent(EventCategory.CLICKS, 20)

        redis.lrange.assert_awaited_once_with("events:clicks", 0, 19)
        assert [event.event_name for event in events] == ["click"]
        assert events[0].timestamp == stored.timestamp
