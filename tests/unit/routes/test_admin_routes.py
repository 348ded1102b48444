import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

ADMIN_HEADERS = {"X-User-ID": "admin-1", "X-User-Role": "admin"}


class TestCacheStats:
    def test_requires_admin(self, client) -> None:
        response = client.get("/api/v1/admin/cache/stats", headers={"X-User-ID": "user-1"})
        assert response.status_code == 403
        assert response.json()["code"] == "ADMIN_REQUIRED"

    def test_empty_cache_has_zero_hit_rate(self, client) -> None:
        response = client.get("/api/v1/admin/cache/stats", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["hit_rate"] == 0.0
        assert body["backend"] == "memory"
        assert body["circuit_breaker"]["state"] == "closed"


class TestCacheInvalidate:
    def test_invalidate_by_pattern(self, client, cache) -> None:
        asyncio.run(cache.set("search:abc", [1]))
        asyncio.run(cache.set("search:def", [2]))

        response = client.post(
            "/api/v1/admin/cache/invalidate",
            json={"pattern": "search:*", "reason": "reindex"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": 2, "reason": "reindex"}

    def test_invalidate_by_activity(self, client, cache) -> None:
        asyncio.run(cache.set_activity("a1", {"id": "a1"}))
        asyncio.run(cache.set_user_recommendations("u1", ["a1"]))

        response = client.post(
            "/api/v1/admin/cache/invalidate", json={"activity_id": "a1"}, headers=ADMIN_HEADERS
        )

        assert response.json()["deleted"] == 2

    def test_no_match_is_not_an_error(self, client) -> None:
        response = client.post(
            "/api/v1/admin/cache/invalidate", json={"vendor_id": "v9"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["deleted"] == 0

    def test_exactly_one_selector(self, client) -> None:
        response = client.post(
            "/api/v1/admin/cache/invalidate",
            json={"pattern": "search:*", "activity_id": "a1"},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_CACHE_SELECTOR"


def _book(client, activity) -> None:
    response = client.post(
        "/api/v1/bookings",
        json={
            "activity_id": activity.id,
            "booking_date": (datetime.now(timezone.utc) + timedelta(days=5)).isoformat(),
            "participant_count": 1,
        },
        headers={"X-User-ID": "user-1"},
    )
    assert response.status_code == 201


class TestAnalyticsInsights:
    def test_insights_count_active_users(self, client, analytics) -> None:
        asyncio.run(analytics.track_user_action("booking_created", "user-1"))
        asyncio.run(analytics.track_user_action("search", "user-2"))
        asyncio.run(analytics.track_user_action("search", "anonymous"))

        response = client.get("/api/v1/admin/analytics/insights", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["active_users"] >= 2
        assert body["recent_revenue"] == []
        assert body["system_health"] is None

    def test_requires_admin(self, client) -> None:
        response = client.get(
            "/api/v1/admin/analytics/insights", headers={"X-User-ID": "user-1"}
        )
        assert response.status_code == 403


class TestVendorPerformance:
    def test_snapshot_for_today(self, client, make_activity) -> None:
        _book(client, make_activity())

        response = client.post("/api/v1/admin/vendors/vendor-1/performance", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["vendor_id"] == "vendor-1"
        assert body["date"] == datetime.now(timezone.utc).date().isoformat()
        assert body["total_bookings"] == 1
        assert Decimal(body["total_revenue"]) == Decimal("0")
        assert body["customer_count"] == 1
        assert body["average_rating"] is None

    def test_snapshot_for_a_given_day(self, client, make_activity) -> None:
        _book(client, make_activity())

        response = client.post(
            "/api/v1/admin/vendors/vendor-1/performance",
            params={"day": "2020-01-01"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["date"] == "2020-01-01"
        assert response.json()["total_bookings"] == 0


class TestServiceMetrics:
    def test_reports_measured_operations(self, client, make_activity) -> None:
        _book(client, make_activity())

        response = client.get("/api/v1/admin/services/metrics", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        create = response.json()["BookingService"]["create_booking"]
        assert create["count"] >= 1
        assert 0.0 <= create["success_rate"] <= 1.0

    def test_requires_admin(self, client) -> None:
        response = client.get("/api/v1/admin/services/metrics", headers={"X-User-ID": "user-1"})
        assert response.status_code == 403
