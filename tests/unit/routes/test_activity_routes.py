from ludus.models.activity import ActivityStatus

VENDOR_HEADERS = {"X-User-ID": "vendor-1", "X-User-Role": "vendor"}
ADMIN_HEADERS = {"X-User-ID": "admin-1", "X-User-Role": "admin"}


class TestActivityRoutes:
    def test_get_activity(self, client, make_activity) -> None:
        activity = make_activity()

        response = client.get(f"/api/v1/activities/{activity.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == activity.id
        assert body["moderation_status"] == "approved"
        assert response.headers["x-session-id"].startswith("session_")

    def test_get_activity_is_cached(self, client, make_activity, cache) -> None:
        activity = make_activity()
        client.get(f"/api/v1/activities/{activity.id}")
        client.get(f"/api/v1/activities/{activity.id}")
        assert cache.key_stats(f"activity:{activity.id}")["hits"] == 1

    def test_missing_activity_is_problem_json(self, client) -> None:
        response = client.get("/api/v1/activities/nope")

        assert response.status_code == 404
        assert response.headers["content-type"].startswith("application/problem+json")
        body = response.json()
        assert body["code"] == "ACTIVITY_NOT_FOUND"
        assert body["instance"] == "/api/v1/activities/nope"
        assert body["request_id"]

    def test_vendor_updates_own_activity(self, client, make_activity) -> None:
        activity = make_activity()
        client.get(f"/api/v1/activities/{activity.id}")

        response = client.patch(
            f"/api/v1/activities/{activity.id}",
            json={"title": "Sunset kayaking", "capacity": 12},
            headers=VENDOR_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["title"] == "Sunset kayaking"
        assert client.get(f"/api/v1/activities/{activity.id}").json()["capacity"] == 12

    def test_update_requires_identity(self, client, make_activity) -> None:
        activity = make_activity()
        response = client.patch(f"/api/v1/activities/{activity.id}", json={"title": "x"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    def test_update_rejects_unknown_fields(self, client, make_activity) -> None:
        activity = make_activity()
        response = client.patch(
            f"/api/v1/activities/{activity.id}",
            json={"moderation_status": "approved"},
            headers=VENDOR_HEADERS,
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_other_vendor_is_forbidden(self, client, make_activity) -> None:
        activity = make_activity()
        response = client.patch(
            f"/api/v1/activities/{activity.id}",
            json={"title": "Mine now"},
            headers={"X-User-ID": "vendor-2", "X-User-Role": "vendor"},
        )
        assert response.status_code == 403

    def test_admin_moderation(self, client, make_activity) -> None:
        activity = make_activity(approved=False)

        response = client.post(
            f"/api/v1/activities/{activity.id}/moderation",
            json={"target_status": "rejected", "notes": "Needs photos"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["moderation_status"] == ActivityStatus.REJECTED.value
        assert response.json()["moderation_notes"] == "Needs photos"

    def test_illegal_moderation_edge(self, client, make_activity) -> None:
        activity = make_activity(approved=True)

        response = client.post(
            f"/api/v1/activities/{activity.id}/moderation",
            json={"target_status": "pending"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATUS_TRANSITION"
