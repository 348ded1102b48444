from ludus.monitoring.prometheus_metrics import REGISTRY, prometheus_metrics


def _sample(name: str, labels: dict) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestPrometheusMetrics:
    def test_http_request_is_counted(self) -> None:
        labels = {"method": "GET", "endpoint": "/api/v1/things/{id}", "status_code": "200"}
        before = _sample("ludus_http_requests_total", labels)

        prometheus_metrics.record_http_request("GET", "/api/v1/things/{id}", 0.05, 200)

        assert _sample("ludus_http_requests_total", labels) == before + 1

    def test_cache_invalidation_counts_keys(self) -> None:
        labels = {"reason": "metrics_test"}
        before = _sample("ludus_cache_invalidated_keys_total", labels)

        prometheus_metrics.record_cache_invalidation("metrics_test", 3)
        prometheus_metrics.record_cache_invalidation("metrics_test", 0)

        assert _sample("ludus_cache_invalidated_keys_total", labels) == before + 3

    def test_exposition_is_refreshed_after_writes(self) -> None:
        first = prometheus_metrics.get_metrics()
        assert prometheus_metrics.get_metrics() is first

        prometheus_metrics.record_booking_transition("pending", "confirmed")
        refreshed = prometheus_metrics.get_metrics()

        assert b"ludus_booking_transitions_total" in refreshed
        assert refreshed is not first
        assert prometheus_metrics.get_content_type().startswith("text/plain")
