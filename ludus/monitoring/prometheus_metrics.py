"""
Prometheus metrics for the LUDUS backend.

HTTP timings are fed by the analytics middleware, service timings by
``BaseService.measure_operation``, cache and sink counters by their
respective services.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry so that test runs never collide with the global default
REGISTRY = CollectorRegistry()

http_request_duration_seconds = Histogram(
    "ludus_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_total = Counter(
    "ludus_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

slow_http_requests_total = Counter(
    "ludus_slow_http_requests_total",
    "HTTP requests slower than the configured threshold",
    ["method", "endpoint"],
    registry=REGISTRY,
)

service_operation_duration_seconds = Histogram(
    "ludus_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "ludus_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "ludus_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

cache_operations_total = Counter(
    "ludus_cache_operations_total",
    "Cache lookups and writes by namespace and outcome",
    ["namespace", "outcome"],  # hit | miss | set | error
    registry=REGISTRY,
)

cache_invalidated_keys_total = Counter(
    "ludus_cache_invalidated_keys_total",
    "Keys removed by pattern invalidation",
    ["reason"],
    registry=REGISTRY,
)

analytics_events_total = Counter(
    "ludus_analytics_events_total",
    "Analytics events handed to the sinks",
    ["category"],
    registry=REGISTRY,
)

analytics_dispatch_failures_total = Counter(
    "ludus_analytics_dispatch_failures_total",
    "Analytics sink writes or background tasks that failed",
    ["sink"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "ludus_booking_transitions_total",
    "Applied booking status transitions",
    ["from_status", "to_status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_http_request(method: str, endpoint: str, duration: float, status_code: int) -> None:
        """Record HTTP request metrics."""
        labels = {"method": method, "endpoint": endpoint, "status_code": str(status_code)}

        http_request_duration_seconds.labels(**labels).observe(duration)
        http_requests_total.labels(**labels).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_slow_request(method: str, endpoint: str) -> None:
        slow_http_requests_total.labels(method=method, endpoint=endpoint).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'transition')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()

        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_cache_operation(namespace: str, outcome: str) -> None:
        cache_operations_total.labels(namespace=namespace, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_cache_invalidation(reason: str, count: int) -> None:
        if count > 0:
            cache_invalidated_keys_total.labels(reason=reason).inc(count)
            PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_analytics_event(category: str) -> None:
        analytics_events_total.labels(category=category).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_analytics_failure(sink: str) -> None:
        analytics_dispatch_failures_total.labels(sink=sink).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_booking_transition(from_status: str, to_status: str) -> None:
        booking_transitions_total.labels(from_status=from_status, to_status=to_status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """
        Generate Prometheus metrics in exposition format.

        Returns:
            Metrics data in Prometheus text format
        """
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts

        if payload is not None and ts is not None and (now - ts) <= PrometheusMetrics._cache_ttl_seconds:
            return payload

        with PrometheusMetrics._cache_lock:
            payload = PrometheusMetrics._cache_payload
            ts = PrometheusMetrics._cache_ts
            if payload is None or ts is None or (now - ts) > PrometheusMetrics._cache_ttl_seconds:
                PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
                PrometheusMetrics._cache_ts = monotonic()
                payload = PrometheusMetrics._cache_payload

        return cast(bytes, payload)

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        """Invalidate cached metrics so next scrape refreshes."""
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
