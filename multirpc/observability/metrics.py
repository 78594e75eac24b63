"""
multirpc - Prometheus Metrics

Metrics exposed:
- multirpc_requests_total: Provider calls by provider, method, status
- multirpc_request_duration_seconds: Provider call latency
- multirpc_retries_total: Same-provider retries
- multirpc_failovers_total: Hops from one provider to another
- multirpc_cache_lookups_total: Cache hits and misses
- multirpc_cache_size: Entries currently cached
- multirpc_provider_healthy: 1 if the provider is in rotation
- multirpc_quota_utilization_ratio: Used share of each quota window
- multirpc_circuit_breaker_trips_total: Providers pulled by the error streak
- multirpc_health_check_*: Probe outcomes and latency
- multirpc_api_requests_total: Management API traffic

Usage:
    from multirpc.observability.metrics import get_metrics, metrics_endpoint

    metrics = get_metrics()
    metrics.record_request(provider="alchemy", method="getSlot", status="success", duration_seconds=0.12)

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


class MetricsCollector:
    """
    Metrics collector using the Prometheus client.

    Every instance registers its own metric families on `registry`; use
    a fresh CollectorRegistry per router in tests.
    """

    _instance: Optional["MetricsCollector"] = None

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.info = Info(
            "multirpc",
            "multirpc router information",
            registry=registry,
        )
        self.info.info({
            "version": "1.0.0",
            "service": "multirpc-router",
        })

        # status = success / timeout / rate_limited / upstream_503 / ...
        self.requests_total = Counter(
            "multirpc_requests_total",
            "Total provider calls",
            labelnames=["provider", "method", "status"],
            registry=registry,
        )

        # RPC calls mostly land between 50ms and a few seconds
        self.request_duration = Histogram(
            "multirpc_request_duration_seconds",
            "Provider call duration in seconds",
            labelnames=["provider", "method"],
            buckets=(0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, float("inf")),
            registry=registry,
        )

        self.retries_total = Counter(
            "multirpc_retries_total",
            "Retries against the same provider",
            labelnames=["provider"],
            registry=registry,
        )

        self.failovers_total = Counter(
            "multirpc_failovers_total",
            "Failovers from one provider to another",
            labelnames=["from_provider", "to_provider", "reason"],
            registry=registry,
        )

        self.cache_lookups = Counter(
            "multirpc_cache_lookups_total",
            "Response cache lookups",
            labelnames=["result"],  # hit / miss
            registry=registry,
        )

        self.cache_size = Gauge(
            "multirpc_cache_size",
            "Entries in the response cache",
            registry=registry,
        )

        self.provider_healthy = Gauge(
            "multirpc_provider_healthy",
            "Provider health (1=in rotation, 0=excluded)",
            labelnames=["provider"],
            registry=registry,
        )

        self.quota_utilization = Gauge(
            "multirpc_quota_utilization_ratio",
            "Used share of the quota window",
            labelnames=["provider", "window"],
            registry=registry,
        )

        self.circuit_breaker_trips = Counter(
            "multirpc_circuit_breaker_trips_total",
            "Providers marked unhealthy by consecutive failures",
            labelnames=["provider"],
            registry=registry,
        )

        self.health_check_duration = Histogram(
            "multirpc_health_check_duration_seconds",
            "Health probe duration",
            labelnames=["provider"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=registry,
        )

        self.health_check_success = Counter(
            "multirpc_health_check_success_total",
            "Health probe successes",
            labelnames=["provider"],
            registry=registry,
        )

        self.health_check_failure = Counter(
            "multirpc_health_check_failure_total",
            "Health probe failures",
            labelnames=["provider"],
            registry=registry,
        )

        # Management API
        self.api_requests_total = Counter(
            "multirpc_api_requests_total",
            "Management API requests",
            labelnames=["endpoint", "status_code"],
            registry=registry,
        )

        self.api_request_duration = Histogram(
            "multirpc_api_request_duration_seconds",
            "Management API request duration",
            labelnames=["endpoint"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
            registry=registry,
        )

    @classmethod
    def get_instance(cls) -> "MetricsCollector":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def record_request(
        self,
        provider: str,
        method: str,
        status: str,
        duration_seconds: float,
    ):
        """Record one completed provider call."""
        self.requests_total.labels(provider=provider, method=method, status=status).inc()
        self.request_duration.labels(provider=provider, method=method).observe(duration_seconds)

    def record_retry(self, provider: str):
        self.retries_total.labels(provider=provider).inc()

    def record_failover(self, from_provider: str, to_provider: str, reason: str):
        self.failovers_total.labels(
            from_provider=from_provider,
            to_provider=to_provider,
            reason=reason,
        ).inc()

    def record_cache_lookup(self, hit: bool):
        self.cache_lookups.labels(result="hit" if hit else "miss").inc()

    def set_cache_size(self, size: int):
        self.cache_size.set(size)

    def set_provider_health(self, provider: str, healthy: bool):
        self.provider_healthy.labels(provider=provider).set(1 if healthy else 0)

    def set_quota_utilization(self, provider: str, window: str, ratio: float):
        self.quota_utilization.labels(provider=provider, window=window).set(ratio)

    def record_circuit_trip(self, provider: str):
        self.circuit_breaker_trips.labels(provider=provider).inc()
        self.set_provider_health(provider, False)

    def record_health_check(
        self,
        provider: str,
        success: bool,
        duration_seconds: float,
    ):
        """Record health probe result."""
        self.health_check_duration.labels(provider=provider).observe(duration_seconds)

        if success:
            self.health_check_success.labels(provider=provider).inc()
        else:
            self.health_check_failure.labels(provider=provider).inc()

    def record_api_request(self, endpoint: str, status_code: int, duration_seconds: float):
        self.api_requests_total.labels(endpoint=endpoint, status_code=str(status_code)).inc()
        self.api_request_duration.labels(endpoint=endpoint).observe(duration_seconds)


_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Safe to call multiple times with the same registry.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    _metrics_instance = MetricsCollector(registry)
    MetricsCollector._instance = _metrics_instance
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the process-wide collector (default registry)."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector.get_instance()
    return _metrics_instance


def metrics_endpoint(registry: CollectorRegistry = REGISTRY) -> Response:
    """Prometheus exposition of `registry`."""
    content = generate_latest(registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
