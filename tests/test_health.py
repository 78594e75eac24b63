"""
multirpc - Health Tracking Tests

Verifies:
- Request counters and bounded latency history
- Circuit breaker on consecutive failures
- Recovery only through probes or operator override
- HealthMonitor probes and quota-skipped probes
"""

import logging

import httpx
import pytest

from multirpc.core.clock import ManualClock
from multirpc.core.errors import ProviderNotFoundError
from multirpc.core.http_client import RpcTransport
from multirpc.core.models import HealthCheckConfig, QuotaPeriod
from multirpc.routing.health import HealthMonitor, HealthRegistry, HealthTracker
from multirpc.routing.quota import QuotaTracker

from conftest import make_provider


@pytest.fixture
def tracker(manual_clock):
    return HealthTracker(make_provider("A"), clock=manual_clock, failure_threshold=3)


# ============================================================
# Counters and latency
# ============================================================

class TestHealthTrackerStats:
    """Runtime statistics."""

    def test_totals_stay_consistent(self, tracker):
        """total == successful + failed after any mix of outcomes."""
        tracker.record_success(100)
        tracker.record_failure("boom", 200)
        tracker.record_success(150)

        snapshot = tracker.get_snapshot()

        assert snapshot.total_requests == 3
        assert snapshot.successful_requests == 2
        assert snapshot.failed_requests == 1
        assert snapshot.total_requests == snapshot.successful_requests + snapshot.failed_requests

    def test_success_rate_defaults_to_100(self, tracker):
        """A provider with no traffic is treated as fully successful."""
        assert tracker.success_rate == 100.0

    def test_success_rate(self, tracker):
        tracker.record_success(10)
        tracker.record_failure("x", 10)
        tracker.record_failure("y", 10)
        tracker.record_success(10)

        assert tracker.success_rate == pytest.approx(50.0)

    def test_latency_history_bounded_to_100(self, tracker):
        """Only the last 100 samples feed the average."""
        for _ in range(100):
            tracker.record_success(1000)
        for _ in range(50):
            tracker.record_success(100)

        stats = tracker.get_snapshot().latency_stats

        assert stats.sample_count == 100
        # 50 x 1000 + 50 x 100
        assert stats.avg_ms == pytest.approx(550.0)
        assert stats.min_ms == 100
        assert stats.max_ms == 1000

    def test_p95_latency(self, tracker):
        for latency in range(1, 101):
            tracker.record_success(latency)

        assert tracker.get_snapshot().latency_stats.p95_ms == 95

    def test_success_resets_error_streak(self, tracker):
        tracker.record_failure("a")
        tracker.record_failure("b")
        tracker.record_success(10)

        assert tracker.consecutive_errors == 0
        assert tracker.is_healthy is True

    def test_last_error_recorded(self, tracker, manual_clock):
        tracker.record_failure("upstream exploded", 30)

        snapshot = tracker.get_snapshot()
        assert snapshot.last_error == "upstream exploded"
        assert snapshot.last_error_time == manual_clock.time()


# ============================================================
# Circuit breaker
# ============================================================

class TestCircuitBreaker:
    """Consecutive failures take a provider out of rotation."""

    def test_three_failures_trip(self, tracker):
        """The third consecutive failure marks the provider unhealthy."""
        assert tracker.record_failure("e1") is False
        assert tracker.record_failure("e2") is False
        assert tracker.is_healthy is True

        assert tracker.record_failure("e3") is True
        assert tracker.is_healthy is False

    def test_trip_reported_once(self, tracker):
        """Further failures while open do not re-trip."""
        for i in range(3):
            tracker.record_failure(f"e{i}")

        assert tracker.record_failure("e4") is False
        assert tracker.consecutive_errors == 4

    def test_success_does_not_close_breaker(self, tracker):
        """A stray success leaves the provider out of rotation."""
        for i in range(3):
            tracker.record_failure(f"e{i}")

        tracker.record_success(50)

        assert tracker.is_healthy is False

    def test_probe_success_recovers(self, tracker):
        for i in range(3):
            tracker.record_failure(f"e{i}")

        assert tracker.mark_probe_success(40) is True
        assert tracker.is_healthy is True
        assert tracker.consecutive_errors == 0

    def test_probe_success_on_healthy_is_not_recovery(self, tracker):
        assert tracker.mark_probe_success(40) is False

    def test_probe_failure_marks_down(self, tracker):
        assert tracker.mark_probe_failure("timeout") is True
        assert tracker.is_healthy is False
        assert tracker.mark_probe_failure("timeout") is False

    def test_probe_does_not_touch_request_counters(self, tracker):
        """Probes update health only, never request totals."""
        tracker.mark_probe_failure("down")
        tracker.mark_probe_success(20)

        snapshot = tracker.get_snapshot()
        assert snapshot.total_requests == 0
        assert snapshot.latency_stats.sample_count == 0

    def test_operator_override(self, tracker):
        tracker.mark_unhealthy("maintenance")
        assert tracker.is_healthy is False
        assert tracker.get_snapshot().last_error == "maintenance"

        tracker.mark_healthy()
        assert tracker.is_healthy is True


class TestHealthRegistry:
    """Registry of trackers."""

    def test_healthy_names(self, manual_clock):
        registry = HealthRegistry(manual_clock)
        registry.register(make_provider("A"))
        registry.register(make_provider("B"))

        registry.get_tracker("A").mark_unhealthy("down")

        assert registry.healthy_names() == ["B"]
        assert registry.is_healthy("B") is True

    def test_unknown_provider(self, manual_clock):
        with pytest.raises(ProviderNotFoundError):
            HealthRegistry(manual_clock).get_tracker("nope")

    def test_custom_threshold(self, manual_clock):
        registry = HealthRegistry(manual_clock, failure_threshold=1)
        tracker = registry.register(make_provider("A"))

        assert tracker.record_failure("e") is True


# ============================================================
# Health monitor
# ============================================================

class TestHealthMonitor:
    """Liveness probes."""

    @pytest.fixture
    def setup(self, upstream, metrics):
        clock = ManualClock()
        quota = QuotaTracker(clock)
        health = HealthRegistry(clock)
        transport = RpcTransport(transport=httpx.MockTransport(upstream.handler))
        monitor = HealthMonitor(health, quota, transport, HealthCheckConfig(), clock, metrics)
        providers = [make_provider("A"), make_provider("B", requests_per_minute=1)]
        for p in providers:
            quota.register(p)
            health.register(p)
        return monitor, health, quota, providers

    @pytest.mark.asyncio
    async def test_probe_uses_get_slot(self, setup, upstream):
        """Each provider receives one getSlot probe."""
        monitor, _, _, providers = setup

        results = await monitor.check_all(providers)

        assert [r.is_healthy for r in results] == [True, True]
        assert upstream.methods_to("A") == ["getSlot"]
        assert upstream.methods_to("B") == ["getSlot"]

    @pytest.mark.asyncio
    async def test_failed_probe_marks_unhealthy(self, setup, upstream):
        monitor, health, _, providers = setup
        upstream.script("A", httpx.Response(503))

        result = await monitor.check_provider(providers[0])

        assert result.is_healthy is False
        assert "503" in result.error
        assert health.is_healthy("A") is False

    @pytest.mark.asyncio
    async def test_probe_recovers_tripped_provider(self, setup):
        monitor, health, _, providers = setup
        tracker = health.get_tracker("A")
        for i in range(3):
            tracker.record_failure(f"e{i}")
        assert health.is_healthy("A") is False

        result = await monitor.check_provider(providers[0])

        assert result.is_healthy is True
        assert health.is_healthy("A") is True

    @pytest.mark.asyncio
    async def test_probe_counts_against_quota(self, setup):
        monitor, _, quota, providers = setup

        await monitor.check_provider(providers[0])

        assert quota.usage("A").count(QuotaPeriod.MINUTE) == 1

    @pytest.mark.asyncio
    async def test_crashed_probe_keeps_other_results(self, setup, upstream, caplog):
        """One probe raising does not discard the rest of the round."""
        monitor, health, _, providers = setup
        stray = make_provider("C")
        health.register(stray)  # unknown to the quota tracker

        with caplog.at_level(logging.ERROR, logger="multirpc.routing.health"):
            results = await monitor.check_all([providers[0], stray, providers[1]])

        assert [r.provider for r in results] == ["A", "B"]
        assert upstream.methods_to("A") == ["getSlot"]
        assert upstream.methods_to("B") == ["getSlot"]
        crashed = [r for r in caplog.records if r.getMessage() == "Health probe crashed"]
        assert crashed[0].provider == "C"
        assert crashed[0].error_type == "ProviderNotFoundError"

    @pytest.mark.asyncio
    async def test_probe_skipped_when_quota_refuses(self, setup, upstream):
        """No call is made and the health flag is left alone."""
        monitor, health, quota, providers = setup
        # B allows 1/min, so a single request fills its 90% margin
        quota.try_acquire("B")

        result = await monitor.check_provider(providers[1])

        assert result.skipped is True
        assert upstream.calls_to("B") == []
        assert health.is_healthy("B") is True

    @pytest.mark.asyncio
    async def test_probe_metrics(self, setup, upstream, metrics):
        monitor, _, _, providers = setup
        upstream.script("A", httpx.ConnectError("refused"))

        await monitor.check_provider(providers[0])

        assert metrics.registry.get_sample_value(
            "multirpc_health_check_failure_total", {"provider": "A"}
        ) == 1.0
        assert metrics.registry.get_sample_value(
            "multirpc_provider_healthy", {"provider": "A"}
        ) == 0.0
