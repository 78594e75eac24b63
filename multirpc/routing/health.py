"""
multirpc - Provider Health Tracking

Runtime statistics and health state for each provider:
- Request counters (total = successful + failed, always)
- Latency history bounded to the last 100 samples (avg, min, max, p95)
- Consecutive-error streak with a circuit breaker
- Periodic liveness probes (HealthMonitor)

A provider goes unhealthy when its error streak reaches the failure
threshold, or when a probe fails. It only becomes healthy again through a
successful probe or an explicit operator override.
"""

import asyncio
import statistics
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, SystemClock
from ..core.errors import ProviderNotFoundError
from ..core.models import HealthCheckConfig, HealthCheckResult, ProviderConfig, generate_request_id
from ..observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LatencyStats:
    """Latency statistics over the bounded history."""
    avg_ms: float = 0.0
    min_ms: int = 0
    max_ms: int = 0
    p95_ms: int = 0
    variance: float = 0.0
    sample_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "p95_ms": self.p95_ms,
            "sample_count": self.sample_count,
        }


@dataclass
class HealthSnapshot:
    """Point-in-time view of one provider's runtime stats."""
    provider: str
    timestamp: float
    is_healthy: bool
    latency_stats: LatencyStats
    success_rate: float
    total_requests: int
    successful_requests: int
    failed_requests: int
    consecutive_errors: int
    last_error: Optional[str] = None
    last_error_time: Optional[float] = None
    last_success_time: Optional[float] = None
    last_probe_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "is_healthy": self.is_healthy,
            "success_rate": round(self.success_rate, 2),
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "consecutive_errors": self.consecutive_errors,
            "latency": self.latency_stats.to_dict(),
            "last_error": self.last_error,
            "last_error_time": self.last_error_time,
            "last_success_time": self.last_success_time,
            "last_probe_time": self.last_probe_time,
        }


class HealthTracker:
    """
    Tracks runtime stats for a single provider.

    All mutation goes through the record_* / mark_* methods, each of
    which holds the tracker lock for its whole read-modify-write.
    """

    LATENCY_WINDOW_SIZE = 100

    def __init__(
        self,
        config: ProviderConfig,
        clock: Optional[Clock] = None,
        failure_threshold: int = 3,
    ):
        self.config = config
        self.failure_threshold = failure_threshold
        self._clock = clock or SystemClock()
        self._lock = Lock()

        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._consecutive_errors = 0

        self._latencies: deque = deque(maxlen=self.LATENCY_WINDOW_SIZE)

        self._is_healthy = True
        self._last_error: Optional[str] = None
        self._last_error_time: Optional[float] = None
        self._last_success_time: Optional[float] = None
        self._last_probe_time: Optional[float] = None

    @property
    def name(self) -> str:
        return self.config.name

    def record_success(self, latency_ms: int):
        """Record a successful request."""
        with self._lock:
            self._total_requests += 1
            self._successful_requests += 1
            self._consecutive_errors = 0
            self._last_success_time = self._clock.time()
            self._latencies.append(latency_ms)

    def record_failure(self, error: str, latency_ms: Optional[int] = None) -> bool:
        """
        Record a failed request.

        Returns True when this failure tripped the circuit breaker.
        """
        with self._lock:
            self._total_requests += 1
            self._failed_requests += 1
            self._consecutive_errors += 1
            self._last_error = error
            self._last_error_time = self._clock.time()

            if latency_ms is not None:
                self._latencies.append(latency_ms)

            if self._is_healthy and self._consecutive_errors >= self.failure_threshold:
                self._is_healthy = False
                tripped = True
            else:
                tripped = False

        if tripped:
            logger.warning(
                "Circuit breaker opened",
                provider=self.name,
                consecutive_errors=self.failure_threshold,
                error=error,
            )
        return tripped

    def mark_probe_success(self, latency_ms: int) -> bool:
        """Record a passing probe. Returns True if the provider recovered."""
        with self._lock:
            recovered = not self._is_healthy
            self._is_healthy = True
            self._consecutive_errors = 0
            now = self._clock.time()
            self._last_success_time = now
            self._last_probe_time = now
        return recovered

    def mark_probe_failure(self, error: str) -> bool:
        """Record a failing probe. Returns True if the provider just went down."""
        with self._lock:
            went_down = self._is_healthy
            self._is_healthy = False
            self._consecutive_errors += 1
            now = self._clock.time()
            self._last_error = error
            self._last_error_time = now
            self._last_probe_time = now
        return went_down

    def mark_unhealthy(self, reason: str):
        with self._lock:
            self._is_healthy = False
            self._last_error = reason
            self._last_error_time = self._clock.time()

    def mark_healthy(self):
        with self._lock:
            self._is_healthy = True
            self._consecutive_errors = 0

    def _get_latency_stats(self) -> LatencyStats:
        if not self._latencies:
            return LatencyStats()

        latencies = list(self._latencies)
        ordered = sorted(latencies)
        count = len(ordered)
        avg = statistics.fmean(latencies)
        p95_index = min(count - 1, int(round((count - 1) * 0.95)))

        return LatencyStats(
            avg_ms=avg,
            min_ms=ordered[0],
            max_ms=ordered[-1],
            p95_ms=ordered[p95_index],
            variance=statistics.pvariance(latencies, mu=avg),
            sample_count=count,
        )

    def _success_rate(self) -> float:
        if self._total_requests == 0:
            return 100.0
        return (self._successful_requests / self._total_requests) * 100

    def get_snapshot(self) -> HealthSnapshot:
        with self._lock:
            return HealthSnapshot(
                provider=self.name,
                timestamp=self._clock.time(),
                is_healthy=self._is_healthy,
                latency_stats=self._get_latency_stats(),
                success_rate=self._success_rate(),
                total_requests=self._total_requests,
                successful_requests=self._successful_requests,
                failed_requests=self._failed_requests,
                consecutive_errors=self._consecutive_errors,
                last_error=self._last_error,
                last_error_time=self._last_error_time,
                last_success_time=self._last_success_time,
                last_probe_time=self._last_probe_time,
            )

    @property
    def is_healthy(self) -> bool:
        with self._lock:
            return self._is_healthy

    @property
    def consecutive_errors(self) -> int:
        with self._lock:
            return self._consecutive_errors

    @property
    def success_rate(self) -> float:
        with self._lock:
            return self._success_rate()

    @property
    def avg_latency_ms(self) -> float:
        with self._lock:
            if not self._latencies:
                return 0.0
            return statistics.fmean(self._latencies)


class HealthRegistry:
    """Health trackers for every registered provider."""

    def __init__(self, clock: Optional[Clock] = None, failure_threshold: int = 3):
        self._clock = clock or SystemClock()
        self.failure_threshold = failure_threshold
        self._trackers: Dict[str, HealthTracker] = {}
        self._lock = Lock()

    def register(self, config: ProviderConfig) -> HealthTracker:
        tracker = HealthTracker(config, clock=self._clock, failure_threshold=self.failure_threshold)
        with self._lock:
            self._trackers[config.name] = tracker
        return tracker

    def get_tracker(self, name: str) -> HealthTracker:
        with self._lock:
            try:
                return self._trackers[name]
            except KeyError:
                raise ProviderNotFoundError(name)

    def is_healthy(self, name: str) -> bool:
        return self.get_tracker(name).is_healthy

    def healthy_names(self) -> List[str]:
        with self._lock:
            trackers = list(self._trackers.items())
        return [name for name, tracker in trackers if tracker.is_healthy]

    def get_all_snapshots(self) -> Dict[str, HealthSnapshot]:
        with self._lock:
            trackers = list(self._trackers.items())
        return {name: tracker.get_snapshot() for name, tracker in trackers}


class HealthMonitor:
    """
    Periodic liveness probing.

    Probes bypass the request executor: one call per provider, probe
    timeout, no retries, and no effect on request counters. Each probe
    still counts against the provider's quota; when the quota refuses,
    the probe is skipped and the health flag is left untouched.
    """

    def __init__(
        self,
        health: HealthRegistry,
        quota,
        transport,
        config: Optional[HealthCheckConfig] = None,
        clock: Optional[Clock] = None,
        metrics=None,
    ):
        self._health = health
        self._quota = quota
        self._transport = transport
        self.config = config or HealthCheckConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self.last_results: Dict[str, HealthCheckResult] = {}

    async def check_provider(self, provider: ProviderConfig) -> HealthCheckResult:
        tracker = self._health.get_tracker(provider.name)
        started = self._clock.time()

        cost = self._quota.cost_of(provider.name, self.config.probe_method)
        if not self._quota.try_acquire(provider.name, cost):
            snapshot = tracker.get_snapshot()
            result = HealthCheckResult(
                provider=provider.name,
                is_healthy=snapshot.is_healthy,
                latency_ms=0,
                timestamp=started,
                consecutive_failures=snapshot.consecutive_errors,
                error="quota exhausted, probe skipped",
                last_success_time=snapshot.last_success_time,
                skipped=True,
            )
            logger.debug("Health probe skipped", provider=provider.name, reason="quota")
            self.last_results[provider.name] = result
            return result

        payload = {
            "jsonrpc": "2.0",
            "id": generate_request_id(),
            "method": self.config.probe_method,
            "params": [],
        }

        error: Optional[str] = None
        try:
            await self._transport.post(provider, payload, self.config.probe_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e) or type(e).__name__

        latency_ms = int((self._clock.time() - started) * 1000)

        if error is None:
            if tracker.mark_probe_success(latency_ms):
                logger.info("Provider recovered", provider=provider.name, latency_ms=latency_ms)
        else:
            if tracker.mark_probe_failure(error):
                logger.warning("Provider health check failed", provider=provider.name, error=error)
            else:
                logger.debug("Provider still unhealthy", provider=provider.name, error=error)

        snapshot = tracker.get_snapshot()
        result = HealthCheckResult(
            provider=provider.name,
            is_healthy=error is None,
            latency_ms=latency_ms,
            timestamp=self._clock.time(),
            consecutive_failures=snapshot.consecutive_errors,
            error=error,
            last_success_time=snapshot.last_success_time,
        )

        if self._metrics:
            self._metrics.record_health_check(provider.name, error is None, latency_ms / 1000)
            self._metrics.set_provider_health(provider.name, snapshot.is_healthy)

        self.last_results[provider.name] = result
        return result

    async def check_all(self, providers: List[ProviderConfig]) -> List[HealthCheckResult]:
        """
        Probe every provider concurrently.

        A probe that raises is logged and left out of the results; the
        other probes of the round still count.
        """
        outcomes = await asyncio.gather(
            *(self.check_provider(p) for p in providers),
            return_exceptions=True,
        )

        results: List[HealthCheckResult] = []
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Health probe crashed",
                    provider=provider.name,
                    error=str(outcome) or type(outcome).__name__,
                    error_type=type(outcome).__name__,
                )
                continue
            results.append(outcome)

        healthy = sum(1 for r in results if r.is_healthy)
        logger.info("Health check completed", healthy=healthy, total=len(providers))
        return results
