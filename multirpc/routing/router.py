"""
multirpc - Router Service

Single entry point for outbound JSON-RPC calls:
- Response cache in front of every provider
- Priority/quota/health-aware provider selection
- Same-provider retries with backoff, then failover
- Circuit breaker plus periodic health probes
- Aggregate and per-provider statistics

make_request() never raises for upstream failures; it always returns an
RpcResponse envelope. Configuration errors raise at registration time.
"""

from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from ..caching.response_cache import ResponseCache
from ..core.clock import Clock, SystemClock
from ..core.errors import AllProvidersFailedError, InvalidParamsError, NoHealthyProvidersError, RouterException
from ..core.http_client import RequestExecutor, RpcTransport, encode_params
from ..core.models import (
    CacheConfig,
    HealthCheckConfig,
    HealthCheckResult,
    ProviderConfig,
    QuotaPeriod,
    RequestOptions,
    RetryConfig,
    RpcRequest,
    RpcResponse,
)
from ..core.scheduler import Scheduler
from ..observability.logging import TimedOperation, get_logger, request_context
from ..observability.metrics import MetricsCollector, get_metrics as get_metrics_collector
from .fallback import FailoverController
from .health import HealthMonitor, HealthRegistry
from .quota import QuotaTracker
from .registry import ProviderRegistry
from .strategies import LoadBalancer, PriorityScorer, ScoringWeights

logger = get_logger(__name__)

NO_PROVIDER = "none"
MULTIPLE_FAILED = "multiple-failed"


class RpcRouter:
    """
    Multi-provider JSON-RPC router.

    Usage:
        router = RpcRouter(providers=[quicknode, alchemy, helius])
        async with router:
            response = await router.get_balance(address)
            if response.success:
                print(response.data, response.provider)
    """

    def __init__(
        self,
        providers: Optional[Iterable[ProviderConfig]] = None,
        retry_config: Optional[RetryConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        health_config: Optional[HealthCheckConfig] = None,
        weights: Optional[ScoringWeights] = None,
        clock: Optional[Clock] = None,
        transport: Optional[RpcTransport] = None,
        metrics: Optional[MetricsCollector] = None,
        method_costs: Optional[Dict[str, int]] = None,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.cache_config = cache_config or CacheConfig()
        self.health_config = health_config or HealthCheckConfig()
        self.clock = clock or SystemClock()
        self.metrics = metrics or get_metrics_collector()
        self.transport = transport or RpcTransport()

        self.registry = ProviderRegistry()
        self.quota = QuotaTracker(self.clock, method_costs=method_costs)
        self.health = HealthRegistry(self.clock, failure_threshold=self.health_config.failure_threshold)
        self.balancer = LoadBalancer(self.registry, self.quota, self.health, PriorityScorer(weights))
        self.executor = RequestExecutor(self.quota, self.health, self.transport, self.clock, self.metrics)
        self.failover = FailoverController(
            self.balancer,
            self.executor,
            self.health,
            self.retry_config,
            self.clock,
            self.metrics,
        )
        self.cache = ResponseCache(self.cache_config, self.clock)
        self.monitor = HealthMonitor(
            self.health,
            self.quota,
            self.transport,
            self.health_config,
            self.clock,
            self.metrics,
        )

        self.scheduler = Scheduler(self.clock)
        self.scheduler.add("health_check", self.health_config.interval_seconds, self._scheduled_health_check)
        self.scheduler.add("cache_cleanup", self.cache_config.cleanup_interval, self._scheduled_cache_cleanup)
        self.scheduler.add("stats", self.health_config.stats_interval_seconds, self._scheduled_stats_tick)

        # Aggregate counters
        self._lock = Lock()
        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._provider_latency_ms_total = 0
        self._provider_served = 0
        self._failovers = 0
        self._distribution: Dict[str, int] = {}

        self.primary_provider: Optional[str] = None
        self._started = False

        for config in providers or []:
            self.register_provider(config)

    # ============================================================
    # Registration
    # ============================================================

    def register_provider(self, config: ProviderConfig) -> None:
        """Add a provider. Raises DuplicateProviderError on a name clash."""
        self.registry.register(config)
        self.quota.register(config)
        self.health.register(config)
        self.metrics.set_provider_health(config.name, True)

        logger.info(
            "Provider registered",
            provider=config.name,
            kind=config.kind.value,
            priority=config.priority,
            specialties=sorted(config.specialties),
        )

        if self.primary_provider is None:
            self._update_primary_provider()

    @property
    def providers(self) -> List[ProviderConfig]:
        return self.registry.list()

    # ============================================================
    # Requests
    # ============================================================

    async def make_request(
        self,
        method: str,
        params: Optional[List[Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> RpcResponse:
        """
        Route one JSON-RPC call.

        Args:
            method: JSON-RPC method name
            params: Positional params (list or tuple of JSON values)
            options: Preference, specialty, timeout and cache overrides

        Returns:
            RpcResponse; failures are reported in the envelope, not raised
        """
        options = options or RequestOptions()
        started = self.clock.time()

        # Rejected before any provider is picked: no quota, no health impact
        try:
            params = encode_params(params, method)
        except InvalidParamsError as e:
            request = RpcRequest(method=method, options=options)
            e.error.request_id = request.request_id
            with self._lock:
                self._total_requests += 1
            logger.warning(
                "Request rejected, invalid params",
                request_id=request.request_id,
                rpc_method=method,
                error=str(e),
            )
            return self._failure_response(request, e, NO_PROVIDER, [], 0, started)

        request = RpcRequest(method=method, params=params, options=options)
        use_cache = self.cache_config.enabled and options.use_cache is not False

        with request_context(request_id=request.request_id, method=method):
            with self._lock:
                self._total_requests += 1

            if use_cache:
                entry = self.cache.get(method, params)
                self.metrics.record_cache_lookup(entry is not None)
                if entry is not None:
                    with self._lock:
                        self._successful_requests += 1
                    logger.debug("Cache hit", provider=entry.provider)
                    return RpcResponse(
                        success=True,
                        data=entry.data,
                        provider=entry.provider,
                        latency_ms=self._elapsed_ms(started),
                        retries=0,
                        from_cache=True,
                        request_id=request.request_id,
                    )

            try:
                data, provider_name, chain = await self.failover.run(request)
            except NoHealthyProvidersError as e:
                logger.error("No healthy providers available", required_specialty=options.required_specialty)
                return self._failure_response(request, e, NO_PROVIDER, [], 0, started)
            except AllProvidersFailedError as e:
                logger.error(
                    "All providers failed",
                    providers_tried=e.providers_tried,
                    error=str(e.last_error) if e.last_error else None,
                )
                retries = max(0, e.attempts - 1)
                return self._failure_response(request, e, MULTIPLE_FAILED, e.providers_tried, retries, started)

            if use_cache:
                self.cache.set(method, params, data, provider_name)
                self.metrics.set_cache_size(len(self.cache))

            latency_ms = self._elapsed_ms(started)
            with self._lock:
                self._successful_requests += 1
                self._provider_served += 1
                self._provider_latency_ms_total += latency_ms
                self._failovers += chain.failovers
                self._distribution[provider_name] = self._distribution.get(provider_name, 0) + 1

            return RpcResponse(
                success=True,
                data=data,
                provider=provider_name,
                latency_ms=latency_ms,
                retries=max(0, chain.total_attempts - 1),
                providers_tried=list(chain.providers_tried),
                request_id=request.request_id,
            )

    def _failure_response(
        self,
        request: RpcRequest,
        error: RouterException,
        provider: str,
        providers_tried: List[str],
        retries: int,
        started: float,
    ) -> RpcResponse:
        latency_ms = self._elapsed_ms(started)
        with self._lock:
            self._failed_requests += 1
            if providers_tried:
                self._provider_served += 1
                self._provider_latency_ms_total += latency_ms
                self._failovers += max(0, len(providers_tried) - 1)

        return RpcResponse(
            success=False,
            provider=provider,
            error=str(error),
            error_code=error.code,
            latency_ms=latency_ms,
            retries=retries,
            providers_tried=list(providers_tried),
            request_id=request.request_id,
        )

    def _elapsed_ms(self, started: float) -> int:
        return int((self.clock.time() - started) * 1000)

    # Convenience wrappers

    async def get_account_info(self, address: str, config: Optional[Dict[str, Any]] = None,
                               options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request("getAccountInfo", [address, config or {"encoding": "jsonParsed"}], options)

    async def get_signatures_for_address(self, address: str, config: Optional[Dict[str, Any]] = None,
                                         options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request("getSignaturesForAddress", [address, config or {}], options)

    async def get_transaction(self, signature: str, config: Optional[Dict[str, Any]] = None,
                              options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request(
            "getTransaction",
            [signature, config or {"encoding": "jsonParsed", "commitment": "confirmed"}],
            options,
        )

    async def get_token_accounts_by_owner(self, owner: str, filter: Dict[str, Any],
                                          config: Optional[Dict[str, Any]] = None,
                                          options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request(
            "getTokenAccountsByOwner",
            [owner, filter, config or {"encoding": "jsonParsed"}],
            options,
        )

    async def get_balance(self, address: str, options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request("getBalance", [address], options)

    async def get_slot(self, options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request("getSlot", [], options)

    async def get_block_height(self, options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request("getBlockHeight", [], options)

    async def get_latest_blockhash(self, commitment: str = "confirmed",
                                   options: Optional[RequestOptions] = None) -> RpcResponse:
        return await self.make_request("getLatestBlockhash", [{"commitment": commitment}], options)

    # ============================================================
    # Health
    # ============================================================

    async def perform_health_check(self) -> List[HealthCheckResult]:
        """Probe every provider now."""
        providers = self.registry.list()
        with TimedOperation("health_check", logger, extra={"providers": len(providers)}):
            results = await self.monitor.check_all(providers)
        self._update_primary_provider()
        return results

    def mark_unhealthy(self, name: str, reason: str = "marked unhealthy by operator") -> None:
        self.health.get_tracker(name).mark_unhealthy(reason)
        self.metrics.set_provider_health(name, False)
        logger.warning("Provider marked unhealthy", provider=name, reason=reason)
        self._update_primary_provider()

    def mark_healthy(self, name: str) -> None:
        self.health.get_tracker(name).mark_healthy()
        self.metrics.set_provider_health(name, True)
        logger.info("Provider marked healthy", provider=name)
        self._update_primary_provider()

    # ============================================================
    # Statistics
    # ============================================================

    def _update_primary_provider(self) -> Optional[str]:
        best = self.balancer.select_best()
        name = best.name if best else None
        if name != self.primary_provider:
            logger.info("Primary provider changed", previous=self.primary_provider, current=name)
            self.primary_provider = name
        return name

    def get_provider_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider quota, health, latency and current score."""
        result = {}

        for config in self.registry.list():
            snapshot = self.health.get_tracker(config.name).get_snapshot()
            usage = self.quota.usage(config.name)
            score = self.balancer.score_provider(config)

            result[config.name] = {
                "config": config.to_dict(),
                "is_healthy": snapshot.is_healthy,
                "total_requests": snapshot.total_requests,
                "successful_requests": snapshot.successful_requests,
                "failed_requests": snapshot.failed_requests,
                "success_rate": round(snapshot.success_rate, 2),
                "avg_latency_ms": round(snapshot.latency_stats.avg_ms, 2),
                "min_latency_ms": snapshot.latency_stats.min_ms,
                "max_latency_ms": snapshot.latency_stats.max_ms,
                "p95_latency_ms": snapshot.latency_stats.p95_ms,
                "consecutive_errors": snapshot.consecutive_errors,
                "last_error": snapshot.last_error,
                "last_error_time": snapshot.last_error_time,
                "last_success_time": snapshot.last_success_time,
                "quota": usage.to_dict(),
                "can_accept": usage.can_accept,
                "score": round(score.score, 2),
            }

        return result

    def get_metrics(self) -> Dict[str, Any]:
        """Aggregate router metrics."""
        cache_stats = self.cache.stats()
        healthy = self.health.healthy_names()

        with self._lock:
            avg_latency = (
                self._provider_latency_ms_total / self._provider_served
                if self._provider_served else 0.0
            )
            return {
                "total_requests": self._total_requests,
                "successful_requests": self._successful_requests,
                "failed_requests": self._failed_requests,
                "average_latency_ms": round(avg_latency, 2),
                "cache_hits": cache_stats["hits"],
                "cache_misses": cache_stats["misses"],
                "cache_hit_rate": cache_stats["hit_rate"],
                "cache_size": cache_stats["size"],
                "failovers": self._failovers,
                "healthy_providers": len(healthy),
                "total_providers": len(self.registry),
                "primary_provider": self.primary_provider,
                "provider_distribution": dict(self._distribution),
            }

    # ============================================================
    # Background tasks
    # ============================================================

    async def _scheduled_health_check(self):
        await self.perform_health_check()

    async def _scheduled_cache_cleanup(self):
        self.cache.cleanup()
        self.metrics.set_cache_size(len(self.cache))

    async def _scheduled_stats_tick(self):
        for name, usage in self.quota.check_all().items():
            for period in QuotaPeriod:
                self.metrics.set_quota_utilization(name, period.value, usage.utilization(period) / 100)
        for name, snapshot in self.health.get_all_snapshots().items():
            self.metrics.set_provider_health(name, snapshot.is_healthy)
        self.metrics.set_cache_size(len(self.cache))
        self._update_primary_provider()

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start health probes, cache sweep and stats tick."""
        if self._started:
            return
        self.scheduler.start()
        self._started = True
        logger.info("Router started", providers=self.registry.names())

    async def shutdown(self) -> None:
        """Stop background tasks, drop the cache and close connections."""
        await self.scheduler.stop()
        self.cache.clear()
        await self.transport.close()
        self._started = False
        logger.info("Router shut down")

    async def __aenter__(self) -> "RpcRouter":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
