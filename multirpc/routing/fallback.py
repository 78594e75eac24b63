"""
multirpc - Retry and Failover

Drives one request across providers:

1. Ask the balancer for the best provider not yet tried
2. Attempt it, retrying with exponential backoff while the error is
   retryable and attempts remain
3. On a non-retryable error, exhausted attempts or a tripped circuit
   breaker, hop to the next provider immediately

Backoff only ever separates attempts on the SAME provider. Hops are
bounded by max_failover_hops distinct providers per call.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..core.clock import Clock, SystemClock
from ..core.errors import (
    AllProvidersFailedError,
    NoHealthyProvidersError,
    RateLimitedError,
    RouterException,
    error_code_of,
    is_retryable,
)
from ..core.models import ProviderConfig, RequestOptions, RetryConfig, RpcRequest
from ..observability.logging import get_logger

logger = get_logger(__name__)

# Sentinel: a provider gave up (None is a valid RPC result)
_FAILED = object()


def calculate_backoff(
    attempt: int,
    retry_config: Optional[RetryConfig] = None,
    base_delay: Optional[float] = None,
) -> float:
    """
    Delay before retry number `attempt` (0-based) on the same provider.

    min(base * multiplier ** attempt, max_delay), plus optional jitter.
    Defaults give 1s, 2s, 4s, 8s, 10s, 10s...
    """
    config = retry_config or RetryConfig()
    base = config.base_delay if base_delay is None else base_delay
    delay = min(base * (config.backoff_multiplier ** attempt), config.max_delay)

    if config.jitter_factor > 0:
        jitter_range = delay * config.jitter_factor
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0.0, delay)


@dataclass
class FailoverAttempt:
    """Record of one attempt against one provider."""
    provider: str
    attempt: int  # 0-based, per provider
    error: Optional[str]
    error_code: Optional[str]
    latency_ms: int
    timestamp: float
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class FailoverChain:
    """Everything that happened while serving one request."""
    request_id: str
    max_hops: int
    providers_tried: List[str] = field(default_factory=list)
    attempts: List[FailoverAttempt] = field(default_factory=list)
    last_error: Optional[BaseException] = None
    total_retries: int = 0
    final_provider: Optional[str] = None

    @property
    def hops(self) -> int:
        return len(self.providers_tried)

    @property
    def can_hop(self) -> bool:
        return self.hops < self.max_hops

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    @property
    def failovers(self) -> int:
        return max(0, self.hops - 1)

    @property
    def last_error_code(self) -> Optional[str]:
        return error_code_of(self.last_error) if self.last_error is not None else None

    def start_hop(self, provider: str):
        self.providers_tried.append(provider)

    def record(self, attempt: FailoverAttempt, error: Optional[BaseException] = None):
        self.attempts.append(attempt)
        if error is not None:
            self.last_error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "providers_tried": list(self.providers_tried),
            "final_provider": self.final_provider,
            "total_attempts": self.total_attempts,
            "total_retries": self.total_retries,
            "failovers": self.failovers,
            "last_error": str(self.last_error) if self.last_error else None,
            "attempts": [
                {
                    "provider": a.provider,
                    "attempt": a.attempt,
                    "error": a.error,
                    "error_code": a.error_code,
                    "latency_ms": a.latency_ms,
                }
                for a in self.attempts
            ],
        }


class FailoverController:
    """
    Retry / failover loop around the request executor.

    Usage:
        controller = FailoverController(balancer, executor, health, retry_config, clock)
        data, provider, chain = await controller.run(request)
    """

    def __init__(
        self,
        balancer,
        executor,
        health,
        retry_config: Optional[RetryConfig] = None,
        clock: Optional[Clock] = None,
        metrics=None,
    ):
        self._balancer = balancer
        self._executor = executor
        self._health = health
        self.retry_config = retry_config or RetryConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics

    def attempts_for(self, provider: ProviderConfig, options: RequestOptions) -> int:
        """Attempts allowed on one provider (first attempt included)."""
        if options.max_retries is not None:
            return max(1, options.max_retries + 1)
        if provider.retry_attempts is not None:
            return max(1, provider.retry_attempts + 1)
        return max(1, self.retry_config.max_attempts)

    def delay_for(self, error: BaseException, attempt: int, provider: ProviderConfig) -> float:
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return min(error.retry_after, self.retry_config.max_delay)
        return calculate_backoff(attempt, self.retry_config, base_delay=provider.retry_delay_seconds)

    async def run(self, request: RpcRequest) -> Tuple[Any, str, FailoverChain]:
        """
        Serve `request`, hopping between providers as needed.

        Returns:
            (result, provider name, chain)

        Raises:
            NoHealthyProvidersError: nothing was eligible for the first hop
            AllProvidersFailedError: every hop failed
        """
        options = request.options
        chain = FailoverChain(request_id=request.request_id, max_hops=self.retry_config.max_failover_hops)

        while chain.can_hop:
            candidate = self._balancer.select_best(
                options, exclude=chain.providers_tried, method=request.method
            )

            if candidate is None:
                if not chain.providers_tried:
                    raise NoHealthyProvidersError(
                        method=request.method,
                        specialty=options.required_specialty,
                        request_id=request.request_id,
                    )
                logger.warning(
                    "No more providers to fail over to",
                    request_id=request.request_id,
                    providers_tried=list(chain.providers_tried),
                )
                break

            provider = candidate.provider
            if chain.providers_tried:
                previous = chain.providers_tried[-1]
                reason = chain.last_error_code or "unknown"
                logger.warning(
                    f"STEP [failover] {previous} -> {provider.name}",
                    request_id=request.request_id,
                    reason=reason,
                )
                if self._metrics:
                    self._metrics.record_failover(previous, provider.name, reason)

            chain.start_hop(provider.name)

            result = await self._attempt_provider(provider, request, chain)
            if result is not _FAILED:
                chain.final_provider = provider.name
                return result, provider.name, chain

        raise AllProvidersFailedError(
            chain.providers_tried,
            last_error=chain.last_error,
            request_id=request.request_id,
            attempts=chain.total_attempts,
        )

    async def _attempt_provider(self, provider: ProviderConfig, request: RpcRequest, chain: FailoverChain):
        """Try one provider until success, a non-retryable error or no attempts left."""
        max_attempts = self.attempts_for(provider, request.options)

        for attempt in range(max_attempts):
            started = self._clock.time()
            try:
                data = await self._executor.execute(provider, request, timeout=request.options.timeout)
            except asyncio.CancelledError:
                raise
            except RouterException as e:
                retryable = is_retryable(e, self.retry_config)
                chain.record(
                    FailoverAttempt(
                        provider=provider.name,
                        attempt=attempt,
                        error=str(e),
                        error_code=error_code_of(e),
                        latency_ms=int((self._clock.time() - started) * 1000),
                        timestamp=started,
                        retryable=retryable,
                    ),
                    error=e,
                )

                if not retryable:
                    logger.info(
                        f"STEP [retry] {provider.name} error not retryable, failing over",
                        request_id=request.request_id,
                        error_code=error_code_of(e),
                    )
                    return _FAILED

                if attempt + 1 >= max_attempts:
                    logger.info(
                        f"STEP [retry] {provider.name} attempts exhausted ({max_attempts})",
                        request_id=request.request_id,
                    )
                    return _FAILED

                if not self._health.is_healthy(provider.name):
                    logger.info(
                        f"STEP [retry] {provider.name} circuit open, failing over",
                        request_id=request.request_id,
                    )
                    return _FAILED

                delay = self.delay_for(e, attempt, provider)
                chain.total_retries += 1
                if self._metrics:
                    self._metrics.record_retry(provider.name)
                logger.warning(
                    f"STEP [retry] {provider.name} retry {attempt + 1}/{max_attempts - 1} "
                    f"after {delay:.2f}s - Error: {e}",
                    request_id=request.request_id,
                )
                await self._clock.sleep(delay)
                continue

            chain.record(
                FailoverAttempt(
                    provider=provider.name,
                    attempt=attempt,
                    error=None,
                    error_code=None,
                    latency_ms=int((self._clock.time() - started) * 1000),
                    timestamp=started,
                )
            )
            return data

        return _FAILED
