"""
multirpc - Core Data Models

Provider configuration, request/response envelopes and tuning
configuration shared by every routing component.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import InvalidConfigurationError, MissingRequiredFieldError


# ============================================================
# Enums
# ============================================================

class ProviderKind(str, Enum):
    """Upstream provider families. Drives URL shape and auth placement."""
    QUICKNODE = "quicknode"
    ALCHEMY = "alchemy"
    HELIUS = "helius"
    GENESYSGO = "genesysgo"
    TRITON = "triton"
    GENERIC = "generic"


class AuthPlacement(str, Enum):
    """Where the credential travels on an outbound call."""
    HEADER = "header"  # Authorization: Bearer <key>
    QUERY = "query"    # ?api-key=<key>
    PATH = "path"      # <base_url>/<key>
    NONE = "none"


class QuotaPeriod(str, Enum):
    """Quota windows enforced per provider."""
    MINUTE = "minute"
    DAY = "day"
    MONTH = "month"

    @property
    def seconds(self) -> int:
        return {
            QuotaPeriod.MINUTE: 60,
            QuotaPeriod.DAY: 86400,
            QuotaPeriod.MONTH: 2592000,  # 30 days
        }[self]


def check_method_costs(costs: Any, provider: str = "", field_name: str = "method_costs") -> Dict[str, int]:
    """
    Validate a method -> credit cost map.

    Costs are positive integers; methods not listed cost 1.
    """
    if not isinstance(costs, dict):
        raise InvalidConfigurationError(
            f"{field_name} must map method names to costs",
            provider=provider,
            field=field_name,
        )
    for method, cost in costs.items():
        if not isinstance(method, str) or isinstance(cost, bool) or not isinstance(cost, int) or cost < 1:
            raise InvalidConfigurationError(
                f"{field_name} entry {method!r} must be a positive integer",
                provider=provider,
                field=field_name,
            )
    return dict(costs)


# ============================================================
# Provider configuration
# ============================================================

@dataclass(frozen=True)
class ProviderConfig:
    """
    Static configuration of one upstream provider.

    Created once at startup and shared read-only; the router keeps all
    mutable state for the provider elsewhere.
    """
    name: str
    base_url: str
    api_key: str
    kind: ProviderKind = ProviderKind.GENERIC

    # Quota ceilings
    requests_per_minute: int = 60
    requests_per_day: int = 100_000
    requests_per_month: int = 3_000_000

    # Preference
    priority: int = 1  # higher = preferred
    reliability: float = 100.0  # 0-100, informational
    specialties: FrozenSet[str] = field(default_factory=frozenset)

    # Per-provider call policy
    timeout_seconds: float = 10.0
    retry_attempts: Optional[int] = None  # retries after the first attempt
    retry_delay_seconds: Optional[float] = None  # backoff base override

    auth_placement: Optional[AuthPlacement] = None

    # Credits charged per call; unlisted methods cost 1
    method_costs: Dict[str, int] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        for field_name in ("name", "base_url", "api_key"):
            value = getattr(self, field_name)
            if not isinstance(value, str) or not value.strip():
                raise MissingRequiredFieldError(
                    field=field_name,
                    provider=self.name if isinstance(self.name, str) else "",
                )

        if not isinstance(self.kind, ProviderKind):
            object.__setattr__(self, "kind", ProviderKind(self.kind))

        if self.auth_placement is not None and not isinstance(self.auth_placement, AuthPlacement):
            object.__setattr__(self, "auth_placement", AuthPlacement(self.auth_placement))

        if not isinstance(self.specialties, frozenset):
            object.__setattr__(self, "specialties", frozenset(self.specialties))

        for quota_field in ("requests_per_minute", "requests_per_day", "requests_per_month"):
            if getattr(self, quota_field) <= 0:
                raise InvalidConfigurationError(
                    f"{quota_field} must be positive",
                    provider=self.name,
                    field=quota_field,
                )

        if self.timeout_seconds <= 0:
            raise InvalidConfigurationError(
                "timeout_seconds must be positive",
                provider=self.name,
                field="timeout_seconds",
            )

        if not 0 <= self.reliability <= 100:
            raise InvalidConfigurationError(
                "reliability must be within 0-100",
                provider=self.name,
                field="reliability",
            )

        if self.retry_attempts is not None and self.retry_attempts < 0:
            raise InvalidConfigurationError(
                "retry_attempts cannot be negative",
                provider=self.name,
                field="retry_attempts",
            )

        object.__setattr__(self, "method_costs", check_method_costs(self.method_costs, provider=self.name))

    def quota_limit(self, period: QuotaPeriod) -> int:
        """Get the raw ceiling for a quota window."""
        return {
            QuotaPeriod.MINUTE: self.requests_per_minute,
            QuotaPeriod.DAY: self.requests_per_day,
            QuotaPeriod.MONTH: self.requests_per_month,
        }[period]

    def cost_of(self, method: str, default: int = 1) -> int:
        """Credits one call to `method` uses against this provider's quota."""
        return self.method_costs.get(method, default)

    def has_specialty(self, specialty: str) -> bool:
        return specialty in self.specialties

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the configuration (credential omitted)."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "base_url": self.base_url,
            "requests_per_minute": self.requests_per_minute,
            "requests_per_day": self.requests_per_day,
            "requests_per_month": self.requests_per_month,
            "priority": self.priority,
            "reliability": self.reliability,
            "specialties": sorted(self.specialties),
            "timeout_seconds": self.timeout_seconds,
            "method_costs": dict(self.method_costs),
        }


# ============================================================
# Tuning configuration
# ============================================================

@dataclass
class RetryConfig:
    """Retry and failover behavior."""
    # Attempts per provider (first attempt included)
    max_attempts: int = 3

    # Backoff between attempts on the same provider (seconds)
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.0

    # Which failures are worth retrying on the same provider
    retry_on_timeout: bool = True
    retry_on_rate_limit: bool = True
    retry_on_network_error: bool = True
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )

    # Distinct providers tried per call, the first one included
    max_failover_hops: int = 3


DEFAULT_METHOD_TTL: Dict[str, float] = {
    "getAccountInfo": 30,
    "getSignaturesForAddress": 10,
    "getTransaction": 3600,
    "getTokenAccountsByOwner": 60,
    "getTokenMetadata": 86400,
    "getBalance": 30,
}


@dataclass
class CacheConfig:
    """Response cache behavior."""
    enabled: bool = True
    default_ttl: float = 300.0
    max_size: int = 10_000
    cleanup_interval: float = 60.0
    eviction_fraction: float = 0.1
    method_ttl: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_METHOD_TTL))

    def ttl_for(self, method: str) -> float:
        return self.method_ttl.get(method, self.default_ttl)


@dataclass
class HealthCheckConfig:
    """Health probing and circuit breaker behavior."""
    interval_seconds: float = 120.0
    probe_timeout_seconds: float = 5.0
    probe_method: str = "getSlot"

    # Consecutive request failures that mark a provider unhealthy
    failure_threshold: int = 3

    # How often quota windows are rolled and stats refreshed
    stats_interval_seconds: float = 30.0


# ============================================================
# Request / Response envelopes
# ============================================================

def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


@dataclass
class RequestOptions:
    """Per-call routing options."""
    preferred_provider: Optional[str] = None
    required_specialty: Optional[str] = None
    timeout: Optional[float] = None  # seconds
    use_cache: Optional[bool] = None
    max_retries: Optional[int] = None


@dataclass
class RpcRequest:
    """A single JSON-RPC call to route."""
    method: str
    params: List[Any] = field(default_factory=list)
    options: RequestOptions = field(default_factory=RequestOptions)
    request_id: str = field(default_factory=generate_request_id)


@dataclass
class RpcResponse:
    """Uniform result of a routed call. Never raised, always returned."""
    success: bool
    provider: str
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    latency_ms: int = 0
    retries: int = 0
    from_cache: bool = False
    providers_tried: List[str] = field(default_factory=list)
    request_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "provider": self.provider,
            "latency_ms": self.latency_ms,
            "retries": self.retries,
            "from_cache": self.from_cache,
            "request_id": self.request_id,
        }
        if self.success:
            result["data"] = self.data
        else:
            result["error"] = self.error
            result["error_code"] = self.error_code
            result["providers_tried"] = list(self.providers_tried)
        return result


@dataclass
class HealthCheckResult:
    """Outcome of one liveness probe."""
    provider: str
    is_healthy: bool
    latency_ms: int
    timestamp: float
    consecutive_failures: int = 0
    error: Optional[str] = None
    last_success_time: Optional[float] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "is_healthy": self.is_healthy,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp,
            "consecutive_failures": self.consecutive_failures,
            "error": self.error,
            "last_success_time": self.last_success_time,
            "skipped": self.skipped,
        }
