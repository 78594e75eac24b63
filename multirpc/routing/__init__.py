"""
multirpc - Routing Module

Provider selection and request handling:
- Provider registry and quota windows
- Health tracking with a consecutive-failure circuit breaker
- Priority scoring and load balancing
- Same-provider retries, then failover
"""

from .router import RpcRouter, NO_PROVIDER, MULTIPLE_FAILED
from .registry import ProviderRegistry
from .quota import (
    DEFAULT_SAFETY_MARGIN,
    QuotaTracker,
    QuotaUsage,
    QuotaWindow,
)
from .health import (
    HealthMonitor,
    HealthRegistry,
    HealthSnapshot,
    HealthTracker,
    LatencyStats,
)
from .strategies import (
    BaseScorer,
    LoadBalancer,
    PriorityScorer,
    ProviderMetrics,
    ScoredCandidate,
    ScoringWeights,
)
from .fallback import (
    FailoverAttempt,
    FailoverChain,
    FailoverController,
    calculate_backoff,
)

__all__ = [
    # Router
    "RpcRouter",
    "NO_PROVIDER",
    "MULTIPLE_FAILED",
    "ProviderRegistry",

    # Quota
    "DEFAULT_SAFETY_MARGIN",
    "QuotaTracker",
    "QuotaUsage",
    "QuotaWindow",

    # Health
    "HealthMonitor",
    "HealthRegistry",
    "HealthSnapshot",
    "HealthTracker",
    "LatencyStats",

    # Scoring
    "BaseScorer",
    "LoadBalancer",
    "PriorityScorer",
    "ProviderMetrics",
    "ScoredCandidate",
    "ScoringWeights",

    # Failover
    "FailoverAttempt",
    "FailoverChain",
    "FailoverController",
    "calculate_backoff",
]
