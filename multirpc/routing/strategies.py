"""
multirpc - Provider Scoring and Selection

Scores each eligible provider and picks the best one for a request.

Score shape:
- Higher priority and higher success rate raise the score
- Higher quota utilization, latency and error streaks lower it
- Steady latency earns a small stability bonus
- Scores never drop below zero

Ties go to the provider registered first.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.models import ProviderConfig, QuotaPeriod, RequestOptions
from ..observability.logging import get_logger
from .health import HealthRegistry
from .quota import QuotaTracker
from .registry import ProviderRegistry

logger = get_logger(__name__)


@dataclass
class ScoringWeights:
    """Coefficients of the scoring formula."""
    priority_weight: float = 20.0
    minute_usage_weight: float = 0.3
    day_usage_weight: float = 0.2
    month_usage_weight: float = 0.1
    success_rate_weight: float = 0.3

    # Latency penalty: avg seconds * factor, capped
    latency_penalty_per_second: float = 5.0
    max_latency_penalty: float = 20.0

    consecutive_error_weight: float = 10.0

    # Stability bonus once enough samples exist
    stability_min_samples: int = 10
    stability_weight: float = 0.1


@dataclass
class ProviderMetrics:
    """Inputs to the score of one provider."""
    provider: str
    priority: int = 1
    minute_utilization: float = 0.0  # percent
    day_utilization: float = 0.0
    month_utilization: float = 0.0
    success_rate: float = 100.0  # percent
    avg_latency_ms: float = 0.0
    consecutive_errors: int = 0
    latency_variance: float = 0.0
    sample_count: int = 0


@dataclass
class ScoredCandidate:
    """A candidate with its calculated score."""
    provider: ProviderConfig
    score: float
    breakdown: Dict[str, float] = field(default_factory=dict)  # for debugging
    preferred: bool = False

    @property
    def name(self) -> str:
        return self.provider.name


class BaseScorer(ABC):
    """Base class for scoring strategies."""

    @abstractmethod
    def score(self, metrics: ProviderMetrics) -> Tuple[float, Dict[str, float]]:
        """Return (score, breakdown). Higher score = better candidate."""
        pass


class PriorityScorer(BaseScorer):
    """
    Priority-weighted scorer.

    score = priority * 20
          - minute% * 0.3 - day% * 0.2 - month% * 0.1
          + success% * 0.3
          - min(avg_latency_s * 5, 20)
          - consecutive_errors * 10
          + stability bonus
    """

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def score(self, metrics: ProviderMetrics):
        w = self.weights
        breakdown: Dict[str, float] = {}

        breakdown["priority"] = metrics.priority * w.priority_weight

        breakdown["minute_usage_penalty"] = -metrics.minute_utilization * w.minute_usage_weight
        breakdown["day_usage_penalty"] = -metrics.day_utilization * w.day_usage_weight
        breakdown["month_usage_penalty"] = -metrics.month_utilization * w.month_usage_weight

        breakdown["success_rate"] = metrics.success_rate * w.success_rate_weight

        latency_penalty = min(
            metrics.avg_latency_ms / 1000 * w.latency_penalty_per_second,
            w.max_latency_penalty,
        )
        breakdown["latency_penalty"] = -latency_penalty

        breakdown["error_penalty"] = -metrics.consecutive_errors * w.consecutive_error_weight

        stability_bonus = 0.0
        if metrics.sample_count > w.stability_min_samples:
            stability_bonus = max(0.0, 100 - metrics.latency_variance / 100) * w.stability_weight
        breakdown["stability_bonus"] = stability_bonus

        total = max(0.0, sum(breakdown.values()))
        return total, breakdown


class LoadBalancer:
    """
    Picks the best provider for a request.

    Candidates are the registered providers that are healthy and still
    under their quota margin. An eligible preferred provider wins
    outright; otherwise a required specialty filters the set strictly
    and the highest score wins.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        quota: QuotaTracker,
        health: HealthRegistry,
        scorer: Optional[BaseScorer] = None,
    ):
        self._registry = registry
        self._quota = quota
        self._health = health
        self.scorer = scorer or PriorityScorer()

    def metrics_for(self, config: ProviderConfig) -> ProviderMetrics:
        usage = self._quota.usage(config.name)
        snapshot = self._health.get_tracker(config.name).get_snapshot()
        return ProviderMetrics(
            provider=config.name,
            priority=config.priority,
            minute_utilization=usage.utilization(QuotaPeriod.MINUTE),
            day_utilization=usage.utilization(QuotaPeriod.DAY),
            month_utilization=usage.utilization(QuotaPeriod.MONTH),
            success_rate=snapshot.success_rate,
            avg_latency_ms=snapshot.latency_stats.avg_ms,
            consecutive_errors=snapshot.consecutive_errors,
            latency_variance=snapshot.latency_stats.variance,
            sample_count=snapshot.latency_stats.sample_count,
        )

    def score_provider(self, config: ProviderConfig) -> ScoredCandidate:
        total, breakdown = self.scorer.score(self.metrics_for(config))
        return ScoredCandidate(provider=config, score=total, breakdown=breakdown)

    def eligible(self, exclude: Iterable[str] = (), method: Optional[str] = None) -> List[ProviderConfig]:
        """
        Healthy, quota-eligible providers in registration order.

        With `method`, quota room is checked for that method's credit cost.
        """
        excluded = set(exclude)
        return [
            p for p in self._registry.list()
            if p.name not in excluded
            and self._health.is_healthy(p.name)
            and self._quota.can_accept(p.name, self._quota.cost_of(p.name, method))
        ]

    def rank(
        self,
        options: Optional[RequestOptions] = None,
        exclude: Iterable[str] = (),
        method: Optional[str] = None,
    ) -> List[ScoredCandidate]:
        """Score every eligible candidate, best first."""
        candidates = self.eligible(exclude, method)
        specialty = options.required_specialty if options else None
        if specialty:
            candidates = [p for p in candidates if p.has_specialty(specialty)]

        scored = [self.score_provider(p) for p in candidates]
        # Equal scores fall back to registration order
        scored.sort(key=lambda c: (-c.score, self._registry.order_of(c.name)))
        return scored

    def select_best(
        self,
        options: Optional[RequestOptions] = None,
        exclude: Iterable[str] = (),
        method: Optional[str] = None,
    ) -> Optional[ScoredCandidate]:
        """
        Select the best candidate, or None when nothing is eligible.

        Args:
            options: Preference and specialty for this request
            exclude: Provider names already tried by this call
            method: JSON-RPC method, so quota room reflects its credit cost
        """
        exclude = set(exclude)
        preferred = options.preferred_provider if options else None

        if preferred and preferred not in exclude:
            for candidate in self.eligible(exclude, method):
                if candidate.name == preferred:
                    selected = self.score_provider(candidate)
                    selected.preferred = True
                    logger.debug("Preferred provider selected", provider=preferred)
                    return selected

        ranked = self.rank(options, exclude, method)
        if not ranked:
            return None

        best = ranked[0]
        logger.debug(
            "Provider selected",
            provider=best.name,
            score=round(best.score, 2),
            candidates=len(ranked),
        )
        return best
