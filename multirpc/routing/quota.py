"""
multirpc - Provider Quota Tracker

Per-provider minute/day/month credit windows with a conservative
safety margin. Most methods cost one credit; heavy methods can be
weighted through per-method costs.

Features:
- Fixed windows that roll forward by whole window lengths (no drift)
- Idempotent rollover: checking twice in the same instant is a no-op
- Atomic check-and-increment per provider (one lock per provider)
"""

import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, SystemClock
from ..core.errors import ProviderNotFoundError
from ..core.models import ProviderConfig, QuotaPeriod
from ..observability.logging import get_logger

logger = get_logger(__name__)

# Only this fraction of each advertised ceiling is ever used
DEFAULT_SAFETY_MARGIN = 0.9


@dataclass
class QuotaWindow:
    """One fixed window counter."""
    period: QuotaPeriod
    limit: int
    reset_at: float
    count: int = 0

    @property
    def length(self) -> int:
        return self.period.seconds

    def roll(self, now: float) -> bool:
        """
        Reset the counter if the window has elapsed.

        reset_at advances from its previous value by whole window lengths,
        never from `now`. Returns True if a reset happened.
        """
        if now < self.reset_at:
            return False
        elapsed_windows = math.floor((now - self.reset_at) / self.length) + 1
        self.reset_at += elapsed_windows * self.length
        self.count = 0
        return True

    def effective_limit(self, margin: float) -> float:
        return self.limit * margin

    def has_room(self, margin: float, cost: int = 1) -> bool:
        # Every credit of the call must start below the margin
        return self.count + cost - 1 < self.effective_limit(margin)

    @property
    def utilization_percent(self) -> float:
        if self.limit <= 0:
            return 0.0
        return (self.count / self.limit) * 100


@dataclass
class WindowUsage:
    """Snapshot of one window."""
    period: QuotaPeriod
    count: int
    limit: int
    effective_limit: float
    utilization_percent: float
    reset_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "limit": self.limit,
            "effective_limit": self.effective_limit,
            "utilization_percent": round(self.utilization_percent, 2),
            "reset_at": self.reset_at,
        }


@dataclass
class QuotaUsage:
    """Snapshot of every window for one provider."""
    provider: str
    total_requests: int
    total_credits: int = 0
    windows: Dict[QuotaPeriod, WindowUsage] = field(default_factory=dict)

    def utilization(self, period: QuotaPeriod) -> float:
        return self.windows[period].utilization_percent

    def count(self, period: QuotaPeriod) -> int:
        return self.windows[period].count

    @property
    def can_accept(self) -> bool:
        return all(w.count < w.effective_limit for w in self.windows.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "total_requests": self.total_requests,
            "total_credits": self.total_credits,
            "windows": {p.value: w.to_dict() for p, w in self.windows.items()},
        }


class QuotaWindowSet:
    """Minute, day and month windows for one provider, under one lock."""

    def __init__(self, config: ProviderConfig, now: float):
        self.provider = config.name
        self.windows: Dict[QuotaPeriod, QuotaWindow] = {
            period: QuotaWindow(
                period=period,
                limit=config.quota_limit(period),
                reset_at=now + period.seconds,
            )
            for period in QuotaPeriod
        }
        self.method_costs = dict(config.method_costs)
        self.total_requests = 0
        self.total_credits = 0
        self.lock = threading.Lock()

    # Callers must hold self.lock for the methods below

    def _roll(self, now: float) -> List[QuotaPeriod]:
        return [p for p, w in self.windows.items() if w.roll(now)]

    def _has_room(self, margin: float, cost: int = 1) -> bool:
        return all(w.has_room(margin, cost) for w in self.windows.values())

    def _increment(self, cost: int = 1) -> None:
        for window in self.windows.values():
            window.count += cost
        self.total_requests += 1
        self.total_credits += cost

    def _snapshot(self, margin: float) -> QuotaUsage:
        return QuotaUsage(
            provider=self.provider,
            total_requests=self.total_requests,
            total_credits=self.total_credits,
            windows={
                p: WindowUsage(
                    period=p,
                    count=w.count,
                    limit=w.limit,
                    effective_limit=w.effective_limit(margin),
                    utilization_percent=w.utilization_percent,
                    reset_at=w.reset_at,
                )
                for p, w in self.windows.items()
            },
        )


class QuotaTracker:
    """
    Tracks credit usage against each provider's quota ceilings.

    A call costing `cost` credits is admitted while every window satisfies
    `count + cost - 1 < limit * safety_margin`; for one-credit calls that
    is simply `count < limit * safety_margin`.

    Costs come from the provider's own `method_costs`, then from the
    tracker-wide `method_costs`, then default to 1.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        method_costs: Optional[Dict[str, int]] = None,
    ):
        self._clock = clock or SystemClock()
        self.safety_margin = safety_margin
        self.method_costs: Dict[str, int] = dict(method_costs or {})
        self._sets: Dict[str, QuotaWindowSet] = {}

    def register(self, config: ProviderConfig) -> QuotaWindowSet:
        window_set = QuotaWindowSet(config, self._clock.time())
        self._sets[config.name] = window_set
        return window_set

    def _get(self, name: str) -> QuotaWindowSet:
        try:
            return self._sets[name]
        except KeyError:
            raise ProviderNotFoundError(name)

    def _roll_locked(self, window_set: QuotaWindowSet) -> None:
        rolled = window_set._roll(self._clock.time())
        if rolled:
            logger.debug(
                "Quota windows reset",
                provider=window_set.provider,
                windows=[p.value for p in rolled],
            )

    def cost_of(self, name: str, method: Optional[str]) -> int:
        """Credits one call to `method` uses on provider `name`."""
        if not method:
            return 1
        window_set = self._get(name)
        if method in window_set.method_costs:
            return window_set.method_costs[method]
        return self.method_costs.get(method, 1)

    def can_accept(self, name: str, cost: int = 1) -> bool:
        """True if a call of `cost` credits fits under every window's margin."""
        window_set = self._get(name)
        with window_set.lock:
            self._roll_locked(window_set)
            return window_set._has_room(self.safety_margin, cost)

    def record_usage(self, name: str, cost: int = 1) -> None:
        """Count one request of `cost` credits against every window and the lifetime totals."""
        window_set = self._get(name)
        with window_set.lock:
            self._roll_locked(window_set)
            window_set._increment(cost)

    def try_acquire(self, name: str, cost: int = 1) -> bool:
        """
        Atomically check eligibility and count the request.

        Concurrent callers can never jointly push a window past its
        ceiling: the check and the increment happen under the same lock.
        """
        window_set = self._get(name)
        with window_set.lock:
            self._roll_locked(window_set)
            if not window_set._has_room(self.safety_margin, cost):
                return False
            window_set._increment(cost)
            return True

    def usage(self, name: str) -> QuotaUsage:
        window_set = self._get(name)
        with window_set.lock:
            self._roll_locked(window_set)
            return window_set._snapshot(self.safety_margin)

    def check_all(self) -> Dict[str, QuotaUsage]:
        """Roll every provider's windows. Returns fresh snapshots."""
        return {name: self.usage(name) for name in list(self._sets)}

    def names(self) -> List[str]:
        return list(self._sets)
