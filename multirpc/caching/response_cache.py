"""
multirpc - Response Cache

In-memory cache of successful RPC results keyed by (method, params).

- Per-method TTL with a default fallback
- Expired entries are deleted lazily on lookup, plus a periodic sweep
- At capacity: purge expired entries, then evict the least-hit ones
- Unserializable params fail open (treated as a miss, never stored)
"""

import copy
import json
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, SystemClock
from ..core.models import CacheConfig
from ..observability.logging import get_logger

logger = get_logger(__name__)


class CacheKeyError(Exception):
    """Params could not be serialized into a cache key."""
    pass


def make_cache_key(method: str, params: Optional[List[Any]]) -> str:
    """
    Deterministic key for a call.

    Dict keys are sorted, so logically equal params map to one key.
    """
    try:
        encoded = json.dumps(
            params if params is not None else [],
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
    except (TypeError, ValueError) as e:
        raise CacheKeyError(f"Cannot build cache key for {method}: {e}") from e
    return f"{method}:{encoded}"


@dataclass
class CacheEntry:
    """A cached result."""
    data: Any
    created_at: float
    expires_at: float
    provider: str
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResponseCache:
    """
    Thread-safe TTL cache for RPC results.

    Usage:
        cache = ResponseCache(CacheConfig())
        cache.set("getBalance", [address], 1500, provider="alchemy")
        entry = cache.get("getBalance", [address])
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Optional[Clock] = None):
        self.config = config or CacheConfig()
        self._clock = clock or SystemClock()
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, method: str, params: Optional[List[Any]] = None) -> Optional[CacheEntry]:
        """
        Look up a cached result.

        Returns a copy of the entry, or None if absent or expired.
        """
        try:
            key = make_cache_key(method, params)
        except CacheKeyError as e:
            logger.debug("Cache lookup skipped", rpc_method=method, error=str(e))
            with self._lock:
                self._misses += 1
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock.time()):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None

            entry.hit_count += 1
            self._hits += 1
            return CacheEntry(
                data=copy.deepcopy(entry.data),
                created_at=entry.created_at,
                expires_at=entry.expires_at,
                provider=entry.provider,
                hit_count=entry.hit_count,
            )

    def set(self, method: str, params: Optional[List[Any]], data: Any, provider: str) -> bool:
        """
        Store a result. Returns False when the key could not be built.
        """
        try:
            key = make_cache_key(method, params)
        except CacheKeyError as e:
            logger.debug("Cache store skipped", rpc_method=method, error=str(e))
            return False

        now = self._clock.time()
        entry = CacheEntry(
            data=copy.deepcopy(data),
            created_at=now,
            expires_at=now + self.config.ttl_for(method),
            provider=provider,
        )

        with self._lock:
            if key not in self._entries and len(self._entries) >= self.config.max_size:
                self._make_room(now)
            self._entries[key] = entry
        return True

    def _make_room(self, now: float) -> None:
        """Caller holds the lock."""
        self._purge_expired(now)
        if len(self._entries) < self.config.max_size:
            return

        to_remove = max(1, int(self.config.max_size * self.config.eviction_fraction))
        # dicts keep insertion order, so the stable sort favors evicting older entries
        victims = sorted(self._entries.items(), key=lambda item: item[1].hit_count)[:to_remove]
        for key, _ in victims:
            del self._entries[key]
        self._evictions += len(victims)

        logger.debug("Cache evicted entries", evicted=len(victims), size=len(self._entries))

    def _purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        return len(expired)

    def cleanup(self) -> int:
        """Sweep all expired entries. Returns how many were removed."""
        with self._lock:
            removed = self._purge_expired(self._clock.time())
        if removed:
            logger.debug("Cache cleanup", removed=removed, size=len(self))
        return removed

    def invalidate(self, method: str, params: Optional[List[Any]] = None) -> bool:
        try:
            key = make_cache_key(method, params)
        except CacheKeyError:
            return False
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self.config.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / lookups) * 100, 2) if lookups else 0.0,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
