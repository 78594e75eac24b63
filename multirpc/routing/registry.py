"""
multirpc - Provider Registry

Ordered set of provider configurations. Registration order is kept and
used to break scoring ties deterministically.
"""

from threading import Lock
from typing import Dict, Iterator, List

from ..core.errors import DuplicateProviderError, ProviderNotFoundError
from ..core.models import ProviderConfig


class ProviderRegistry:
    """Registered providers, in registration order."""

    def __init__(self):
        self._providers: Dict[str, ProviderConfig] = {}
        self._order: Dict[str, int] = {}
        self._lock = Lock()

    def register(self, config: ProviderConfig) -> None:
        with self._lock:
            if config.name in self._providers:
                raise DuplicateProviderError(config.name)
            self._order[config.name] = len(self._order)
            self._providers[config.name] = config

    def get(self, name: str) -> ProviderConfig:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotFoundError(name)

    def list(self) -> List[ProviderConfig]:
        with self._lock:
            return list(self._providers.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._providers)

    def order_of(self, name: str) -> int:
        try:
            return self._order[name]
        except KeyError:
            raise ProviderNotFoundError(name)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self.list())
