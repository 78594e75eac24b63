"""
multirpc - Multi-Provider JSON-RPC Router

Routes JSON-RPC calls across interchangeable blockchain data providers
with quota tracking, health checks, retries, failover and caching.
"""

__version__ = "1.0.0"
__author__ = "multirpc"

from .core.models import (
    CacheConfig,
    HealthCheckConfig,
    ProviderConfig,
    ProviderKind,
    RequestOptions,
    RetryConfig,
    RpcResponse,
)
from .routing.router import RpcRouter

__all__ = [
    "CacheConfig",
    "HealthCheckConfig",
    "ProviderConfig",
    "ProviderKind",
    "RequestOptions",
    "RetryConfig",
    "RpcResponse",
    "RpcRouter",
]
