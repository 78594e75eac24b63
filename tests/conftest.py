"""
multirpc - Pytest Configuration

Shared fixtures:
- Provider config factory
- Manual clock (virtual time)
- Scripted JSON-RPC upstream served through httpx.MockTransport
- Router factory wired to the above with a fresh metrics registry
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
from prometheus_client import CollectorRegistry

from multirpc.core.clock import ManualClock
from multirpc.core.http_client import RpcTransport
from multirpc.core.models import CacheConfig, HealthCheckConfig, ProviderConfig, RetryConfig
from multirpc.observability.metrics import MetricsCollector
from multirpc.routing.router import RpcRouter


# ============================================================
# Providers
# ============================================================

def provider_host(name: str) -> str:
    return f"{name.lower()}.rpc.test"


def make_provider(name: str, priority: int = 1, **kwargs) -> ProviderConfig:
    """Generic provider whose base URL host is derived from its name."""
    kwargs.setdefault("base_url", f"https://{provider_host(name)}/")
    kwargs.setdefault("api_key", f"{name.lower()}-key")
    return ProviderConfig(name=name, priority=priority, **kwargs)


@pytest.fixture
def provider_factory():
    return make_provider


# ============================================================
# Clock and metrics
# ============================================================

@pytest.fixture
def clock():
    """Virtual clock; sleeps complete at once and are recorded."""
    return ManualClock(auto_advance=True)


@pytest.fixture
def manual_clock():
    """Virtual clock that only moves when the test advances it."""
    return ManualClock()


@pytest.fixture
def metrics():
    """Collector on its own registry so tests never collide."""
    return MetricsCollector(registry=CollectorRegistry())


# ============================================================
# Scripted upstream
# ============================================================

DEFAULT_RESULTS: Dict[str, Any] = {
    "getSlot": 250_000_000,
    "getBlockHeight": 230_000_000,
    "getBalance": {"context": {"slot": 250_000_000}, "value": 1_500_000_000},
    "getLatestBlockhash": {"context": {"slot": 1}, "value": {"blockhash": "abc", "lastValidBlockHeight": 2}},
}

ScriptEntry = Union[httpx.Response, Exception, Dict[str, Any], Callable[[httpx.Request], httpx.Response]]


class ScriptedUpstream:
    """
    Fake JSON-RPC providers keyed by host.

    Each host has a queue of scripted replies; once it is empty the host
    answers with a successful result from DEFAULT_RESULTS. A reply is
    an httpx.Response, an exception to raise, a dict used as the
    JSON-RPC "result", or a callable receiving the request.
    """

    def __init__(self):
        self.scripts: Dict[str, List[ScriptEntry]] = {}
        self.always: Dict[str, ScriptEntry] = {}
        self.calls: List[Dict[str, Any]] = []

    def script(self, provider_name: str, *replies: ScriptEntry) -> None:
        self.scripts.setdefault(provider_host(provider_name), []).extend(replies)

    def fail_always(self, provider_name: str, reply: ScriptEntry) -> None:
        self.always[provider_host(provider_name)] = reply

    def calls_to(self, provider_name: str) -> List[Dict[str, Any]]:
        host = provider_host(provider_name)
        return [c for c in self.calls if c["host"] == host]

    def methods_to(self, provider_name: str) -> List[str]:
        return [c["method"] for c in self.calls_to(provider_name)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        host = request.url.host
        self.calls.append({
            "host": host,
            "url": str(request.url),
            "method": payload.get("method"),
            "params": payload.get("params"),
            "id": payload.get("id"),
            "headers": dict(request.headers),
        })

        if host in self.always:
            reply = self.always[host]
        elif self.scripts.get(host):
            reply = self.scripts[host].pop(0)
        else:
            reply = {"result": DEFAULT_RESULTS.get(payload.get("method"), "ok")}

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        if callable(reply):
            return reply(request)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload.get("id"), **reply})


def rpc_result(value: Any) -> Dict[str, Any]:
    return {"result": value}


def rpc_error(code: int, message: str) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message}}


@pytest.fixture
def upstream():
    return ScriptedUpstream()


@pytest.fixture
def rpc_transport(upstream):
    return RpcTransport(transport=httpx.MockTransport(upstream.handler))


# ============================================================
# Router
# ============================================================

@pytest.fixture
def router_factory(clock, rpc_transport, metrics):
    """
    Build a router on the virtual clock and scripted upstream.

    Usage:
        router = router_factory([make_provider("A", 5), make_provider("B", 3)])
    """
    def _build(
        providers: Optional[List[ProviderConfig]] = None,
        retry_config: Optional[RetryConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        health_config: Optional[HealthCheckConfig] = None,
        **kwargs,
    ) -> RpcRouter:
        return RpcRouter(
            providers=providers,
            retry_config=retry_config,
            cache_config=cache_config,
            health_config=health_config,
            clock=kwargs.pop("clock", clock),
            transport=kwargs.pop("transport", rpc_transport),
            metrics=kwargs.pop("metrics", metrics),
            **kwargs,
        )

    return _build


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield
