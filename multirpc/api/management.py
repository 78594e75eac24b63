"""
multirpc - Management API

Introspection and operator endpoints for a running router.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..observability.logging import get_logger
from ..observability.metrics import metrics_endpoint
from ..routing.router import RpcRouter
from .dependencies import get_rpc_router
from .models import HealthResponse, MarkUnhealthyRequest, ProviderListResponse, RpcCallRequest

logger = get_logger(__name__)

router = APIRouter(tags=["management"])


# ============================================================
# Liveness and metrics
# ============================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(rpc_router: RpcRouter = Depends(get_rpc_router)):
    """
    Liveness plus provider counts.

    Reports "degraded" while no provider is in rotation.
    """
    metrics = rpc_router.get_metrics()
    healthy = metrics["healthy_providers"]
    return HealthResponse(
        status="healthy" if healthy > 0 else "degraded",
        version=__version__,
        running=rpc_router.running,
        healthy_providers=healthy,
        total_providers=metrics["total_providers"],
        primary_provider=metrics["primary_provider"],
    )


@router.get("/metrics")
async def prometheus_metrics(rpc_router: RpcRouter = Depends(get_rpc_router)):
    """Prometheus text exposition of the router's registry."""
    return metrics_endpoint(rpc_router.metrics.registry)


@router.get("/v1/metrics/summary")
async def metrics_summary(rpc_router: RpcRouter = Depends(get_rpc_router)):
    """Aggregate router statistics."""
    return rpc_router.get_metrics()


# ============================================================
# Providers
# ============================================================

@router.get("/v1/providers", response_model=ProviderListResponse)
async def list_providers(rpc_router: RpcRouter = Depends(get_rpc_router)):
    return ProviderListResponse(data=rpc_router.get_provider_stats())


@router.post("/v1/providers/health-check")
async def run_health_check(rpc_router: RpcRouter = Depends(get_rpc_router)):
    """Probe every provider now."""
    results = await rpc_router.perform_health_check()
    return {
        "object": "list",
        "data": [result.to_dict() for result in results],
        "healthy_providers": sum(1 for result in results if result.is_healthy),
    }


@router.post("/v1/providers/{name}/mark-unhealthy")
async def mark_provider_unhealthy(
    name: str,
    body: Optional[MarkUnhealthyRequest] = None,
    rpc_router: RpcRouter = Depends(get_rpc_router),
):
    reason = body.reason if body else MarkUnhealthyRequest().reason
    rpc_router.mark_unhealthy(name, reason)
    return {"provider": name, "is_healthy": False, "reason": reason}


@router.post("/v1/providers/{name}/mark-healthy")
async def mark_provider_healthy(name: str, rpc_router: RpcRouter = Depends(get_rpc_router)):
    rpc_router.mark_healthy(name)
    return {"provider": name, "is_healthy": True}


# ============================================================
# RPC pass-through
# ============================================================

def _envelope_status(response) -> int:
    if response.success:
        return 200
    if response.error_code == "invalid_params":
        return 400
    return 502


@router.post("/v1/rpc")
async def rpc_call(
    body: RpcCallRequest,
    request: Request,
    rpc_router: RpcRouter = Depends(get_rpc_router),
):
    """
    Route one JSON-RPC call through the router.

    The envelope is returned as-is. Failed calls answer 502 with the
    failure envelope so clients can tell them apart without parsing;
    params the router rejects answer 400.
    """
    response = await rpc_router.make_request(body.method, body.params, body.to_options())

    headers = {
        "X-Request-ID": getattr(request.state, "request_id", "") or response.request_id,
        "X-Provider": response.provider,
    }
    if not response.success and response.error_code:
        headers["X-Error-Code"] = response.error_code

    return JSONResponse(
        status_code=_envelope_status(response),
        content=response.to_dict(),
        headers=headers,
    )
