"""
multirpc - API Layer

Management and introspection endpoints for a running router.
"""

from .management import router as management_router
from .models import HealthResponse, MarkUnhealthyRequest, ProviderListResponse, RpcCallRequest
from .dependencies import get_rpc_router

__all__ = [
    "management_router",
    "HealthResponse",
    "MarkUnhealthyRequest",
    "ProviderListResponse",
    "RpcCallRequest",
    "get_rpc_router",
]
