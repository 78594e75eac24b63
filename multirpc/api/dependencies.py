"""
multirpc - API Dependencies

Shared dependencies for the management routes.
"""

from fastapi import Request

from ..core.errors import ErrorDetails, ErrorType, InfraError
from ..routing.router import RpcRouter


def get_rpc_router(request: Request) -> RpcRouter:
    """
    Router bound to the application.

    create_app() stores it on app.state; a missing router means the app
    was built without one and startup has not finished.
    """
    router = getattr(request.app.state, "rpc_router", None)
    if router is None:
        raise InfraError(
            ErrorDetails(
                code="service_unavailable",
                message="Router not initialized. Server may be starting up.",
                type=ErrorType.INFRA,
                retryable=True,
                retry_after=5,
            ),
            status_code=503,
        )
    return router
