"""
multirpc - Management API Server

FastAPI application exposing a router's health, statistics, metrics and
an RPC pass-through.

Usage:
    from multirpc.server import create_app

    app = create_app(router)              # explicit router
    app = create_app()                    # router built from the environment

    uvicorn multirpc.server:app
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api import management_router
from .core.config import build_router_from_env
from .core.errors import RouterException
from .observability import ObservabilityMiddleware, get_logger, setup_observability
from .routing.router import RpcRouter


def create_app(
    router: Optional[RpcRouter] = None,
    observability: bool = True,
    start_router: bool = True,
) -> FastAPI:
    """
    Build the management application.

    Args:
        router: Router to serve; built from the environment at startup if None
        observability: Run setup_observability() at startup
        start_router: Start the router's background tasks for the app's lifetime
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        components = {}
        if observability:
            components = setup_observability(
                service_name="multirpc",
                service_version=__version__,
                otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
            )

        logger = get_logger("multirpc.server")

        if app.state.rpc_router is None:
            app.state.rpc_router = build_router_from_env()

        rpc_router: RpcRouter = app.state.rpc_router
        if start_router:
            await rpc_router.start()

        logger.info(
            "multirpc server ready",
            providers=[p.name for p in rpc_router.providers],
            primary_provider=rpc_router.primary_provider,
        )

        yield

        if start_router:
            await rpc_router.shutdown()

        if "tracing" in components:
            components["tracing"].shutdown()

        logger.info("multirpc server stopped")

    app = FastAPI(
        title="multirpc",
        description="Multi-provider JSON-RPC router management API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.rpc_router = router

    app.add_middleware(
        ObservabilityMiddleware,
        service_name="multirpc",
        metrics=router.metrics if router is not None else None,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(management_router)

    app.add_exception_handler(RouterException, router_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)

    return app


# ============================================================
# Error handlers
# ============================================================

async def router_exception_handler(request: Request, exc: RouterException):
    """Canonical error body for router errors."""
    request_id = exc.error.request_id or getattr(request.state, "request_id", "")
    headers = {
        "X-Request-ID": request_id,
        "X-Error-Type": exc.error.type.value,
        "X-Error-Code": exc.error.code,
    }

    if exc.error.retry_after:
        headers["Retry-After"] = str(exc.error.retry_after)

    if exc.error.provider:
        headers["X-Provider"] = exc.error.provider

    content = exc.error.to_dict()
    content["error"]["request_id"] = request_id

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = getattr(request.state, "request_id", "") or f"req_{uuid.uuid4().hex[:12]}"

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": "http_error",
                "message": str(exc.detail),
                "type": "config_error" if exc.status_code < 500 else "infra_error",
                "request_id": request_id,
                "retryable": exc.status_code >= 500,
            }
        },
        headers={"X-Request-ID": request_id},
    )


# `uvicorn multirpc.server:app`; the router is built from the environment at startup
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "multirpc.server:app",
        host=os.getenv("MULTIRPC_HOST", "0.0.0.0"),
        port=int(os.getenv("MULTIRPC_PORT", "8000")),
    )
