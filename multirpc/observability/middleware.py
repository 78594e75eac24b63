"""
multirpc - Observability Middleware

Middleware for the management API that combines metrics, tracing and
logging, plus one-call setup of the whole observability stack.

Usage:
    from multirpc.observability import setup_observability, ObservabilityMiddleware

    setup_observability(service_name="multirpc")
    app.add_middleware(ObservabilityMiddleware)
"""

import os
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import Request, Response
from opentelemetry.trace import Status, StatusCode
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from .logging import LogContext, get_logger, setup_logging
from .metrics import MetricsCollector, get_metrics, setup_metrics
from .tracing import TraceContext, get_tracing_manager, setup_tracing


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """
    Server span, request metrics and a completion log line per request.

    The X-Request-ID header is honored when present and echoed back
    together with the trace and span ids.
    """

    # Paths to exclude from detailed observability
    EXCLUDE_PATHS = {"/metrics", "/openapi.json", "/docs", "/redoc"}

    def __init__(
        self,
        app: ASGIApp,
        service_name: str = "multirpc",
        exclude_paths: Optional[set] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(app)
        self.service_name = service_name
        self.exclude_paths = exclude_paths if exclude_paths is not None else self.EXCLUDE_PATHS
        self.metrics = metrics
        self.logger = get_logger("multirpc.observability.middleware")

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        metrics = self.metrics or get_metrics()
        tracing = get_tracing_manager()
        headers = dict(request.headers)

        request_id = headers.get("x-request-id", "")
        if not request_id:
            request_id = f"req_{uuid.uuid4().hex[:12]}"

        endpoint = self._get_endpoint_group(request.url.path)
        start_time = time.perf_counter()

        with tracing.start_server_span(
            name=f"{request.method} {endpoint}",
            headers=headers,
            attributes={
                "http.method": request.method,
                "http.route": request.url.path,
                "multirpc.request_id": request_id,
            },
        ) as span:
            trace_ctx = TraceContext.from_span(span)

            LogContext.set_current(
                LogContext(
                    request_id=request_id,
                    trace_id=trace_ctx.trace_id,
                    span_id=trace_ctx.span_id,
                )
            )
            request.state.request_id = request_id
            request.state.trace_id = trace_ctx.trace_id

            try:
                response = await call_next(request)
            except Exception as e:
                duration_seconds = time.perf_counter() - start_time
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                metrics.record_api_request(endpoint, 500, duration_seconds)
                self.logger.exception(
                    "Request failed with exception",
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=round(duration_seconds * 1000, 2),
                )
                raise
            finally:
                LogContext.clear()

            duration_seconds = time.perf_counter() - start_time
            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
            else:
                span.set_status(Status(StatusCode.OK))

            metrics.record_api_request(endpoint, response.status_code, duration_seconds)
            self._log_request(request, response, duration_seconds * 1000, request_id)

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-Id"] = trace_ctx.trace_id
            response.headers["X-Span-Id"] = trace_ctx.span_id
            return response

    def _get_endpoint_group(self, path: str) -> str:
        """Group endpoints for metrics aggregation."""
        if path.startswith("/v1/providers"):
            return "/v1/providers"
        if path.startswith("/v1/"):
            return path
        return path or "/"

    def _log_request(self, request: Request, response: Response, duration_ms: float, request_id: str):
        status_code = response.status_code
        log_data = {
            "http_method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "request_id": request_id,
        }

        if status_code >= 500:
            self.logger.error("Request completed with server error", **log_data)
        elif status_code >= 400:
            self.logger.warning("Request completed with client error", **log_data)
        else:
            self.logger.info("Request completed", **log_data)


_observability_initialized = False


def setup_observability(
    service_name: str = "multirpc",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    log_level: str = "INFO",
    metrics_enabled: bool = True,
    tracing_enabled: bool = True,
    logging_enabled: bool = True,
) -> Dict[str, Any]:
    """
    Setup logging, metrics and tracing. Safe to call more than once.

    LOG_LEVEL, LOG_FORMAT and OTEL_EXPORTER_OTLP_ENDPOINT override the
    arguments when set.

    Returns:
        Dict with the initialized components
    """
    global _observability_initialized

    result: Dict[str, Any] = {}

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    log_level = os.getenv("LOG_LEVEL", log_level)

    # Logging first, the other components log
    if logging_enabled:
        json_output = os.getenv("LOG_FORMAT", "json").lower() == "json"
        setup_logging(level=log_level, json_output=json_output)
        result["logging"] = True

    if metrics_enabled:
        result["metrics"] = setup_metrics()

    if tracing_enabled:
        result["tracing"] = setup_tracing(
            service_name=service_name,
            service_version=service_version,
            otlp_endpoint=otlp_endpoint,
        )

    if not _observability_initialized:
        get_logger("multirpc.observability").info(
            "Observability initialized",
            service_name=service_name,
            service_version=service_version,
            metrics_enabled=metrics_enabled,
            tracing_enabled=tracing_enabled,
            otlp_endpoint=otlp_endpoint or "none",
        )
        _observability_initialized = True

    return result
