"""
multirpc - OpenTelemetry Tracing

Client spans around every outbound provider call, plus server spans for
the management API.

Usage:
    from multirpc.observability.tracing import setup_tracing, trace_provider_call

    setup_tracing(service_name="multirpc")

    with trace_provider_call("alchemy", "getSlot") as span:
        ...
"""

import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider, Span
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.propagate import set_global_textmap, inject, extract
from opentelemetry.trace import SpanKind, Status, StatusCode
from opentelemetry.context import Context


@dataclass
class TraceContext:
    """Trace identifiers of a span, hex-encoded."""
    trace_id: str
    span_id: str
    trace_flags: int = 1

    @classmethod
    def from_span(cls, span: Span) -> "TraceContext":
        ctx = span.get_span_context()
        return cls(
            trace_id=format(ctx.trace_id, "032x"),
            span_id=format(ctx.span_id, "016x"),
            trace_flags=ctx.trace_flags,
        )


class TracingManager:
    """
    Owns the tracer provider and exporters.

    Singleton for global access; tests reset it with reset_instance().
    """

    _instance: Optional["TracingManager"] = None

    def __init__(
        self,
        service_name: str = "multirpc",
        service_version: str = "1.0.0",
        otlp_endpoint: Optional[str] = None,
        console_export: bool = False,
    ):
        self.service_name = service_name
        self.service_version = service_version

        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": os.getenv("MULTIRPC_ENV", "local"),
        })

        self.provider = TracerProvider(resource=resource)

        if otlp_endpoint:
            # Needs the "otlp" extra (opentelemetry-exporter-otlp-proto-grpc)
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            self.provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

        if console_export:
            self.provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

        trace.set_tracer_provider(self.provider)
        set_global_textmap(TraceContextTextMapPropagator())

        # Bound to our own provider so spans land here even if the
        # global provider was set elsewhere first
        self.tracer = self.provider.get_tracer(service_name, service_version)

    @classmethod
    def get_instance(cls) -> "TracingManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        cls._instance = None

    def get_tracer(self) -> trace.Tracer:
        return self.tracer

    def extract_context(self, headers: Dict[str, str]) -> Context:
        normalized = {k.lower(): v for k, v in headers.items()}
        return extract(normalized)

    def inject_context(self, headers: Dict[str, str]) -> Dict[str, str]:
        """Inject the current trace context into outgoing headers."""
        inject(headers)
        return headers

    def start_server_span(
        self,
        name: str,
        headers: Dict[str, str],
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """Server span continuing any incoming traceparent."""
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.SERVER,
            attributes=attributes,
            context=self.extract_context(headers),
        )

    def start_client_span(
        self,
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """Client span for calls to providers."""
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.CLIENT,
            attributes=attributes,
        )

    def record_exception(self, exception: Exception):
        span = trace.get_current_span()
        if span:
            span.record_exception(exception)
            span.set_status(Status(StatusCode.ERROR, str(exception)))

    def shutdown(self):
        self.provider.shutdown()


_tracing_instance: Optional[TracingManager] = None


def setup_tracing(
    service_name: str = "multirpc",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
) -> TracingManager:
    """
    Setup tracing. Call once at application startup.

    OTEL_EXPORTER_OTLP_ENDPOINT and OTEL_CONSOLE_EXPORT are honored when
    the arguments are not given.
    """
    global _tracing_instance

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    _tracing_instance = TracingManager(
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint,
        console_export=console_export,
    )
    TracingManager._instance = _tracing_instance
    return _tracing_instance


def get_tracing_manager() -> TracingManager:
    global _tracing_instance
    if _tracing_instance is None:
        _tracing_instance = TracingManager.get_instance()
    return _tracing_instance


def get_tracer() -> trace.Tracer:
    return get_tracing_manager().get_tracer()


@contextmanager
def trace_provider_call(provider: str, method: str, request_id: str = ""):
    """
    Client span around one JSON-RPC call to a provider.

    Usage:
        with trace_provider_call("helius", "getBalance") as span:
            result = await transport.post(...)
            span.set_attribute("rpc.latency_ms", latency_ms)
    """
    tracing = get_tracing_manager()

    with tracing.start_client_span(
        name=f"{provider}.{method}",
        attributes={
            "rpc.system": "jsonrpc",
            "rpc.method": method,
            "multirpc.provider": provider,
            "multirpc.request_id": request_id,
        },
    ) as span:
        yield span
