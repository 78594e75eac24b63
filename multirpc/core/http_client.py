"""
multirpc - JSON-RPC HTTP Client

Outbound calls to providers:
- Per-kind URL and credential placement
- Hard per-call timeout, reported separately from upstream errors
- JSON-RPC envelope parsing and error classification
- Request correlation (X-Request-ID) and step logging

RequestExecutor sits on top of the transport and keeps the provider's
quota and runtime stats in step with every attempt.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .clock import Clock, SystemClock
from .errors import (
    ErrorDetails,
    ErrorType,
    InfraError,
    InvalidParamsError,
    NetworkError,
    QuotaExhaustedError,
    RATE_LIMIT_RPC_CODES,
    RateLimitedError,
    RouterException,
    RpcTimeoutError,
    UpstreamError,
    error_code_of,
)
from .models import AuthPlacement, ProviderConfig, ProviderKind, RpcRequest
from ..observability.logging import get_logger
from ..observability.tracing import get_tracing_manager, trace_provider_call

logger = get_logger(__name__)

USER_AGENT = "multirpc/1.0"


# ============================================================
# Request building
# ============================================================

def resolve_auth_placement(config: ProviderConfig) -> AuthPlacement:
    """Where the credential goes for this provider."""
    if config.auth_placement is not None:
        return config.auth_placement

    key_in_url = config.api_key in config.base_url

    if config.kind == ProviderKind.ALCHEMY:
        return AuthPlacement.NONE if key_in_url else AuthPlacement.PATH
    if config.kind == ProviderKind.HELIUS:
        return AuthPlacement.QUERY
    if config.kind == ProviderKind.QUICKNODE:
        # QuickNode endpoints usually embed the token in the URL
        return AuthPlacement.NONE if key_in_url else AuthPlacement.HEADER
    return AuthPlacement.HEADER


def build_provider_url(config: ProviderConfig) -> str:
    placement = resolve_auth_placement(config)

    if placement == AuthPlacement.PATH:
        return f"{config.base_url.rstrip('/')}/{config.api_key}"
    if placement == AuthPlacement.QUERY:
        return str(httpx.URL(config.base_url).copy_merge_params({"api-key": config.api_key}))
    return config.base_url


def build_auth_headers(config: ProviderConfig) -> Dict[str, str]:
    if resolve_auth_placement(config) == AuthPlacement.HEADER:
        return {"Authorization": f"Bearer {config.api_key}"}
    return {}


def encode_params(params: Any, method: str = "") -> List[Any]:
    """
    Check that params can travel as a JSON-RPC positional list.

    Returns the params as a list. Raises InvalidParamsError for anything
    that is not a list or tuple, or that the JSON encoder rejects.
    """
    if params is None:
        return []
    if not isinstance(params, (list, tuple)):
        raise InvalidParamsError(
            f"params must be a list, got {type(params).__name__}",
            method=method,
        )

    params = list(params)
    try:
        # Same encoder settings httpx uses for request bodies
        json.dumps(params, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidParamsError(f"params are not JSON serializable: {e}", method=method) from e
    return params


def build_rpc_payload(method: str, params: Optional[List[Any]], request_id: str) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": method,
        "params": list(params) if params is not None else [],
    }


def _summarize_payload(payload: Dict[str, Any]) -> str:
    """Short log-safe summary of a JSON-RPC payload."""
    params = payload.get("params") or []
    preview = str(params)
    if len(preview) > 100:
        preview = f"{preview[:50]}...({len(preview)} chars)"
    return f"{payload.get('method')} params={preview}"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


# ============================================================
# Transport
# ============================================================

@dataclass
class RpcResult:
    """Decoded `result` of a successful call plus response metadata."""
    result: Any
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


class RpcTransport:
    """
    POSTs JSON-RPC payloads to providers over one shared httpx client.

    Raises RpcTimeoutError, NetworkError, RateLimitedError or
    UpstreamError; never returns a failed call.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        default_timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._transport = transport
        self.default_timeout = default_timeout
        self.default_headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            **(headers or {}),
        }
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.default_timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def post(
        self,
        config: ProviderConfig,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> RpcResult:
        timeout = timeout or config.timeout_seconds
        request_id = str(payload.get("id", ""))
        headers = {**build_auth_headers(config), "X-Request-ID": request_id}
        get_tracing_manager().inject_context(headers)
        url = build_provider_url(config)

        logger.debug(
            f"STEP [rpc_call] POST {config.base_url} ({_summarize_payload(payload)})",
            provider=config.name,
            request_id=request_id,
        )

        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(url, json=payload, headers=headers, timeout=httpx.Timeout(timeout)),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            raise RpcTimeoutError(config.name, timeout, request_id=request_id)
        except httpx.TransportError as e:
            raise NetworkError(
                config.name,
                f"{type(e).__name__}: {e}" if str(e) else type(e).__name__,
                request_id=request_id,
            )

        return self._parse_response(config, response, request_id)

    def _parse_response(self, config: ProviderConfig, response: httpx.Response, request_id: str) -> RpcResult:
        status = response.status_code

        if status == 429:
            raise RateLimitedError(
                config.name,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                message=f"HTTP 429: {response.reason_phrase}",
                request_id=request_id,
            )

        if not response.is_success:
            raise UpstreamError(
                config.name,
                status,
                f"HTTP {status}: {response.reason_phrase}",
                request_id=request_id,
            )

        try:
            body = response.json()
        except ValueError:
            raise UpstreamError(
                config.name,
                status,
                "Invalid JSON-RPC response: body is not JSON",
                request_id=request_id,
                code="invalid_response",
                retryable=False,
            )

        if not isinstance(body, dict) or ("result" not in body and "error" not in body):
            raise UpstreamError(
                config.name,
                status,
                "Invalid JSON-RPC response: missing result",
                request_id=request_id,
                code="invalid_response",
                retryable=False,
            )

        rpc_error = body.get("error")
        if rpc_error is not None:
            if isinstance(rpc_error, dict):
                rpc_code = rpc_error.get("code")
                message = rpc_error.get("message") or str(rpc_error)
            else:
                rpc_code = None
                message = str(rpc_error)
            if not isinstance(rpc_code, int):
                rpc_code = None

            lowered = message.lower()
            if (rpc_code in RATE_LIMIT_RPC_CODES) or "rate limit" in lowered or "429" in lowered:
                raise RateLimitedError(
                    config.name,
                    retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                    message=f"RPC Error: {message}",
                    rpc_code=rpc_code,
                    request_id=request_id,
                )
            raise UpstreamError(
                config.name,
                status,
                f"RPC Error: {message}",
                rpc_code=rpc_code,
                request_id=request_id,
            )

        return RpcResult(
            result=body.get("result"),
            status_code=status,
            headers=dict(response.headers),
        )


# ============================================================
# Executor
# ============================================================

class RequestExecutor:
    """
    Runs one attempt against one provider.

    Every attempt first acquires quota for the method's credit cost
    (atomic check-and-increment), then records its outcome and latency
    into the provider's HealthTracker. Params are expected to have passed
    encode_params() already.
    """

    def __init__(
        self,
        quota,
        health,
        transport: RpcTransport,
        clock: Optional[Clock] = None,
        metrics=None,
    ):
        self._quota = quota
        self._health = health
        self.transport = transport
        self._clock = clock or SystemClock()
        self._metrics = metrics

    async def execute(
        self,
        config: ProviderConfig,
        request: RpcRequest,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Call `request.method` on `config` and return the decoded result.

        Raises:
            QuotaExhaustedError: local quota refused the call (nothing sent)
            RpcTimeoutError / NetworkError / UpstreamError: the call failed
        """
        cost = self._quota.cost_of(config.name, request.method)
        if not self._quota.try_acquire(config.name, cost):
            raise QuotaExhaustedError(config.name, request_id=request.request_id)

        timeout = timeout or config.timeout_seconds
        tracker = self._health.get_tracker(config.name)
        payload = build_rpc_payload(request.method, request.params, request.request_id)
        started = self._clock.time()

        with trace_provider_call(config.name, request.method, request.request_id) as span:
            try:
                rpc_result = await self.transport.post(config, payload, timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e if isinstance(e, RouterException) else InfraError(
                    ErrorDetails(
                        code="unknown_error",
                        message=str(e) or type(e).__name__,
                        type=ErrorType.INFRA,
                        provider=config.name,
                        request_id=request.request_id,
                        retryable=False,
                    ),
                    status_code=500,
                )
                latency_ms = int((self._clock.time() - started) * 1000)
                span.set_attribute("rpc.latency_ms", latency_ms)
                span.set_attribute("multirpc.error_code", error_code_of(error))

                tripped = tracker.record_failure(str(error), latency_ms)
                if self._metrics:
                    self._metrics.record_request(config.name, request.method, error_code_of(error), latency_ms / 1000)
                    if tripped:
                        self._metrics.record_circuit_trip(config.name)

                logger.warning(
                    f"STEP [rpc_call] {config.name} failed: {error}",
                    provider=config.name,
                    rpc_method=request.method,
                    error_code=error_code_of(error),
                    latency_ms=latency_ms,
                )
                if error is e:
                    raise
                raise error from e

            latency_ms = int((self._clock.time() - started) * 1000)
            span.set_attribute("rpc.latency_ms", latency_ms)

        tracker.record_success(latency_ms)
        if self._metrics:
            self._metrics.record_request(config.name, request.method, "success", latency_ms / 1000)

        logger.debug(
            f"STEP [rpc_call] {config.name} responded",
            provider=config.name,
            rpc_method=request.method,
            latency_ms=latency_ms,
        )
        return rpc_result.result
