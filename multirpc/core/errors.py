"""
multirpc - Error Definitions

Error taxonomy with infra, request and configuration classification.

Infra errors are absorbed by the failover controller and only reach the
caller as a failure envelope. Request errors are rejected before any
provider is picked and never count against a provider. Configuration
errors are raised at construction time and always propagate.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    REQUEST = "invalid_request_error"
    CONFIG = "config_error"


@dataclass
class ErrorDetails:
    """Full error information for envelopes and API responses."""
    # Core fields (always present)
    code: str
    message: str
    type: ErrorType

    # Context fields
    provider: Optional[str] = None
    param: Optional[str] = None

    # Trace fields
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[float] = None

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.provider:
            result["provider"] = self.provider
        if self.param:
            result["param"] = self.param
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class RouterException(Exception):
    """Base exception for all multirpc errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def retryable(self) -> bool:
        return self.error.retryable


# ============================================================
# Infra Errors
# ============================================================

class InfraError(RouterException):
    """Base class for upstream and transport errors."""
    pass


class NoHealthyProvidersError(InfraError):
    """No provider passed the health, quota and specialty filters."""

    def __init__(self, method: str = "", specialty: Optional[str] = None, request_id: str = ""):
        details: Dict[str, Any] = {}
        if method:
            details["method"] = method
        if specialty:
            details["required_specialty"] = specialty
        super().__init__(
            ErrorDetails(
                code="no_healthy_providers",
                message="No healthy providers available",
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=False,
                details=details,
            ),
            status_code=503
        )


class RpcTimeoutError(InfraError):
    """Provider did not answer within the call deadline."""

    def __init__(self, provider: str, timeout: float, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="timeout",
                message=f"{provider} did not respond within {timeout:g}s",
                type=ErrorType.INFRA,
                provider=provider,
                request_id=request_id,
                retryable=True,
                details={"timeout_seconds": timeout},
            ),
            status_code=504
        )


class NetworkError(InfraError):
    """Connection could not be established or was reset."""

    def __init__(self, provider: str, message: str = "", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="network_error",
                message=message or f"Network error talking to {provider}",
                type=ErrorType.INFRA,
                provider=provider,
                request_id=request_id,
                retryable=True,
            ),
            status_code=502
        )


RATE_LIMIT_RPC_CODES = frozenset({-32005, -32429})
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def _looks_rate_limited(message: str) -> bool:
    lowered = message.lower()
    return "rate limit" in lowered or "429" in lowered


class UpstreamError(InfraError):
    """
    Provider answered, but not with a usable result.

    Covers non-2xx HTTP responses, JSON-RPC error objects and undecodable
    bodies. Only 429 / 5xx statuses and rate-limit RPC errors are
    retryable; any other 4xx fails over immediately.
    """

    def __init__(
        self,
        provider: str,
        status_code: int,
        message: str = "",
        rpc_code: Optional[int] = None,
        request_id: str = "",
        code: str = "",
        retryable: Optional[bool] = None,
    ):
        self.upstream_status = status_code
        self.rpc_code = rpc_code

        if retryable is None:
            retryable = (
                status_code in RETRYABLE_STATUS_CODES
                or status_code >= 500
                or (rpc_code is not None and rpc_code in RATE_LIMIT_RPC_CODES)
                or _looks_rate_limited(message)
            )

        if not code:
            code = "rpc_error" if rpc_code is not None else f"upstream_{status_code}"

        details: Dict[str, Any] = {"upstream_status": status_code}
        if rpc_code is not None:
            details["rpc_code"] = rpc_code

        super().__init__(
            ErrorDetails(
                code=code,
                message=message or f"{provider} returned error {status_code}",
                type=ErrorType.INFRA,
                provider=provider,
                request_id=request_id,
                retryable=retryable,
                details=details,
            ),
            status_code=502
        )


class RateLimitedError(UpstreamError):
    """Provider signalled rate limiting (HTTP 429 or rate-limit RPC error)."""

    def __init__(
        self,
        provider: str,
        retry_after: Optional[float] = None,
        message: str = "",
        rpc_code: Optional[int] = None,
        request_id: str = "",
    ):
        super().__init__(
            provider,
            429,
            message or f"{provider} rate limit exceeded",
            rpc_code=rpc_code,
            request_id=request_id,
            code="rate_limited",
            retryable=True,
        )
        self.error.retry_after = retry_after
        self.retry_after = retry_after


class QuotaExhaustedError(InfraError):
    """The local quota tracker refused another call to this provider."""

    def __init__(self, provider: str, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="quota_exhausted",
                message=f"{provider} local quota exhausted",
                type=ErrorType.INFRA,
                provider=provider,
                request_id=request_id,
                retryable=False,
            ),
            status_code=429
        )


class AllProvidersFailedError(InfraError):
    """Every provider in the failover chain failed."""

    def __init__(
        self,
        providers: List[str],
        last_error: Optional[BaseException] = None,
        request_id: str = "",
        attempts: int = 0,
    ):
        self.providers_tried = list(providers)
        self.attempts = attempts
        self.last_error = last_error
        last_message = str(last_error) if last_error is not None else ""
        message = "All providers failed"
        if last_message:
            message = f"{message}: {last_message}"
        super().__init__(
            ErrorDetails(
                code="all_providers_failed",
                message=message,
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=False,
                details={
                    "providers_tried": list(providers),
                    "last_error": last_message,
                    "last_error_code": getattr(last_error, "code", None) if isinstance(last_error, RouterException) else None,
                    "attempts": attempts,
                },
            ),
            status_code=503
        )


# ============================================================
# Request Errors
# ============================================================

class InvalidParamsError(RouterException):
    """Params that cannot be sent as a JSON-RPC positional list."""

    def __init__(self, message: str, method: str = "", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="invalid_params",
                message=message,
                type=ErrorType.REQUEST,
                param="params",
                request_id=request_id,
                retryable=False,
                details={"method": method} if method else {},
            ),
            status_code=400
        )


# ============================================================
# Configuration Errors
# ============================================================

class ConfigurationError(RouterException):
    """Base class for configuration errors (raised at startup)."""

    def __init__(
        self,
        code: str,
        message: str,
        provider: Optional[str] = None,
        param: Optional[str] = None,
    ):
        super().__init__(
            ErrorDetails(
                code=code,
                message=message,
                type=ErrorType.CONFIG,
                provider=provider,
                param=param,
                retryable=False,
            ),
            status_code=400
        )


class DuplicateProviderError(ConfigurationError):
    def __init__(self, provider: str):
        super().__init__(
            "duplicate_provider",
            f"Provider '{provider}' is already registered",
            provider=provider,
        )


class ProviderNotFoundError(ConfigurationError):
    def __init__(self, provider: str):
        super().__init__(
            "provider_not_found",
            f"Provider '{provider}' is not registered",
            provider=provider,
        )
        self.status_code = 404


class MissingRequiredFieldError(ConfigurationError):
    """Required field is missing."""

    def __init__(self, field: str, provider: str = ""):
        super().__init__(
            "missing_required_field",
            f"'{field}' is required",
            provider=provider or None,
            param=field,
        )


class InvalidConfigurationError(ConfigurationError):
    def __init__(self, message: str, provider: str = "", field: str = ""):
        super().__init__(
            "invalid_configuration",
            message,
            provider=provider or None,
            param=field or None,
        )


# ============================================================
# Classification helpers
# ============================================================

def is_retryable(error: BaseException, retry_config=None) -> bool:
    """
    Decide whether an error is worth another attempt on the SAME provider.

    `retry_config` (a RetryConfig) narrows the decision with its
    retry_on_* switches and retryable status set. Without it, the
    error's own classification is used.
    """
    if isinstance(error, RpcTimeoutError) or isinstance(error, httpx.TimeoutException):
        return retry_config.retry_on_timeout if retry_config else True

    if isinstance(error, NetworkError) or isinstance(error, httpx.TransportError):
        return retry_config.retry_on_network_error if retry_config else True

    if isinstance(error, RateLimitedError):
        return retry_config.retry_on_rate_limit if retry_config else True

    if isinstance(error, UpstreamError):
        if not error.retryable:
            return False
        if retry_config is None:
            return True
        if error.rpc_code is not None and error.rpc_code in RATE_LIMIT_RPC_CODES:
            return retry_config.retry_on_rate_limit
        if _looks_rate_limited(error.error.message):
            return retry_config.retry_on_rate_limit
        return error.upstream_status in retry_config.retryable_status_codes

    if isinstance(error, RouterException):
        return error.retryable

    return False


def error_code_of(error: BaseException) -> str:
    """Stable short code for any exception, used in envelopes and metrics."""
    if isinstance(error, RouterException):
        return error.code
    if isinstance(error, httpx.TimeoutException):
        return "timeout"
    if isinstance(error, httpx.TransportError):
        return "network_error"
    return "internal_error"
