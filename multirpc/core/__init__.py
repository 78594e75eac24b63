"""
multirpc Core Module

Data models, errors, clock, scheduler, transport and configuration
shared by the routing components.
"""

from .models import (
    # Enums
    ProviderKind,
    AuthPlacement,
    QuotaPeriod,

    # Configuration
    ProviderConfig,
    RetryConfig,
    CacheConfig,
    HealthCheckConfig,
    DEFAULT_METHOD_TTL,
    check_method_costs,

    # Envelopes
    RequestOptions,
    RpcRequest,
    RpcResponse,
    HealthCheckResult,
    generate_request_id,
)

from .errors import (
    # Error types
    ErrorType,
    ErrorDetails,
    RouterException,

    # Infra errors
    InfraError,
    NoHealthyProvidersError,
    RpcTimeoutError,
    NetworkError,
    UpstreamError,
    RateLimitedError,
    QuotaExhaustedError,
    AllProvidersFailedError,

    # Request errors
    InvalidParamsError,

    # Configuration errors
    ConfigurationError,
    DuplicateProviderError,
    ProviderNotFoundError,
    MissingRequiredFieldError,
    InvalidConfigurationError,

    # Classification
    is_retryable,
    error_code_of,
)

from .clock import Clock, SystemClock, ManualClock
from .scheduler import PeriodicTask, Scheduler
from .http_client import RpcTransport, RequestExecutor, build_provider_url, build_auth_headers, encode_params
from .config import (
    DEFAULT_PROVIDER_PRESETS,
    ProviderPreset,
    RouterSettings,
    load_providers_from_env,
    load_providers_from_file,
    parse_provider_entries,
    build_router_from_env,
)

__all__ = [
    # Enums
    "ProviderKind",
    "AuthPlacement",
    "QuotaPeriod",

    # Configuration
    "ProviderConfig",
    "RetryConfig",
    "CacheConfig",
    "HealthCheckConfig",
    "DEFAULT_METHOD_TTL",
    "check_method_costs",

    # Envelopes
    "RequestOptions",
    "RpcRequest",
    "RpcResponse",
    "HealthCheckResult",
    "generate_request_id",

    # Errors
    "ErrorType",
    "ErrorDetails",
    "RouterException",
    "InfraError",
    "NoHealthyProvidersError",
    "RpcTimeoutError",
    "NetworkError",
    "UpstreamError",
    "RateLimitedError",
    "QuotaExhaustedError",
    "AllProvidersFailedError",
    "InvalidParamsError",
    "ConfigurationError",
    "DuplicateProviderError",
    "ProviderNotFoundError",
    "MissingRequiredFieldError",
    "InvalidConfigurationError",
    "is_retryable",
    "error_code_of",

    # Runtime
    "Clock",
    "SystemClock",
    "ManualClock",
    "PeriodicTask",
    "Scheduler",
    "RpcTransport",
    "RequestExecutor",
    "build_provider_url",
    "build_auth_headers",
    "encode_params",

    # Loading
    "DEFAULT_PROVIDER_PRESETS",
    "ProviderPreset",
    "RouterSettings",
    "load_providers_from_env",
    "load_providers_from_file",
    "parse_provider_entries",
    "build_router_from_env",
]
