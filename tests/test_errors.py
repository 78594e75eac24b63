"""
multirpc - Error Taxonomy Tests
"""

import httpx
import pytest

from multirpc.core.errors import (
    AllProvidersFailedError,
    ErrorType,
    InvalidConfigurationError,
    NetworkError,
    NoHealthyProvidersError,
    QuotaExhaustedError,
    RateLimitedError,
    RpcTimeoutError,
    UpstreamError,
    error_code_of,
    is_retryable,
)
from multirpc.core.models import RetryConfig


class TestErrorDetails:
    """Serialized error bodies."""

    def test_infra_error_shape(self):
        body = RpcTimeoutError("A", 2.5, request_id="req_1").error.to_dict()

        assert body["error"]["code"] == "timeout"
        assert body["error"]["type"] == "infra_error"
        assert body["error"]["provider"] == "A"
        assert body["error"]["request_id"] == "req_1"
        assert body["error"]["retryable"] is True
        assert body["error"]["details"] == {"timeout_seconds": 2.5}

    def test_config_error_shape(self):
        error = InvalidConfigurationError("bad value", provider="A", field="priority")

        body = error.error.to_dict()["error"]

        assert error.status_code == 400
        assert body["type"] == ErrorType.CONFIG.value
        assert body["param"] == "priority"
        assert body["retryable"] is False

    def test_rate_limited_carries_retry_after(self):
        error = RateLimitedError("A", retry_after=2.0)

        assert error.error.to_dict()["error"]["retry_after"] == 2.0
        assert error.upstream_status == 429

    def test_all_failed_details(self):
        last = UpstreamError("C", 500)
        error = AllProvidersFailedError(["A", "B", "C"], last_error=last, attempts=7)

        details = error.error.details
        assert details["providers_tried"] == ["A", "B", "C"]
        assert details["last_error_code"] == "upstream_500"
        assert details["attempts"] == 7
        assert str(error).startswith("All providers failed")

    def test_no_healthy_details(self):
        error = NoHealthyProvidersError(method="getAsset", specialty="metadata")

        assert error.status_code == 503
        assert error.error.details == {"method": "getAsset", "required_specialty": "metadata"}


class TestUpstreamClassification:
    """Which upstream answers are worth retrying."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert UpstreamError("A", status).retryable is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors_not_retryable(self, status):
        assert UpstreamError("A", status).retryable is False

    def test_rate_limit_rpc_code(self):
        assert UpstreamError("A", 200, "RPC Error: slow down", rpc_code=-32429).retryable is True

    def test_rate_limit_message(self):
        assert UpstreamError("A", 200, "RPC Error: rate limit exceeded", rpc_code=-32000).retryable is True

    def test_plain_rpc_error(self):
        error = UpstreamError("A", 200, "RPC Error: invalid", rpc_code=-32602)

        assert error.retryable is False
        assert error.code == "rpc_error"


class TestIsRetryable:
    """Retry decisions, optionally narrowed by RetryConfig."""

    def test_defaults(self):
        assert is_retryable(RpcTimeoutError("A", 1)) is True
        assert is_retryable(NetworkError("A")) is True
        assert is_retryable(QuotaExhaustedError("A")) is False
        assert is_retryable(ValueError("boom")) is False

    def test_httpx_exceptions(self):
        assert is_retryable(httpx.ReadTimeout("slow")) is True
        assert is_retryable(httpx.ConnectError("refused")) is True

    def test_config_switches(self):
        config = RetryConfig(retry_on_timeout=False, retry_on_network_error=False, retry_on_rate_limit=False)

        assert is_retryable(RpcTimeoutError("A", 1), config) is False
        assert is_retryable(NetworkError("A"), config) is False
        assert is_retryable(RateLimitedError("A"), config) is False

    def test_config_status_set(self):
        config = RetryConfig(retryable_status_codes=frozenset({503}))

        assert is_retryable(UpstreamError("A", 503), config) is True
        assert is_retryable(UpstreamError("A", 500), config) is False


class TestErrorCodeOf:
    def test_codes(self):
        assert error_code_of(QuotaExhaustedError("A")) == "quota_exhausted"
        assert error_code_of(httpx.ReadTimeout("slow")) == "timeout"
        assert error_code_of(httpx.ConnectError("refused")) == "network_error"
        assert error_code_of(KeyError("x")) == "internal_error"
