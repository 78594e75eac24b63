"""
multirpc - Configuration Tests

Verifies:
- Provider validation at construction time
- Environment presets (skipped when credentials are missing)
- Providers file parsing, including the camelCase / millisecond format
- RouterSettings from MULTIRPC_* variables
- Per-method credit costs from provider entries and MULTIRPC_METHOD_COSTS
"""

import json

import pytest

from multirpc.core.config import (
    DEFAULT_PROVIDER_PRESETS,
    RouterSettings,
    build_router_from_env,
    load_providers_from_env,
    load_providers_from_file,
    parse_provider_entries,
)
from multirpc.core.errors import (
    ConfigurationError,
    DuplicateProviderError,
    InvalidConfigurationError,
    MissingRequiredFieldError,
)
from multirpc.core.models import AuthPlacement, ProviderConfig, ProviderKind


# ============================================================
# ProviderConfig validation
# ============================================================

class TestProviderConfig:
    """Invalid configuration raises immediately."""

    def test_empty_api_key(self):
        with pytest.raises(MissingRequiredFieldError) as exc_info:
            ProviderConfig(name="A", base_url="https://a.test", api_key="")

        assert exc_info.value.error.param == "api_key"

    def test_non_positive_quota(self):
        with pytest.raises(InvalidConfigurationError):
            ProviderConfig(name="A", base_url="https://a.test", api_key="k", requests_per_minute=0)

    def test_reliability_range(self):
        with pytest.raises(InvalidConfigurationError):
            ProviderConfig(name="A", base_url="https://a.test", api_key="k", reliability=120)

    def test_string_enums_coerced(self):
        config = ProviderConfig(
            name="A",
            base_url="https://a.test",
            api_key="k",
            kind="helius",
            auth_placement="header",
            specialties=["rpc", "rpc"],
        )

        assert config.kind == ProviderKind.HELIUS
        assert config.auth_placement == AuthPlacement.HEADER
        assert config.specialties == frozenset({"rpc"})

    def test_to_dict_omits_key(self):
        config = ProviderConfig(name="A", base_url="https://a.test", api_key="secret")

        assert "secret" not in json.dumps(config.to_dict())

    @pytest.mark.parametrize("costs", [
        {"getBalance": 0},
        {"getBalance": -5},
        {"getBalance": 2.5},
        {"getBalance": True},
        ["getBalance"],
    ])
    def test_bad_method_costs(self, costs):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            ProviderConfig(name="A", base_url="https://a.test", api_key="k", method_costs=costs)

        assert exc_info.value.error.param == "method_costs"

    def test_cost_of(self):
        config = ProviderConfig(name="A", base_url="https://a.test", api_key="k", method_costs={"getProgramAccounts": 10})

        assert config.cost_of("getProgramAccounts") == 10
        assert config.cost_of("getBalance") == 1
        assert config.to_dict()["method_costs"] == {"getProgramAccounts": 10}


# ============================================================
# Environment presets
# ============================================================

class TestEnvironmentPresets:
    """Known providers enabled by their variables."""

    def test_nothing_configured(self):
        assert load_providers_from_env({}) == []

    def test_presets_with_defaults(self):
        env = {"ALCHEMY_API_KEY": "alk", "HELIUS_API_KEY": "hek"}

        providers = {p.name: p for p in load_providers_from_env(env)}

        assert set(providers) == {"Alchemy-Enhanced", "Helius-Specialized"}
        alchemy = providers["Alchemy-Enhanced"]
        assert alchemy.base_url == "https://solana-mainnet.g.alchemy.com/v2"
        assert alchemy.requests_per_minute == 150
        assert alchemy.priority == 5
        assert alchemy.retry_attempts == 3
        assert "metadata" in providers["Helius-Specialized"].specialties

    def test_quicknode_needs_url(self):
        """QuickNode has no public default endpoint."""
        assert load_providers_from_env({"QUICKNODE_API_KEY": "qk"}) == []

        providers = load_providers_from_env({
            "QUICKNODE_API_KEY": "qk",
            "QUICKNODE_HTTP_URL": "https://x.solana-mainnet.quiknode.pro/qk/",
        })

        assert providers[0].name == "QuickNode-Primary"
        assert providers[0].kind == ProviderKind.QUICKNODE

    def test_url_override(self):
        providers = load_providers_from_env({
            "ALCHEMY_API_KEY": "alk",
            "ALCHEMY_HTTP_URL": "https://alchemy.example/v2",
        })

        assert providers[0].base_url == "https://alchemy.example/v2"

    def test_preset_order_is_kept(self):
        env = {p.key_env: "k" for p in DEFAULT_PROVIDER_PRESETS}
        env["QUICKNODE_HTTP_URL"] = "https://q.test/k/"

        names = [p.name for p in load_providers_from_env(env)]

        assert names == [p.name for p in DEFAULT_PROVIDER_PRESETS]


# ============================================================
# Providers file
# ============================================================

class TestProvidersFile:
    """JSON provider lists."""

    def test_snake_case_entries(self):
        providers = parse_provider_entries([
            {"name": "A", "base_url": "https://a.test", "api_key": "k", "priority": 4, "specialties": ["rpc"]},
        ])

        assert providers[0].priority == 4
        assert providers[0].specialties == frozenset({"rpc"})

    def test_camel_case_milliseconds(self):
        providers = parse_provider_entries([{
            "name": "A",
            "type": "alchemy",
            "baseUrl": "https://a.test/v2",
            "apiKey": "k",
            "requestsPerMinute": 150,
            "timeout": 8000,
            "retryAttempts": 2,
            "retryDelay": 500,
        }])

        config = providers[0]
        assert config.kind == ProviderKind.ALCHEMY
        assert config.requests_per_minute == 150
        assert config.timeout_seconds == 8.0
        assert config.retry_attempts == 2
        assert config.retry_delay_seconds == 0.5

    def test_method_costs_entry(self):
        providers = parse_provider_entries([
            {"name": "A", "baseUrl": "https://a.test", "apiKey": "k", "methodCosts": {"getSignaturesForAddress": 50}},
            {"name": "B", "base_url": "https://b.test", "api_key": "k", "method_costs": {"getBalance": 0}},
        ])

        assert [p.name for p in providers] == ["A"]
        assert providers[0].cost_of("getSignaturesForAddress") == 50

    def test_invalid_entries_skipped(self):
        providers = parse_provider_entries([
            {"name": "A", "base_url": "https://a.test", "api_key": ""},
            {"name": "B", "base_url": "https://b.test", "api_key": "k", "kind": "unknown"},
            {"base_url": "https://c.test"},
            "not a dict",
            {"name": "D", "base_url": "https://d.test", "api_key": "k"},
        ])

        assert [p.name for p in providers] == ["D"]

    def test_duplicate_names_raise(self):
        with pytest.raises(DuplicateProviderError):
            parse_provider_entries([
                {"name": "A", "base_url": "https://a.test", "api_key": "k"},
                {"name": "A", "base_url": "https://a2.test", "api_key": "k"},
            ])

    def test_load_file(self, tmp_path):
        path = tmp_path / "providers.json"
        path.write_text(json.dumps({"providers": [
            {"name": "A", "base_url": "https://a.test", "api_key": "k"},
        ]}))

        assert [p.name for p in load_providers_from_file(str(path))] == ["A"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidConfigurationError):
            load_providers_from_file(str(tmp_path / "absent.json"))

    def test_bad_json(self, tmp_path):
        path = tmp_path / "providers.json"
        path.write_text("{not json")

        with pytest.raises(InvalidConfigurationError) as exc_info:
            load_providers_from_file(str(path))

        assert exc_info.value.error.param == "providers_file"


# ============================================================
# Router settings
# ============================================================

class TestRouterSettings:
    """MULTIRPC_* tuning variables."""

    def test_defaults(self):
        settings = RouterSettings.from_env({})

        assert settings.retry.max_attempts == 3
        assert settings.retry.max_failover_hops == 3
        assert settings.cache.enabled is True
        assert settings.cache.max_size == 10_000
        assert settings.health.interval_seconds == 120.0
        assert settings.providers_file is None

    def test_overrides(self):
        settings = RouterSettings.from_env({
            "MULTIRPC_MAX_ATTEMPTS": "5",
            "MULTIRPC_MAX_DELAY": "30",
            "MULTIRPC_CACHE_ENABLED": "false",
            "MULTIRPC_HEALTH_INTERVAL": "60",
            "MULTIRPC_TRACING_ENABLED": "yes",
            "LOG_LEVEL": "DEBUG",
        })

        assert settings.retry.max_attempts == 5
        assert settings.retry.max_delay == 30.0
        assert settings.cache.enabled is False
        assert settings.health.interval_seconds == 60.0
        assert settings.tracing_enabled is True
        assert settings.log_level == "DEBUG"

    def test_bad_number(self):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            RouterSettings.from_env({"MULTIRPC_BASE_DELAY": "soon"})

        assert exc_info.value.error.param == "MULTIRPC_BASE_DELAY"

    @pytest.mark.parametrize("name", ["MULTIRPC_MAX_ATTEMPTS", "MULTIRPC_MAX_FAILOVER_HOPS", "MULTIRPC_CACHE_MAX_SIZE"])
    def test_lower_bounds(self, name):
        with pytest.raises(ConfigurationError):
            RouterSettings.from_env({name: "0"})

    def test_method_costs(self):
        settings = RouterSettings.from_env({"MULTIRPC_METHOD_COSTS": '{"getSignaturesForAddress": 50}'})

        assert settings.method_costs == {"getSignaturesForAddress": 50}
        assert RouterSettings.from_env({}).method_costs == {}

    @pytest.mark.parametrize("raw", ["{not json", '{"getBalance": 0}', "[1, 2]"])
    def test_bad_method_costs(self, raw):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            RouterSettings.from_env({"MULTIRPC_METHOD_COSTS": raw})

        assert exc_info.value.error.param == "MULTIRPC_METHOD_COSTS"


class TestBuildRouter:
    """Router assembled from the environment."""

    def test_presets_and_file(self, tmp_path, metrics):
        path = tmp_path / "providers.json"
        path.write_text(json.dumps([{"name": "Local", "base_url": "http://localhost:8899", "api_key": "k"}]))

        router = build_router_from_env(
            {"HELIUS_API_KEY": "hek", "MULTIRPC_PROVIDERS_FILE": str(path), "MULTIRPC_MAX_ATTEMPTS": "2"},
            metrics=metrics,
        )

        assert router.registry.names() == ["Helius-Specialized", "Local"]
        assert router.retry_config.max_attempts == 2

    def test_name_clash_between_sources(self, tmp_path, metrics):
        path = tmp_path / "providers.json"
        path.write_text(json.dumps([{"name": "Helius-Specialized", "base_url": "http://h.test", "api_key": "k"}]))

        with pytest.raises(DuplicateProviderError):
            build_router_from_env({"HELIUS_API_KEY": "hek", "MULTIRPC_PROVIDERS_FILE": str(path)}, metrics=metrics)

    def test_method_costs_reach_quota(self, metrics):
        router = build_router_from_env(
            {"HELIUS_API_KEY": "hek", "MULTIRPC_METHOD_COSTS": '{"getSignaturesForAddress": 50}'},
            metrics=metrics,
        )

        assert router.quota.cost_of("Helius-Specialized", "getSignaturesForAddress") == 50
        assert router.quota.cost_of("Helius-Specialized", "getBalance") == 1
