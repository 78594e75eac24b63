"""
multirpc - Configuration

Environment and file driven setup for the router.

Providers come from two places:
- Built-in presets for the known providers, enabled when their URL and
  key variables are set
- An optional JSON file (MULTIRPC_PROVIDERS_FILE) holding a list of
  provider entries

Tuning knobs are read from MULTIRPC_* variables. MULTIRPC_METHOD_COSTS
weights heavy methods in credits for every provider; a provider entry's
own method_costs take precedence.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..observability.logging import get_logger
from .errors import ConfigurationError, DuplicateProviderError, InvalidConfigurationError
from .models import (
    CacheConfig,
    HealthCheckConfig,
    ProviderConfig,
    ProviderKind,
    RetryConfig,
    check_method_costs,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderPreset:
    """A known provider and the environment variables that enable it."""
    name: str
    kind: ProviderKind
    key_env: str
    url_env: Optional[str] = None
    default_url: str = ""
    requests_per_minute: int = 60
    requests_per_day: int = 100_000
    requests_per_month: int = 3_000_000
    priority: int = 1
    reliability: float = 100.0
    specialties: tuple = ()
    timeout_seconds: float = 10.0
    retry_attempts: Optional[int] = None
    retry_delay_seconds: Optional[float] = None

    def resolve_url(self, env: Mapping[str, str]) -> str:
        if self.url_env:
            return env.get(self.url_env) or self.default_url
        return self.default_url

    def build(self, env: Mapping[str, str]) -> Optional[ProviderConfig]:
        """Create the config, or None if the URL or key is missing."""
        api_key = env.get(self.key_env, "")
        base_url = self.resolve_url(env)
        if not api_key or not base_url:
            return None
        return ProviderConfig(
            name=self.name,
            kind=self.kind,
            base_url=base_url,
            api_key=api_key,
            requests_per_minute=self.requests_per_minute,
            requests_per_day=self.requests_per_day,
            requests_per_month=self.requests_per_month,
            priority=self.priority,
            reliability=self.reliability,
            specialties=frozenset(self.specialties),
            timeout_seconds=self.timeout_seconds,
            retry_attempts=self.retry_attempts,
            retry_delay_seconds=self.retry_delay_seconds,
        )


DEFAULT_PROVIDER_PRESETS: List[ProviderPreset] = [
    ProviderPreset(
        name="QuickNode-Primary",
        kind=ProviderKind.QUICKNODE,
        key_env="QUICKNODE_API_KEY",
        url_env="QUICKNODE_HTTP_URL",
        requests_per_minute=60,
        requests_per_day=20_000,
        requests_per_month=15_000_000,
        priority=5,
        reliability=95,
        specialties=("rpc", "fast", "reliable", "webhooks"),
        timeout_seconds=8.0,
        retry_attempts=2,
        retry_delay_seconds=1.0,
    ),
    ProviderPreset(
        name="Alchemy-Enhanced",
        kind=ProviderKind.ALCHEMY,
        key_env="ALCHEMY_API_KEY",
        url_env="ALCHEMY_HTTP_URL",
        default_url="https://solana-mainnet.g.alchemy.com/v2",
        requests_per_minute=150,
        requests_per_day=500_000,
        requests_per_month=20_000_000,
        priority=5,
        reliability=98,
        specialties=("rpc", "enhanced", "analytics", "reliable"),
        timeout_seconds=10.0,
        retry_attempts=3,
        retry_delay_seconds=0.5,
    ),
    ProviderPreset(
        name="Helius-Specialized",
        kind=ProviderKind.HELIUS,
        key_env="HELIUS_API_KEY",
        default_url="https://mainnet.helius-rpc.com",
        requests_per_minute=100,
        requests_per_day=200_000,
        requests_per_month=8_000_000,
        priority=4,
        reliability=90,
        specialties=("rpc", "metadata", "enhanced", "analytics"),
        timeout_seconds=12.0,
        retry_attempts=2,
        retry_delay_seconds=1.5,
    ),
    ProviderPreset(
        name="GenesysGo-Backup",
        kind=ProviderKind.GENESYSGO,
        key_env="GENESYSGO_API_KEY",
        default_url="https://ssc-dao.genesysgo.net",
        requests_per_minute=80,
        requests_per_day=100_000,
        requests_per_month=5_000_000,
        priority=3,
        reliability=85,
        specialties=("rpc", "backup"),
        timeout_seconds=15.0,
        retry_attempts=1,
        retry_delay_seconds=2.0,
    ),
    ProviderPreset(
        name="Triton-Extra",
        kind=ProviderKind.TRITON,
        key_env="TRITON_API_KEY",
        default_url="https://triton.one/rpc",
        requests_per_minute=50,
        requests_per_day=50_000,
        requests_per_month=2_000_000,
        priority=3,
        reliability=80,
        specialties=("rpc", "extra"),
        timeout_seconds=20.0,
        retry_attempts=1,
        retry_delay_seconds=3.0,
    ),
]


def load_providers_from_env(
    env: Optional[Mapping[str, str]] = None,
    presets: Optional[List[ProviderPreset]] = None,
) -> List[ProviderConfig]:
    """
    Build provider configs for every preset whose URL and key are set.

    Presets without credentials are skipped with a warning.
    """
    env = os.environ if env is None else env
    providers = []

    for preset in presets if presets is not None else DEFAULT_PROVIDER_PRESETS:
        config = preset.build(env)
        if config is None:
            logger.warning(
                "Provider skipped, credentials not configured",
                provider=preset.name,
                key_env=preset.key_env,
            )
            continue
        providers.append(config)

    return providers


# Entry keys accepted in a providers file
_ENTRY_FIELDS = {
    "name": "name",
    "kind": "kind",
    "type": "kind",
    "base_url": "base_url",
    "baseUrl": "base_url",
    "api_key": "api_key",
    "apiKey": "api_key",
    "requests_per_minute": "requests_per_minute",
    "requestsPerMinute": "requests_per_minute",
    "requests_per_day": "requests_per_day",
    "requestsPerDay": "requests_per_day",
    "requests_per_month": "requests_per_month",
    "requestsPerMonth": "requests_per_month",
    "priority": "priority",
    "reliability": "reliability",
    "specialties": "specialties",
    "timeout_seconds": "timeout_seconds",
    "retry_attempts": "retry_attempts",
    "retryAttempts": "retry_attempts",
    "retry_delay_seconds": "retry_delay_seconds",
    "auth_placement": "auth_placement",
    "method_costs": "method_costs",
    "methodCosts": "method_costs",
}


def _provider_from_entry(entry: Dict[str, Any]) -> ProviderConfig:
    if not isinstance(entry, dict):
        raise InvalidConfigurationError("provider entry must be an object")

    kwargs: Dict[str, Any] = {}
    for key, value in entry.items():
        target = _ENTRY_FIELDS.get(key)
        if target is None:
            continue
        kwargs[target] = value

    # camelCase entries carry milliseconds
    if "timeout" in entry and "timeout_seconds" not in kwargs:
        kwargs["timeout_seconds"] = float(entry["timeout"]) / 1000
    if "retryDelay" in entry and "retry_delay_seconds" not in kwargs:
        kwargs["retry_delay_seconds"] = float(entry["retryDelay"]) / 1000

    if "specialties" in kwargs:
        kwargs["specialties"] = frozenset(kwargs["specialties"])

    try:
        return ProviderConfig(**kwargs)
    except TypeError as e:
        raise InvalidConfigurationError(str(e), provider=str(entry.get("name", ""))) from e
    except ValueError as e:
        # Unknown kind or auth placement
        raise InvalidConfigurationError(str(e), provider=str(entry.get("name", ""))) from e


def parse_provider_entries(entries: List[Dict[str, Any]]) -> List[ProviderConfig]:
    """
    Turn raw provider dicts into configs.

    Invalid entries are skipped with a warning; a repeated name raises
    DuplicateProviderError.
    """
    providers: List[ProviderConfig] = []
    seen = set()

    for index, entry in enumerate(entries):
        try:
            config = _provider_from_entry(entry)
        except ConfigurationError as e:
            logger.warning(
                "Invalid provider entry skipped",
                index=index,
                error_code=e.code,
                error=str(e),
            )
            continue

        if config.name in seen:
            raise DuplicateProviderError(config.name)
        seen.add(config.name)
        providers.append(config)

    return providers


def load_providers_from_file(path: str) -> List[ProviderConfig]:
    """Load providers from a JSON file holding a list of entries."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except OSError as e:
        raise InvalidConfigurationError(f"Cannot read providers file {path}: {e}", field="providers_file") from e
    except json.JSONDecodeError as e:
        raise InvalidConfigurationError(f"Providers file {path} is not valid JSON: {e}", field="providers_file") from e

    if isinstance(raw, dict):
        raw = raw.get("providers", [])
    if not isinstance(raw, list):
        raise InvalidConfigurationError("Providers file must hold a list of providers", field="providers_file")

    return parse_provider_entries(raw)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidConfigurationError(f"{name} must be a number", field=name)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfigurationError(f"{name} must be an integer", field=name)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_costs(env: Mapping[str, str], name: str) -> Dict[str, int]:
    """JSON object of method -> credit cost, e.g. {"getSignaturesForAddress": 50}."""
    raw = env.get(name)
    if raw is None or not raw.strip():
        return {}
    try:
        costs = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidConfigurationError(f"{name} must be a JSON object: {e}", field=name) from e
    return check_method_costs(costs, field_name=name)


@dataclass
class RouterSettings:
    """Router tuning gathered from the environment."""
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    health: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    log_level: str = "INFO"
    log_format: str = "json"
    providers_file: Optional[str] = None
    tracing_enabled: bool = False
    otlp_endpoint: Optional[str] = None
    method_costs: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RouterSettings":
        env = os.environ if env is None else env

        retry = RetryConfig(
            max_attempts=_env_int(env, "MULTIRPC_MAX_ATTEMPTS", 3),
            base_delay=_env_float(env, "MULTIRPC_BASE_DELAY", 1.0),
            max_delay=_env_float(env, "MULTIRPC_MAX_DELAY", 10.0),
            backoff_multiplier=_env_float(env, "MULTIRPC_BACKOFF_MULTIPLIER", 2.0),
            jitter_factor=_env_float(env, "MULTIRPC_JITTER_FACTOR", 0.0),
            max_failover_hops=_env_int(env, "MULTIRPC_MAX_FAILOVER_HOPS", 3),
        )
        cache = CacheConfig(
            enabled=_env_bool(env, "MULTIRPC_CACHE_ENABLED", True),
            default_ttl=_env_float(env, "MULTIRPC_CACHE_TTL", 300.0),
            max_size=_env_int(env, "MULTIRPC_CACHE_MAX_SIZE", 10_000),
            cleanup_interval=_env_float(env, "MULTIRPC_CACHE_CLEANUP_INTERVAL", 60.0),
        )
        health = HealthCheckConfig(
            interval_seconds=_env_float(env, "MULTIRPC_HEALTH_INTERVAL", 120.0),
            probe_timeout_seconds=_env_float(env, "MULTIRPC_HEALTH_TIMEOUT", 5.0),
            failure_threshold=_env_int(env, "MULTIRPC_FAILURE_THRESHOLD", 3),
            stats_interval_seconds=_env_float(env, "MULTIRPC_STATS_INTERVAL", 30.0),
        )

        if retry.max_attempts < 1:
            raise InvalidConfigurationError("MULTIRPC_MAX_ATTEMPTS must be at least 1", field="MULTIRPC_MAX_ATTEMPTS")
        if retry.max_failover_hops < 1:
            raise InvalidConfigurationError(
                "MULTIRPC_MAX_FAILOVER_HOPS must be at least 1",
                field="MULTIRPC_MAX_FAILOVER_HOPS",
            )
        if cache.max_size < 1:
            raise InvalidConfigurationError("MULTIRPC_CACHE_MAX_SIZE must be at least 1", field="MULTIRPC_CACHE_MAX_SIZE")

        return cls(
            retry=retry,
            cache=cache,
            health=health,
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_format=env.get("LOG_FORMAT", "json"),
            providers_file=env.get("MULTIRPC_PROVIDERS_FILE") or None,
            tracing_enabled=_env_bool(env, "MULTIRPC_TRACING_ENABLED", False),
            otlp_endpoint=env.get("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
            method_costs=_env_costs(env, "MULTIRPC_METHOD_COSTS"),
        )


def build_router_from_env(env: Optional[Mapping[str, str]] = None, **router_kwargs):
    """
    Assemble an RpcRouter from the environment.

    Providers from MULTIRPC_PROVIDERS_FILE are added after the presets;
    a name used by both raises DuplicateProviderError.
    """
    # Imported here, the router module imports this package
    from ..routing.router import RpcRouter

    env = os.environ if env is None else env
    settings = RouterSettings.from_env(env)

    providers = load_providers_from_env(env)
    if settings.providers_file:
        providers.extend(load_providers_from_file(settings.providers_file))

    if not providers:
        logger.warning("No providers configured")

    router = RpcRouter(
        providers=providers,
        retry_config=settings.retry,
        cache_config=settings.cache,
        health_config=settings.health,
        method_costs=router_kwargs.pop("method_costs", settings.method_costs),
        **router_kwargs,
    )
    logger.info(
        "Router configured from environment",
        providers=[p.name for p in providers],
        providers_file=settings.providers_file,
    )
    return router
