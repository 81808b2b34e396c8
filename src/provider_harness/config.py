"""
Harness configuration for provider-harness.

Supports configuration via:
1. Environment variables (highest priority)
2. TOML config file (provider-harness.toml)
3. Default values (lowest priority)

Environment variables:
- PROVIDER_HARNESS_CONFIG_FILE: Path to TOML config file
- PROVIDER_HARNESS_PROJECT_DIR: Project whose state the harness owns
- PROVIDER_HARNESS_MODE: Harness mode (state is kept per project and mode)
- PROVIDER_HARNESS_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
- PROVIDER_HARNESS_LOG_FORMAT: "structured" (JSON lines) or "human"
- PROVIDER_HARNESS_ROTATION_STRATEGY: Rotation strategy name
- PROVIDER_HARNESS_FAILURE_THRESHOLD: Failures before the circuit opens
- PROVIDER_HARNESS_CIRCUIT_TIMEOUT: Circuit cool-down in seconds
- PROVIDER_HARNESS_DEFAULT_RESET_SECONDS: Rate-limit window when none is reported
- PROVIDER_HARNESS_QUOTA_LIMIT: Default quota limit per provider/model
- PROVIDER_HARNESS_STATE_DIR: State directory, relative to the project
- PROVIDER_HARNESS_LOCK_TIMEOUT: Seconds to wait for the state lock
- PROVIDER_HARNESS_PERSISTENCE_ENABLED: Whether state is persisted (true/false)
- PROVIDER_HARNESS_PROMETHEUS_ENABLED: Mirror metrics into Prometheus (true/false)
- PROVIDER_HARNESS_PROMETHEUS_PORT: /metrics HTTP port (0 = no server)
- PROVIDER_HARNESS_FALLBACK_CHAIN: Comma-separated provider order

Example provider-harness.toml:

    [harness]
    mode = "execute"
    fallback_chain = ["claude", "gemini", "cursor"]
    load_balancing = false

    [providers.claude]
    type = "subscription"
    priority = 1
    weight = 3
    default_model = "sonnet"
    models = [
        { name = "sonnet", weight = 2, cost_per_1k_tokens = 0.003 },
        { name = "haiku", weight = 1, cost_per_1k_tokens = 0.0008 },
    ]

    [rate_limit]
    rotation_strategy = "provider_first"
    default_reset_seconds = 1800
"""

import os
import logging
from dataclasses import dataclass, field
from importlib.metadata import version as get_package_version, PackageNotFoundError
from pathlib import Path
from typing import Optional, List, Dict, Any

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from provider_harness.core.errors import ConfigurationError
from provider_harness.core.providers import ProviderType


logger = logging.getLogger(__name__)


def _get_version() -> str:
    """Get package version from metadata (single source of truth: pyproject.toml)."""
    try:
        return get_package_version("provider-harness")
    except PackageNotFoundError:
        return "0.1.0"  # Fallback for dev without install


_PACKAGE_VERSION = _get_version()

ROTATION_STRATEGIES = (
    "provider_first",
    "model_first",
    "cost_optimized",
    "performance_optimized",
    "quota_aware",
)

DEFAULT_CONFIG_FILES = ("provider-harness.toml", ".provider-harness.toml")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


def _normalize_strategy(value: str) -> str:
    normalized = value.strip().lower().replace("-", "_")
    if normalized not in ROTATION_STRATEGIES:
        logger.warning(
            "Invalid rotation strategy '%s'. Falling back to 'provider_first'. Valid options: %s",
            value,
            ", ".join(ROTATION_STRATEGIES),
        )
        return "provider_first"
    return normalized


# =============================================================================
# Provider Definitions
# =============================================================================


@dataclass
class ModelConfig:
    """A selectable model offered by a provider.

    Attributes:
        name: Model identifier, scoped to its provider
        weight: Relative weight for load-balanced selection
        timeout: Per-model request timeout in seconds
        flags: Extra invocation flags passed through to the invoker
        max_tokens: Output token ceiling
        cost_per_1k_tokens: Cost used by cost_optimized rotation
        quota_limit: Quota limit overriding the provider/global default
    """

    name: str
    weight: int = 1
    timeout: Optional[float] = None
    flags: List[str] = field(default_factory=list)
    max_tokens: Optional[int] = None
    cost_per_1k_tokens: Optional[float] = None
    quota_limit: Optional[int] = None

    @classmethod
    def from_toml_dict(cls, data: Any) -> "ModelConfig":
        """Create a model from a TOML entry (a table or a bare model name)."""
        if isinstance(data, str):
            return cls(name=data)
        if "name" not in data:
            raise ConfigurationError(f"Model entry is missing 'name': {data!r}")
        return cls(
            name=str(data["name"]),
            weight=int(data.get("weight", 1)),
            timeout=float(data["timeout"]) if data.get("timeout") is not None else None,
            flags=[str(flag) for flag in data.get("flags", [])],
            max_tokens=int(data["max_tokens"]) if data.get("max_tokens") is not None else None,
            cost_per_1k_tokens=(
                float(data["cost_per_1k_tokens"])
                if data.get("cost_per_1k_tokens") is not None
                else None
            ),
            quota_limit=int(data["quota_limit"]) if data.get("quota_limit") is not None else None,
        )


@dataclass
class ProviderConfig:
    """A configured provider. Immutable once the harness starts.

    Attributes:
        name: Provider identifier
        type: Billing model (subscription, usage_based, passthrough)
        priority: Lower values are preferred
        weight: Relative weight for load-balanced selection
        models: Declared models, in model fallback order
        default_model: Model used when switching to this provider
        quota_limit: Quota limit overriding the global default
    """

    name: str
    type: ProviderType = ProviderType.SUBSCRIPTION
    priority: int = 100
    weight: int = 1
    models: List[ModelConfig] = field(default_factory=list)
    default_model: Optional[str] = None
    quota_limit: Optional[int] = None

    @classmethod
    def from_toml_dict(cls, name: str, data: Dict[str, Any]) -> "ProviderConfig":
        """Create a provider from its [providers.<name>] table."""
        try:
            provider_type = ProviderType(str(data.get("type", "subscription")).lower())
        except ValueError as exc:
            raise ConfigurationError(
                f"Provider '{name}' has unknown type {data.get('type')!r}"
            ) from exc

        models = [ModelConfig.from_toml_dict(entry) for entry in data.get("models", [])]
        default_model = data.get("default_model")
        if default_model is not None and default_model not in {m.name for m in models}:
            raise ConfigurationError(
                f"Provider '{name}' default_model '{default_model}' is not a declared model"
            )

        return cls(
            name=name,
            type=provider_type,
            priority=int(data.get("priority", 100)),
            weight=int(data.get("weight", 1)),
            models=models,
            default_model=default_model,
            quota_limit=int(data["quota_limit"]) if data.get("quota_limit") is not None else None,
        )

    def model_names(self) -> List[str]:
        return [model.name for model in self.models]

    def get_model(self, name: str) -> Optional[ModelConfig]:
        for model in self.models:
            if model.name == name:
                return model
        return None

    def resolved_default_model(self) -> Optional[str]:
        """Default model, else the first declared model, else None (provider default)."""
        if self.default_model:
            return self.default_model
        return self.models[0].name if self.models else None


# =============================================================================
# Policy Sections
# =============================================================================


@dataclass
class CircuitBreakerSettings:
    """Circuit breaker thresholds.

    Attributes:
        failure_threshold: Consecutive failures before the circuit opens
        timeout_seconds: Cool-down before the circuit admits a trial call again
    """

    failure_threshold: int = 5
    timeout_seconds: float = 300.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerSettings":
        return cls(
            failure_threshold=int(data.get("failure_threshold", 5)),
            timeout_seconds=float(data.get("timeout_seconds", 300.0)),
        )


@dataclass
class RetrySettings:
    """Retry policy settings.

    Attributes:
        jitter: Whether computed backoff delays are perturbed
        jitter_ratio: Maximum relative perturbation (0.1 = +/-10%)
        overrides: Per error kind policy overrides, e.g.
            ``{"timeout": {"max_retries": 5, "base_delay": 2}}``
    """

    jitter: bool = True
    jitter_ratio: float = 0.1
    overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "RetrySettings":
        overrides = data.get("overrides", {})
        if not isinstance(overrides, dict):
            raise ConfigurationError("[retry.overrides] must be a table of error kinds")
        return cls(
            jitter=_parse_bool(data.get("jitter", True)),
            jitter_ratio=float(data.get("jitter_ratio", 0.1)),
            overrides={str(kind): dict(values) for kind, values in overrides.items()},
        )


@dataclass
class RateLimitSettings:
    """Rate-limit and rotation settings.

    Attributes:
        default_reset_seconds: Window applied when a provider reports no reset time
        rotation_strategy: One of ROTATION_STRATEGIES
        quota_limit: Default quota limit per provider/model
        countdown_tick_seconds: Re-check interval while waiting for a reset
        wait_for_reset: Wait for the earliest reset instead of failing when
            every provider is rate limited
        max_wait_seconds: Longest reset wait the error handler will accept
        max_reset_waits: Reset waits allowed per run before it fails
    """

    default_reset_seconds: float = 1800.0
    rotation_strategy: str = "provider_first"
    quota_limit: int = 1000
    countdown_tick_seconds: float = 1.0
    wait_for_reset: bool = False
    max_wait_seconds: float = 3600.0
    max_reset_waits: int = 1

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "RateLimitSettings":
        return cls(
            default_reset_seconds=float(data.get("default_reset_seconds", 1800.0)),
            rotation_strategy=_normalize_strategy(str(data.get("rotation_strategy", "provider_first"))),
            quota_limit=int(data.get("quota_limit", 1000)),
            countdown_tick_seconds=float(data.get("countdown_tick_seconds", 1.0)),
            wait_for_reset=_parse_bool(data.get("wait_for_reset", False)),
            max_wait_seconds=float(data.get("max_wait_seconds", 3600.0)),
            max_reset_waits=int(data.get("max_reset_waits", 1)),
        )


@dataclass
class PersistenceSettings:
    """State persistence settings.

    Attributes:
        enabled: Whether coordination state is persisted
        state_dir: State directory, relative to the project directory
        lock_timeout_seconds: Bounded wait for the state file lock
    """

    enabled: bool = True
    state_dir: str = ".provider-harness"
    lock_timeout_seconds: float = 5.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "PersistenceSettings":
        return cls(
            enabled=_parse_bool(data.get("enabled", True)),
            state_dir=str(data.get("state_dir", ".provider-harness")),
            lock_timeout_seconds=float(data.get("lock_timeout_seconds", 5.0)),
        )


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "structured"

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "LoggingSettings":
        return cls(
            level=str(data.get("level", "INFO")).upper(),
            format=str(data.get("format", "structured")).lower(),
        )


@dataclass
class MetricsSettings:
    """Configuration for Prometheus metrics.

    Attributes:
        prometheus_enabled: Enable Prometheus metrics
        prometheus_port: HTTP server port for /metrics (0 = no server)
        prometheus_host: HTTP server host
        prometheus_namespace: Metric namespace prefix
    """

    prometheus_enabled: bool = False
    prometheus_port: int = 0
    prometheus_host: str = "0.0.0.0"
    prometheus_namespace: str = "provider_harness"

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "MetricsSettings":
        return cls(
            prometheus_enabled=_parse_bool(data.get("prometheus_enabled", False)),
            prometheus_port=int(data.get("prometheus_port", 0)),
            prometheus_host=str(data.get("prometheus_host", "0.0.0.0")),
            prometheus_namespace=str(data.get("prometheus_namespace", "provider_harness")),
        )


# =============================================================================
# Harness Configuration
# =============================================================================


@dataclass
class HarnessConfig:
    """Harness configuration with support for env vars and TOML overrides."""

    project_dir: Path = field(default_factory=Path.cwd)
    mode: str = "default"
    version: str = field(default_factory=lambda: _PACKAGE_VERSION)

    # Providers and routing
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    fallback_chain: List[str] = field(default_factory=list)
    load_balancing_enabled: bool = False
    model_switching_enabled: bool = True

    # Policy sections
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "HarnessConfig":
        """
        Create configuration from environment variables and optional TOML file.

        Priority (highest to lowest):
        1. Environment variables
        2. TOML config file
        3. Default values
        """
        config = cls()

        toml_path = config_file or os.environ.get("PROVIDER_HARNESS_CONFIG_FILE")
        if toml_path:
            config._load_toml(Path(toml_path))
        else:
            for default_path in DEFAULT_CONFIG_FILES:
                if Path(default_path).exists():
                    config._load_toml(Path(default_path))
                    break

        config._load_env()
        config.validate()
        return config

    @classmethod
    def from_toml(cls, path: Path) -> "HarnessConfig":
        """Create configuration from a TOML file only (no environment overrides)."""
        config = cls()
        config._load_toml(Path(path))
        config.validate()
        return config

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "HarnessConfig":
        """Create configuration from an already-parsed TOML document."""
        config = cls()
        config._apply_toml(data)
        config.validate()
        return config

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Error loading config file {path}: {e}") from e

        self._apply_toml(data)

    def _apply_toml(self, data: Dict[str, Any]) -> None:
        # Harness settings
        if "harness" in data:
            harness = data["harness"]
            if "project_dir" in harness:
                self.project_dir = Path(harness["project_dir"]).expanduser()
            if "mode" in harness:
                self.mode = str(harness["mode"])
            if "fallback_chain" in harness:
                self.fallback_chain = [str(name) for name in harness["fallback_chain"]]
            if "load_balancing" in harness:
                self.load_balancing_enabled = _parse_bool(harness["load_balancing"])
            if "model_switching" in harness:
                self.model_switching_enabled = _parse_bool(harness["model_switching"])

        # Provider definitions
        if "providers" in data:
            self.providers = {
                name: ProviderConfig.from_toml_dict(name, table)
                for name, table in data["providers"].items()
            }

        if "circuit_breaker" in data:
            self.circuit_breaker = CircuitBreakerSettings.from_toml_dict(data["circuit_breaker"])
        if "retry" in data:
            self.retry = RetrySettings.from_toml_dict(data["retry"])
        if "rate_limit" in data:
            self.rate_limit = RateLimitSettings.from_toml_dict(data["rate_limit"])
        if "persistence" in data:
            self.persistence = PersistenceSettings.from_toml_dict(data["persistence"])
        if "logging" in data:
            self.logging = LoggingSettings.from_toml_dict(data["logging"])
        if "metrics" in data:
            self.metrics = MetricsSettings.from_toml_dict(data["metrics"])

    def _load_env(self) -> None:
        """Load configuration from environment variables."""
        if project_dir := os.environ.get("PROVIDER_HARNESS_PROJECT_DIR"):
            self.project_dir = Path(project_dir).expanduser()
        if mode := os.environ.get("PROVIDER_HARNESS_MODE"):
            self.mode = mode

        # Logging
        if level := os.environ.get("PROVIDER_HARNESS_LOG_LEVEL"):
            self.logging.level = level.upper()
        if log_format := os.environ.get("PROVIDER_HARNESS_LOG_FORMAT"):
            self.logging.format = log_format.lower()

        # Routing
        if strategy := os.environ.get("PROVIDER_HARNESS_ROTATION_STRATEGY"):
            self.rate_limit.rotation_strategy = _normalize_strategy(strategy)
        if chain := os.environ.get("PROVIDER_HARNESS_FALLBACK_CHAIN"):
            self.fallback_chain = [name.strip() for name in chain.split(",") if name.strip()]

        # Thresholds
        self.circuit_breaker.failure_threshold = _env_number(
            "PROVIDER_HARNESS_FAILURE_THRESHOLD", self.circuit_breaker.failure_threshold, int
        )
        self.circuit_breaker.timeout_seconds = _env_number(
            "PROVIDER_HARNESS_CIRCUIT_TIMEOUT", self.circuit_breaker.timeout_seconds, float
        )
        self.rate_limit.default_reset_seconds = _env_number(
            "PROVIDER_HARNESS_DEFAULT_RESET_SECONDS", self.rate_limit.default_reset_seconds, float
        )
        self.rate_limit.quota_limit = _env_number(
            "PROVIDER_HARNESS_QUOTA_LIMIT", self.rate_limit.quota_limit, int
        )

        # Persistence
        if state_dir := os.environ.get("PROVIDER_HARNESS_STATE_DIR"):
            self.persistence.state_dir = state_dir
        self.persistence.lock_timeout_seconds = _env_number(
            "PROVIDER_HARNESS_LOCK_TIMEOUT", self.persistence.lock_timeout_seconds, float
        )
        if persistence_enabled := os.environ.get("PROVIDER_HARNESS_PERSISTENCE_ENABLED"):
            self.persistence.enabled = _parse_bool(persistence_enabled)

        # Metrics
        if prom_enabled := os.environ.get("PROVIDER_HARNESS_PROMETHEUS_ENABLED"):
            self.metrics.prometheus_enabled = _parse_bool(prom_enabled)
        self.metrics.prometheus_port = _env_number(
            "PROVIDER_HARNESS_PROMETHEUS_PORT", self.metrics.prometheus_port, int
        )

    def validate(self) -> None:
        """Check cross-references between sections.

        Raises:
            ConfigurationError: If the fallback chain names an unknown provider
                or a threshold is out of range
        """
        unknown = [name for name in self.fallback_chain if name not in self.providers]
        if unknown and self.providers:
            raise ConfigurationError(
                f"Fallback chain references unknown providers: {', '.join(unknown)}"
            )
        if self.circuit_breaker.failure_threshold < 1:
            raise ConfigurationError("circuit_breaker.failure_threshold must be >= 1")
        if self.rate_limit.default_reset_seconds < 0:
            raise ConfigurationError("rate_limit.default_reset_seconds must be >= 0")
        if self.persistence.lock_timeout_seconds < 0:
            raise ConfigurationError("persistence.lock_timeout_seconds must be >= 0")
        if self.rate_limit.max_reset_waits < 0:
            raise ConfigurationError("rate_limit.max_reset_waits must be >= 0")

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def provider(self, name: str) -> ProviderConfig:
        """Look up a provider by name.

        Raises:
            ConfigurationError: If the provider is not configured
        """
        try:
            return self.providers[name]
        except KeyError:
            raise ConfigurationError(f"Unknown provider: {name}") from None

    def model(self, provider: str, name: str) -> ModelConfig:
        """Look up a provider's model by name.

        Raises:
            ConfigurationError: If the provider or model is not configured
        """
        model = self.provider(provider).get_model(name)
        if model is None:
            raise ConfigurationError(f"Unknown model '{name}' for provider '{provider}'")
        return model

    def provider_names(self) -> List[str]:
        """Configured provider names, lowest priority value first."""
        return [
            p.name for p in sorted(self.providers.values(), key=lambda p: p.priority)
        ]

    def resolved_fallback_chain(self) -> List[str]:
        """Explicit fallback chain, or every provider in priority order."""
        return list(self.fallback_chain) if self.fallback_chain else self.provider_names()

    def quota_limit_for(self, provider: str, model: Optional[str] = None) -> int:
        """Quota limit for a combination: model, then provider, then global default."""
        provider_cfg = self.providers.get(provider)
        if provider_cfg is not None:
            if model:
                model_cfg = provider_cfg.get_model(model)
                if model_cfg is not None and model_cfg.quota_limit is not None:
                    return model_cfg.quota_limit
            if provider_cfg.quota_limit is not None:
                return provider_cfg.quota_limit
        return self.rate_limit.quota_limit

    def state_dir_path(self) -> Path:
        path = Path(self.persistence.state_dir).expanduser()
        return path if path.is_absolute() else self.project_dir / path

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        from provider_harness.core.logging_config import configure_logging

        configure_logging(level=self.logging.level, format=self.logging.format)

    def setup_metrics(self) -> bool:
        """Initialize the Prometheus exporter from [metrics]; returns whether it is enabled."""
        from provider_harness.core.prometheus import PrometheusConfig, get_prometheus_exporter

        exporter = get_prometheus_exporter(
            PrometheusConfig(
                enabled=self.metrics.prometheus_enabled,
                port=self.metrics.prometheus_port,
                host=self.metrics.prometheus_host,
                namespace=self.metrics.prometheus_namespace,
            )
        )
        if exporter.is_enabled() and self.metrics.prometheus_port:
            exporter.start_server()
        return exporter.is_enabled()


def _env_number(name: str, current: Any, cast: Any) -> Any:
    raw = os.environ.get(name)
    if not raw:
        return current
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid value for %s: %r", name, raw)
        return current


# Global configuration instance
_config: Optional[HarnessConfig] = None


def get_config() -> HarnessConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = HarnessConfig.from_env()
    return _config


def set_config(config: HarnessConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
