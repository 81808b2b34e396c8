"""Tests for HarnessConfig loading, environment overrides and validation."""

import os

import pytest

from provider_harness import config as config_module
from provider_harness.config import HarnessConfig, get_config, set_config
from provider_harness.core.errors import ConfigurationError
from provider_harness.core.providers import ProviderType


CONFIG_TOML = """
[harness]
mode = "review"
fallback_chain = ["claude", "gemini"]
load_balancing = true

[providers.claude]
priority = 1
weight = 3
quota_limit = 200
default_model = "haiku"
models = [
    { name = "sonnet", weight = 2, quota_limit = 50, cost_per_1k_tokens = 0.003 },
    { name = "haiku", timeout = 30 },
]

[providers.gemini]
type = "usage_based"
priority = 2
models = ["pro", "flash"]

[rate_limit]
rotation_strategy = "cost-optimized"
quota_limit = 500

[circuit_breaker]
failure_threshold = 4
timeout_seconds = 60

[retry]
jitter = false

[retry.overrides.timeout]
max_retries = 6
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from harness env vars and stray config files in cwd."""
    for key in list(os.environ):
        if key.startswith("PROVIDER_HARNESS_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "provider-harness.toml"
    path.write_text(CONFIG_TOML)
    return path


def _providers(**overrides):
    data = {
        "claude": {"priority": 1, "models": ["sonnet"]},
        "gemini": {"priority": 2, "models": ["pro"]},
    }
    data.update(overrides)
    return data


class TestTomlLoading:
    """Test loading from TOML files."""

    def test_defaults(self):
        """A config with nothing loaded carries the documented defaults."""
        config = HarnessConfig()
        assert config.mode == "default"
        assert config.providers == {}
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.timeout_seconds == 300.0
        assert config.rate_limit.default_reset_seconds == 1800.0
        assert config.rate_limit.rotation_strategy == "provider_first"
        assert config.persistence.enabled is True
        assert config.rate_limit.max_reset_waits == 1

    def test_from_toml(self, config_path):
        """Sections and provider tables are parsed."""
        config = HarnessConfig.from_toml(config_path)

        assert config.mode == "review"
        assert config.fallback_chain == ["claude", "gemini"]
        assert config.load_balancing_enabled is True
        assert config.rate_limit.rotation_strategy == "cost_optimized"
        assert config.circuit_breaker.failure_threshold == 4
        assert config.retry.jitter is False
        assert config.retry.overrides == {"timeout": {"max_retries": 6}}

        claude = config.provider("claude")
        assert claude.type == ProviderType.SUBSCRIPTION
        assert claude.model_names() == ["sonnet", "haiku"]
        assert claude.resolved_default_model() == "haiku"
        assert config.model("claude", "sonnet").cost_per_1k_tokens == 0.003
        assert config.model("claude", "haiku").timeout == 30.0

        gemini = config.provider("gemini")
        assert gemini.type == ProviderType.USAGE_BASED
        assert gemini.resolved_default_model() == "pro"

    def test_missing_file_keeps_defaults(self, tmp_path):
        """A missing file is logged and ignored."""
        config = HarnessConfig.from_toml(tmp_path / "absent.toml")
        assert config.providers == {}

    def test_invalid_toml_raises(self, tmp_path):
        """Undecodable TOML is a configuration error."""
        path = tmp_path / "broken.toml"
        path.write_text("[harness\nmode = ")
        with pytest.raises(ConfigurationError):
            HarnessConfig.from_toml(path)

    def test_default_file_discovered(self, config_path):
        """from_env picks up provider-harness.toml from the working directory."""
        config = HarnessConfig.from_env()
        assert config.mode == "review"

    def test_config_file_env_var(self, tmp_path, monkeypatch):
        """PROVIDER_HARNESS_CONFIG_FILE points at an explicit file."""
        path = tmp_path / "elsewhere.toml"
        path.write_text('[harness]\nmode = "execute"\n')
        monkeypatch.setenv("PROVIDER_HARNESS_CONFIG_FILE", str(path))
        assert HarnessConfig.from_env().mode == "execute"


class TestEnvOverrides:
    """Test environment variables over TOML values."""

    def test_env_wins_over_toml(self, config_path, monkeypatch):
        """Environment values override the file."""
        monkeypatch.setenv("PROVIDER_HARNESS_MODE", "ci")
        monkeypatch.setenv("PROVIDER_HARNESS_FAILURE_THRESHOLD", "2")
        monkeypatch.setenv("PROVIDER_HARNESS_FALLBACK_CHAIN", "gemini, claude")
        monkeypatch.setenv("PROVIDER_HARNESS_ROTATION_STRATEGY", "model_first")
        monkeypatch.setenv("PROVIDER_HARNESS_PERSISTENCE_ENABLED", "false")
        monkeypatch.setenv("PROVIDER_HARNESS_LOG_LEVEL", "debug")

        config = HarnessConfig.from_env(str(config_path))

        assert config.mode == "ci"
        assert config.circuit_breaker.failure_threshold == 2
        assert config.fallback_chain == ["gemini", "claude"]
        assert config.rate_limit.rotation_strategy == "model_first"
        assert config.persistence.enabled is False
        assert config.logging.level == "DEBUG"

    def test_invalid_number_ignored(self, config_path, monkeypatch):
        """Unparseable numbers keep the previous value."""
        monkeypatch.setenv("PROVIDER_HARNESS_LOCK_TIMEOUT", "soon")
        monkeypatch.setenv("PROVIDER_HARNESS_CIRCUIT_TIMEOUT", "90")

        config = HarnessConfig.from_env(str(config_path))

        assert config.persistence.lock_timeout_seconds == 5.0
        assert config.circuit_breaker.timeout_seconds == 90.0

    def test_env_chain_is_validated(self, config_path, monkeypatch):
        """An env fallback chain naming unknown providers is rejected."""
        monkeypatch.setenv("PROVIDER_HARNESS_FALLBACK_CHAIN", "claude,openai")
        with pytest.raises(ConfigurationError, match="openai"):
            HarnessConfig.from_env(str(config_path))


class TestValidation:
    """Test configuration errors."""

    def test_unknown_chain_provider(self):
        """Chains may only name configured providers."""
        with pytest.raises(ConfigurationError, match="cursor"):
            HarnessConfig.from_toml_dict(
                {"harness": {"fallback_chain": ["claude", "cursor"]}, "providers": _providers()}
            )

    def test_threshold_below_one(self):
        """failure_threshold must be at least 1."""
        with pytest.raises(ConfigurationError):
            HarnessConfig.from_toml_dict({"circuit_breaker": {"failure_threshold": 0}})

    def test_negative_reset_window(self):
        """default_reset_seconds cannot be negative."""
        with pytest.raises(ConfigurationError):
            HarnessConfig.from_toml_dict({"rate_limit": {"default_reset_seconds": -1}})

    def test_undeclared_default_model(self):
        """default_model must be one of the declared models."""
        with pytest.raises(ConfigurationError, match="opus"):
            HarnessConfig.from_toml_dict(
                {"providers": _providers(claude={"models": ["sonnet"], "default_model": "opus"})}
            )

    def test_unknown_provider_type(self):
        """Provider types are limited to the known billing models."""
        with pytest.raises(ConfigurationError, match="enterprise"):
            HarnessConfig.from_toml_dict({"providers": _providers(claude={"type": "enterprise"})})

    def test_model_without_name(self):
        """Model tables need a name."""
        with pytest.raises(ConfigurationError):
            HarnessConfig.from_toml_dict({"providers": _providers(claude={"models": [{"weight": 2}]})})

    def test_retry_overrides_must_be_table(self):
        """[retry.overrides] must map error kinds to tables."""
        with pytest.raises(ConfigurationError):
            HarnessConfig.from_toml_dict({"retry": {"overrides": "fast"}})

    def test_negative_reset_waits(self):
        """max_reset_waits cannot be negative."""
        with pytest.raises(ConfigurationError, match="max_reset_waits"):
            HarnessConfig.from_toml_dict({"rate_limit": {"max_reset_waits": -1}})

    def test_invalid_strategy_falls_back(self):
        """Unknown strategies fall back to provider_first with a warning."""
        config = HarnessConfig.from_toml_dict({"rate_limit": {"rotation_strategy": "round_robin"}})
        assert config.rate_limit.rotation_strategy == "provider_first"


class TestAccessors:
    """Test lookups derived from the configuration."""

    def test_unknown_lookups_raise(self, config_path):
        """Unknown providers and models raise ConfigurationError."""
        config = HarnessConfig.from_toml(config_path)
        with pytest.raises(ConfigurationError):
            config.provider("openai")
        with pytest.raises(ConfigurationError):
            config.model("claude", "opus")

    def test_quota_limit_precedence(self, config_path):
        """Model limit, then provider limit, then the global default."""
        config = HarnessConfig.from_toml(config_path)
        assert config.quota_limit_for("claude", "sonnet") == 50
        assert config.quota_limit_for("claude", "haiku") == 200
        assert config.quota_limit_for("claude") == 200
        assert config.quota_limit_for("gemini", "pro") == 500
        assert config.quota_limit_for("openai") == 500

    def test_chain_defaults_to_priority_order(self):
        """Without an explicit chain every provider is used by priority."""
        config = HarnessConfig.from_toml_dict(
            {"providers": _providers(claude={"priority": 9, "models": ["sonnet"]})}
        )
        assert config.provider_names() == ["gemini", "claude"]
        assert config.resolved_fallback_chain() == ["gemini", "claude"]

    def test_state_dir_path(self, tmp_path):
        """Relative state dirs resolve under the project; absolute ones are kept."""
        config = HarnessConfig.from_toml_dict({"harness": {"project_dir": str(tmp_path)}})
        assert config.state_dir_path() == tmp_path / ".provider-harness"

        absolute = tmp_path / "state"
        config.persistence.state_dir = str(absolute)
        assert config.state_dir_path() == absolute


class TestGlobalConfig:
    """Test the module-level configuration instance."""

    def test_set_and_get(self, monkeypatch):
        """set_config replaces the instance get_config returns."""
        monkeypatch.setattr(config_module, "_config", None)
        config = HarnessConfig(mode="pinned")
        set_config(config)
        assert get_config() is config

    def test_get_builds_from_env(self, monkeypatch):
        """get_config lazily loads from the environment."""
        monkeypatch.setattr(config_module, "_config", None)
        monkeypatch.setenv("PROVIDER_HARNESS_MODE", "lazy")
        assert get_config().mode == "lazy"
