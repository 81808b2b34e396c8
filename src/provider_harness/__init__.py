"""Provider Harness - resilient routing across AI providers and models."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("provider-harness")
except PackageNotFoundError:
    # Package not installed (development mode without editable install)
    __version__ = "0.1.0"

from provider_harness.config import HarnessConfig, get_config, set_config
from provider_harness.core.error_handler import ErrorHandler, ExecutionResult
from provider_harness.core.provider_manager import ProviderManager
from provider_harness.core.state_store import StateStore

__all__ = [
    "__version__",
    "HarnessConfig",
    "get_config",
    "set_config",
    "ErrorHandler",
    "ExecutionResult",
    "ProviderManager",
    "StateStore",
]
