"""Resilience core: classification, backoff, health, rate limits and state.

Routing (rotation, provider_manager, error_handler) depends on the harness
configuration and is imported from its own modules.
"""

from provider_harness.core.backoff import BackoffCalculator, RetryPolicy, RetryStrategy
from provider_harness.core.circuit_breaker import HealthTracker
from provider_harness.core.classifier import (
    ErrorClassifier,
    ErrorKind,
    Recoverable,
    Severity,
    Terminal,
    classify,
)
from provider_harness.core.errors import (
    ConfigurationError,
    HarnessError,
    LockAcquisitionError,
    NoProviderAvailableError,
    ProviderAuthenticationError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    StatePersistenceError,
)
from provider_harness.core.models import HarnessState, HealthRecord, RateLimitRecord
from provider_harness.core.quota import QuotaTracker
from provider_harness.core.rate_limit import RateLimitDetection, RateLimitDetector, RateLimitTracker
from provider_harness.core.state_store import StateStore

__all__ = [
    "BackoffCalculator",
    "RetryPolicy",
    "RetryStrategy",
    "HealthTracker",
    "ErrorClassifier",
    "ErrorKind",
    "Recoverable",
    "Severity",
    "Terminal",
    "classify",
    "ConfigurationError",
    "HarnessError",
    "LockAcquisitionError",
    "NoProviderAvailableError",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "StatePersistenceError",
    "HarnessState",
    "HealthRecord",
    "RateLimitRecord",
    "QuotaTracker",
    "RateLimitDetection",
    "RateLimitDetector",
    "RateLimitTracker",
    "StateStore",
]
