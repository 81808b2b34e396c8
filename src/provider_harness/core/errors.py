"""
Exception hierarchy for provider-harness.

Provider errors carry enough metadata (provider, model, status code,
category) for the error classifier to tag them without relying on
exception subclass dispatch.
"""

from typing import Optional


class HarnessError(Exception):
    """Base exception for harness failures."""


class ConfigurationError(HarnessError):
    """
    Raised when configuration is missing or inconsistent.

    Signals a programming/configuration defect, so the retry
    orchestrator never swallows it.
    """


class ProviderError(RuntimeError):
    """Error raised by a provider invocation.

    Attributes:
        provider: Provider that raised the error
        model: Model in use when the error occurred
        status_code: HTTP status code if applicable
        category: Free-form category hint (e.g. "rate_limit", "auth")
        retry_after: Seconds the provider asked us to wait, if reported
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        status_code: Optional[int] = None,
        category: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.category = category
        self.retry_after = retry_after


class ProviderRateLimitError(ProviderError):
    """Provider reported throttling or quota exhaustion."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            model=model,
            status_code=429,
            category="rate_limit",
            retry_after=retry_after,
        )


class ProviderAuthenticationError(ProviderError):
    """Provider rejected our credentials."""

    def __init__(
        self,
        message: str = "Authentication failed",
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            model=model,
            status_code=401,
            category="authentication",
        )


class ProviderTimeoutError(ProviderError):
    """Provider invocation exceeded its time budget."""

    def __init__(
        self,
        message: str = "Provider request timed out",
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(message, provider=provider, model=model, category="timeout")
        self.timeout_seconds = timeout_seconds


class LockAcquisitionError(HarnessError):
    """Raised when the state lock cannot be acquired within timeout."""

    def __init__(self, message: str, *, lock_path: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(message)
        self.lock_path = lock_path
        self.timeout = timeout


class StatePersistenceError(HarnessError):
    """Raised when harness state cannot be written."""


class NoProviderAvailableError(HarnessError):
    """Raised when every configured provider is excluded from routing."""
