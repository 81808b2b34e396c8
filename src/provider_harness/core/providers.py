"""
Provider invocation contracts for provider-harness.

The harness never talks to a provider itself. Callers supply an object
implementing ``ProviderInvoker`` (a subprocess wrapper, an HTTP client, an
SDK call) and the error handler drives it through ``invocation_work``.

Design principles:
- Frozen dataclasses for immutability
- Status codes normalized across backends
- Non-success results are raised as ``ProviderError`` so classification
  sees one failure shape
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

from provider_harness.core.errors import ProviderError, ProviderTimeoutError


class ProviderType(str, Enum):
    """
    Billing model of a provider.

    Values:
        SUBSCRIPTION: Flat-rate access; cost is not a routing concern
        USAGE_BASED: Billed per token; cost_optimized rotation applies
        PASSTHROUGH: Proxies another provider's credentials
    """

    SUBSCRIPTION = "subscription"
    USAGE_BASED = "usage_based"
    PASSTHROUGH = "passthrough"


class ProviderStatus(Enum):
    """
    Normalized execution outcomes reported by an invoker.

    Values:
        SUCCESS: Operation completed successfully
        TIMEOUT: Operation exceeded time limit (retryable)
        NOT_FOUND: Provider/resource not available (not retryable)
        INVALID_OUTPUT: Provider returned malformed response (not retryable)
        ERROR: Generic error during execution (retryable)
        CANCELED: Operation was explicitly canceled (not retryable)
    """

    SUCCESS = "success"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    INVALID_OUTPUT = "invalid_output"
    ERROR = "error"
    CANCELED = "canceled"

    def is_retryable(self) -> bool:
        """Check if this status represents a transient failure."""
        return self in (ProviderStatus.TIMEOUT, ProviderStatus.ERROR)


# Status -> classifier category hint carried on the raised ProviderError
_STATUS_CATEGORIES: Dict[ProviderStatus, str] = {
    ProviderStatus.TIMEOUT: "timeout",
    ProviderStatus.NOT_FOUND: "not_found",
    ProviderStatus.INVALID_OUTPUT: "parsing_error",
    ProviderStatus.ERROR: "provider_specific",
    ProviderStatus.CANCELED: "interrupted",
}


@dataclass(frozen=True)
class ProviderRequest:
    """
    Normalized request payload handed to an invoker.

    Attributes:
        prompt: The user's input prompt/message
        system_prompt: Optional system/instruction prompt
        timeout: Request timeout in seconds (None = model/provider default)
        max_tokens: Maximum output tokens (None = provider default)
        metadata: Arbitrary request metadata (tracing IDs, feature flags, etc.)
        attachments: File paths or URIs for multimodal inputs
    """

    prompt: str
    system_prompt: Optional[str] = None
    timeout: Optional[float] = None
    max_tokens: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    attachments: Sequence[str] = field(default_factory=list)


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting information reported by providers."""

    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ProviderResult:
    """
    Normalized provider response.

    Attributes:
        content: Final text output
        provider_id: Provider that produced the result
        model_used: Model that produced the result (None = provider default)
        status: ProviderStatus describing execution outcome
        tokens: Token usage data (if reported by provider)
        duration_ms: Execution duration in milliseconds
        stderr: Captured stderr/log output, used as the error message on failure
        raw_payload: Provider-specific metadata
    """

    content: str
    provider_id: str
    model_used: Optional[str] = None
    status: ProviderStatus = ProviderStatus.SUCCESS
    tokens: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: Optional[float] = None
    stderr: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ProviderStatus.SUCCESS

    def raise_for_status(self) -> "ProviderResult":
        """Return self on success, otherwise raise a ProviderError describing the failure."""
        if self.ok:
            return self

        message = (self.stderr or self.content or self.status.value).strip()
        if self.status == ProviderStatus.TIMEOUT:
            raise ProviderTimeoutError(
                message, provider=self.provider_id, model=self.model_used
            )
        raise ProviderError(
            message,
            provider=self.provider_id,
            model=self.model_used,
            category=_STATUS_CATEGORIES.get(self.status),
        )


class ProviderInvoker(Protocol):
    """Anything that can run a request against a provider/model."""

    def invoke(
        self, provider: str, model: Optional[str], request: ProviderRequest
    ) -> ProviderResult:
        ...


def invocation_work(
    invoker: ProviderInvoker, request: ProviderRequest
) -> Callable[[str, Optional[str]], ProviderResult]:
    """Adapt an invoker into the ``work(provider, model)`` shape execute_with_retry runs."""

    def work(provider: str, model: Optional[str]) -> ProviderResult:
        return invoker.invoke(provider, model, request).raise_for_status()

    return work


__all__ = [
    "ProviderType",
    "ProviderStatus",
    "ProviderRequest",
    "TokenUsage",
    "ProviderResult",
    "ProviderInvoker",
    "invocation_work",
]
