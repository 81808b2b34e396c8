"""Execution context propagation for retry runs.

Each ``execute_with_retry`` run binds a correlation ID plus the provider
and model currently serving it, so log records and events emitted deep in
the harness can be tied back to one logical request.

Usage:
    from provider_harness.core.context import execution_context, get_correlation_id

    with execution_context(provider="claude", model="sonnet") as ctx:
        print(ctx.correlation_id)  # e.g., "run_a1b2c3d4e5f6"
"""

from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

__all__ = [
    "correlation_id_var",
    "provider_var",
    "model_var",
    "start_time_var",
    "ExecutionContext",
    "generate_correlation_id",
    "execution_context",
    "set_execution_target",
    "get_correlation_id",
    "get_provider",
    "get_model",
    "get_start_time",
    "get_current_context",
]

# -----------------------------------------------------------------------------
# Context Variables
# -----------------------------------------------------------------------------

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
provider_var: ContextVar[Optional[str]] = ContextVar("provider", default=None)
model_var: ContextVar[Optional[str]] = ContextVar("model", default=None)
start_time_var: ContextVar[float] = ContextVar("start_time", default=0.0)


def generate_correlation_id(prefix: str = "run") -> str:
    """Generate a unique correlation ID with optional prefix.

    Format: {prefix}_{12_hex_chars}
    """
    return f"{prefix}_{secrets.token_hex(6)}"


@dataclass
class ExecutionContext:
    """Snapshot of the current execution context.

    Attributes:
        correlation_id: Identifier shared by every attempt of one run
        provider: Provider serving the run right now
        model: Model serving the run right now
        start_time: Run start timestamp
    """

    correlation_id: str = ""
    provider: Optional[str] = None
    model: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_ms(self) -> float:
        if self.start_time <= 0:
            return 0.0
        return (time.time() - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "provider": self.provider,
            "model": self.model,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@contextmanager
def execution_context(
    *,
    correlation_id: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> Generator[ExecutionContext, None, None]:
    """Bind execution context variables for the duration of the block.

    Args:
        correlation_id: Run ID (auto-generated if None)
        provider: Provider initially serving the run
        model: Model initially serving the run

    Yields:
        ExecutionContext snapshot
    """
    corr_id = correlation_id or generate_correlation_id()
    start = time.time()

    token_corr = correlation_id_var.set(corr_id)
    token_provider = provider_var.set(provider)
    token_model = model_var.set(model)
    token_start = start_time_var.set(start)

    try:
        yield ExecutionContext(
            correlation_id=corr_id,
            provider=provider,
            model=model,
            start_time=start,
        )
    finally:
        correlation_id_var.reset(token_corr)
        provider_var.reset(token_provider)
        model_var.reset(token_model)
        start_time_var.reset(token_start)


def set_execution_target(provider: Optional[str], model: Optional[str]) -> None:
    """Update the provider/model bound to the current run after a rotation."""
    provider_var.set(provider)
    model_var.set(model)


def get_correlation_id() -> str:
    """Current correlation ID, or empty string outside a run."""
    return correlation_id_var.get()


def get_provider() -> Optional[str]:
    return provider_var.get()


def get_model() -> Optional[str]:
    return model_var.get()


def get_start_time() -> float:
    return start_time_var.get()


def get_current_context() -> ExecutionContext:
    """Get a snapshot of all current context values."""
    return ExecutionContext(
        correlation_id=get_correlation_id(),
        provider=get_provider(),
        model=get_model(),
        start_time=get_start_time(),
    )
