"""
Backoff delays for the retry orchestrator.

Each error kind maps to a ``RetryPolicy`` (see ``classifier.py``); this
module turns a policy and a zero-based attempt number into a delay.

Strategies:

    exponential_backoff  min(max_delay, base_delay * exponential_base ** attempt)
    linear_backoff       min(max_delay, base_delay * attempt)
    fixed_delay          base_delay
    immediate_fail       0, and the policy allows no retries

Example usage:

    from provider_harness.core.backoff import BackoffCalculator, RetryPolicy, RetryStrategy

    calculator = BackoffCalculator(jitter=False)
    policy = RetryPolicy(RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=3, base_delay=5, max_delay=120)
    calculator.delay_for(policy, attempt=2)  # 20.0
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional
import random

from provider_harness.core.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class RetryStrategy(str, Enum):
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"
    FIXED_DELAY = "fixed_delay"
    IMMEDIATE_FAIL = "immediate_fail"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters for one error kind.

    Attributes:
        strategy: How the delay grows between attempts
        max_retries: Retries allowed on the same combination before rotating
        base_delay: Initial (or constant) delay in seconds
        max_delay: Upper bound on any computed delay
        exponential_base: Growth factor for exponential backoff
    """

    strategy: RetryStrategy
    max_retries: int = 0
    base_delay: float = 0.0
    max_delay: float = 0.0
    exponential_base: float = 2.0

    @property
    def retryable(self) -> bool:
        return self.strategy != RetryStrategy.IMMEDIATE_FAIL and self.max_retries > 0

    def with_overrides(self, overrides: Dict[str, Any]) -> "RetryPolicy":
        """Return a copy with configured overrides applied.

        Raises:
            ConfigurationError: For unknown keys or an unknown strategy name
        """
        known = {"strategy", "max_retries", "base_delay", "max_delay", "exponential_base"}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"Unknown retry override keys: {', '.join(sorted(unknown))}")

        changes: Dict[str, Any] = {}
        if "strategy" in overrides:
            try:
                changes["strategy"] = RetryStrategy(str(overrides["strategy"]))
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unknown retry strategy: {overrides['strategy']!r}"
                ) from exc
        if "max_retries" in overrides:
            changes["max_retries"] = int(overrides["max_retries"])
        for key in ("base_delay", "max_delay", "exponential_base"):
            if key in overrides:
                changes[key] = float(overrides[key])

        policy = replace(self, **changes)
        if policy.strategy == RetryStrategy.IMMEDIATE_FAIL:
            policy = replace(policy, max_retries=0)
        return policy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "exponential_base": self.exponential_base,
        }


IMMEDIATE_FAIL_POLICY = RetryPolicy(RetryStrategy.IMMEDIATE_FAIL)


# ---------------------------------------------------------------------------
# Delay Computation
# ---------------------------------------------------------------------------


def delay(base: float, max_delay: float, exponential_base: float, attempt: int) -> float:
    """Exponential delay for a zero-based attempt, capped at ``max_delay``."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return float(min(max_delay, base * (exponential_base ** attempt)))


class BackoffCalculator:
    """Computes retry delays with optional bounded jitter.

    Jitter multiplies the computed delay by a factor drawn uniformly from
    ``[1 - jitter_ratio, 1 + jitter_ratio]`` and is then capped at the
    policy's ``max_delay``.

    Attributes:
        jitter: Whether jitter is applied by default
        jitter_ratio: Maximum relative perturbation
    """

    def __init__(
        self,
        *,
        jitter: bool = True,
        jitter_ratio: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        if not 0 <= jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")
        self.jitter = jitter
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    def delay(self, base: float, max_delay: float, exponential_base: float, attempt: int) -> float:
        return delay(base, max_delay, exponential_base, attempt)

    def raw_delay(self, policy: RetryPolicy, attempt: int) -> float:
        """Delay for ``attempt`` (zero-based) under ``policy``, without jitter."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")

        if policy.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            return delay(policy.base_delay, policy.max_delay, policy.exponential_base, attempt)
        if policy.strategy == RetryStrategy.LINEAR_BACKOFF:
            return float(min(policy.max_delay, policy.base_delay * attempt))
        if policy.strategy == RetryStrategy.FIXED_DELAY:
            return float(policy.base_delay)
        return 0.0

    def delay_for(self, policy: RetryPolicy, attempt: int, jitter: Optional[bool] = None) -> float:
        """Delay for ``attempt`` under ``policy``, jittered unless disabled."""
        value = self.raw_delay(policy, attempt)
        use_jitter = self.jitter if jitter is None else jitter
        if not use_jitter or value <= 0:
            return value

        cap = max(policy.max_delay, policy.base_delay)
        return self.apply_jitter(value, cap)

    def apply_jitter(self, value: float, cap: float) -> float:
        factor = 1.0 + self._rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, min(cap, value * factor))
