"""
Rotation engine: proposes the next provider/model combination.

Every strategy skips combinations whose circuit is open, that are marked
unhealthy, or that are currently rate limited. When nothing qualifies the
engine returns ``NO_ROTATION`` and the caller must fail rather than loop.

Strategies:

    provider_first         next provider along the fallback chain, then
                           another model of the current provider
    model_first            next model of the current provider, then the
                           next provider
    cost_optimized         cheapest combination by cost_per_1k_tokens
    performance_optimized  best observed success rate / latency
    quota_aware            most remaining quota headroom

Ties are broken by provider priority, then by model order.
"""

import logging
import random
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from provider_harness.config import HarnessConfig
from provider_harness.core.circuit_breaker import HealthTracker
from provider_harness.core.errors import ConfigurationError
from provider_harness.core.models import HistoryEntryType, RotationHistoryEntry
from provider_harness.core.performance import PerformanceTracker
from provider_harness.core.quota import QuotaTracker
from provider_harness.core.rate_limit import RateLimitTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HISTORY_SIZE = 1000


class RotationStrategy(str, Enum):
    PROVIDER_FIRST = "provider_first"
    MODEL_FIRST = "model_first"
    COST_OPTIMIZED = "cost_optimized"
    PERFORMANCE_OPTIMIZED = "performance_optimized"
    QUOTA_AWARE = "quota_aware"


class RotationAction(str, Enum):
    PROVIDER_SWITCH = "provider_switch"
    MODEL_SWITCH = "model_switch"
    NONE = "none"


@dataclass(frozen=True)
class RotationDecision:
    """Proposed next combination.

    Attributes:
        action: provider_switch, model_switch, or none
        provider: Proposed provider (None when action is none)
        model: Proposed model (None = provider default)
        strategy: Strategy that produced the proposal
    """

    action: RotationAction
    provider: Optional[str] = None
    model: Optional[str] = None
    strategy: Optional[RotationStrategy] = None

    @property
    def found(self) -> bool:
        return self.action != RotationAction.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "provider": self.provider,
            "model": self.model,
            "strategy": self.strategy.value if self.strategy else None,
        }


NO_ROTATION = RotationDecision(action=RotationAction.NONE)


def weighted_choice(items: Sequence[T], weights: Sequence[float], rng: random.Random) -> T:
    """Cumulative-weight draw; a total weight of zero returns the first item."""
    if not items:
        raise ValueError("weighted_choice requires at least one item")
    if len(items) != len(weights):
        raise ValueError("items and weights differ in length")

    total = sum(max(0.0, w) for w in weights)
    if total <= 0:
        return items[0]

    draw = rng.random() * total
    cumulative = 0.0
    for item, weight in zip(items, weights):
        cumulative += max(0.0, weight)
        if draw < cumulative:
            return item
    return items[-1]


def _rotate(sequence: List[T], current: Optional[T]) -> List[T]:
    """Sequence reordered to start just after ``current`` (unchanged if absent)."""
    if current not in sequence:
        return list(sequence)
    index = sequence.index(current)
    return sequence[index + 1:] + sequence[: index + 1]


# =============================================================================
# Rotation Engine
# =============================================================================


class RotationEngine:
    """Selects the next provider/model combination.

    Args:
        config: Harness configuration (providers, fallback chain, weights, costs)
        health: Health tracker consulted for circuit/unhealthy exclusions
        rate_limits: Rate-limit tracker consulted for throttling exclusions
        quota: Quota tracker used by quota_aware
        performance: Request metrics used by performance_optimized and load balancing
        rng: Random source for weighted draws (injectable for tests)
    """

    def __init__(
        self,
        config: HarnessConfig,
        health: HealthTracker,
        rate_limits: RateLimitTracker,
        quota: QuotaTracker,
        performance: PerformanceTracker,
        *,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.health = health
        self.rate_limits = rate_limits
        self.quota = quota
        self.performance = performance
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def usable(self, provider: str, model: Optional[str] = None) -> bool:
        """Combination is healthy, its circuit is closed, and it is not rate limited."""
        return self.health.available(provider, model) and not self.rate_limits.limited(
            provider, model
        )

    def model_chain(self, provider: str) -> List[Optional[str]]:
        """Models of a provider in fallback order, default model first."""
        provider_cfg = self.config.provider(provider)
        names: List[Optional[str]] = list(provider_cfg.model_names())
        default = provider_cfg.resolved_default_model()
        if default in names:
            names.remove(default)
            names.insert(0, default)
        return names or [None]

    def usable_models(self, provider: str) -> List[Optional[str]]:
        return [m for m in self.model_chain(provider) if self.usable(provider, m)]

    def provider_order(self, current: Optional[str]) -> List[str]:
        """Fallback chain starting after ``current``, then any other configured provider."""
        chain = self.config.resolved_fallback_chain()
        ordered = _rotate(chain, current)
        ordered += [name for name in self.config.provider_names() if name not in ordered]
        return ordered

    def available_providers(
        self, exclude: Iterable[str] = (), after: Optional[str] = None
    ) -> List[str]:
        """Usable providers in fallback order, starting after ``after``."""
        excluded = set(exclude)
        return [
            name
            for name in self.provider_order(after)
            if name not in excluded and self.usable_models(name)
        ]

    def candidates(
        self, exclude: Optional[Tuple[str, Optional[str]]] = None
    ) -> List[Tuple[str, Optional[str]]]:
        """Every usable combination, in provider priority then model order."""
        combos: List[Tuple[str, Optional[str]]] = []
        for provider in self.config.provider_names():
            for model in self.usable_models(provider):
                if (provider, model) != exclude:
                    combos.append((provider, model))
        return combos

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def next_combination(
        self,
        current_provider: Optional[str],
        current_model: Optional[str] = None,
        strategy: Optional[str] = None,
    ) -> RotationDecision:
        """Propose the combination to switch to, or NO_ROTATION."""
        try:
            chosen = RotationStrategy(strategy or self.config.rate_limit.rotation_strategy)
        except ValueError:
            raise ConfigurationError(f"Unknown rotation strategy: {strategy}") from None

        if chosen == RotationStrategy.PROVIDER_FIRST:
            decision = self._next_provider(current_provider)
            if not decision.found and current_provider:
                decision = self._next_model(current_provider, current_model)
        elif chosen == RotationStrategy.MODEL_FIRST:
            decision = (
                self._next_model(current_provider, current_model)
                if current_provider
                else NO_ROTATION
            )
            if not decision.found:
                decision = self._next_provider(current_provider)
        else:
            decision = self._ranked(chosen, current_provider, current_model)

        if not decision.found:
            logger.info(
                "No rotation candidate from %s:%s (%s)",
                current_provider,
                current_model,
                chosen.value,
            )
            return NO_ROTATION
        return RotationDecision(
            action=decision.action,
            provider=decision.provider,
            model=decision.model,
            strategy=chosen,
        )

    def next_provider(self, current_provider: Optional[str]) -> RotationDecision:
        return self._next_provider(current_provider)

    def next_model(self, provider: str, current_model: Optional[str]) -> RotationDecision:
        return self._next_model(provider, current_model)

    def select_model(self, provider: str, exclude: Optional[str] = None) -> Optional[str]:
        """Best usable model of a provider, or None when it has none."""
        models = [m for m in self.usable_models(provider) if m != exclude or m is None]
        if not models:
            return None
        if self.config.load_balancing_enabled and len(models) > 1:
            return self._balanced(
                [(provider, m) for m in models],
                [self._model_weight(provider, m) for m in models],
            )[1]
        return models[0]

    def _next_provider(self, current: Optional[str]) -> RotationDecision:
        providers = self.available_providers(exclude=[current] if current else [], after=current)
        if not providers:
            return NO_ROTATION

        if self.config.load_balancing_enabled and len(providers) > 1:
            provider = self._balanced(
                [(p, None) for p in providers],
                [self.config.provider(p).weight for p in providers],
            )[0]
        else:
            provider = providers[0]

        return RotationDecision(
            action=RotationAction.PROVIDER_SWITCH,
            provider=provider,
            model=self.select_model(provider),
        )

    def _next_model(self, provider: Optional[str], current_model: Optional[str]) -> RotationDecision:
        if not provider or not self.config.model_switching_enabled:
            return NO_ROTATION
        if provider not in self.config.providers:
            return NO_ROTATION

        ordered = _rotate(self.model_chain(provider), current_model)
        models = [m for m in ordered if m != current_model and self.usable(provider, m)]
        if not models:
            return NO_ROTATION

        if self.config.load_balancing_enabled and len(models) > 1:
            model = self._balanced(
                [(provider, m) for m in models],
                [self._model_weight(provider, m) for m in models],
            )[1]
        else:
            model = models[0]
        return RotationDecision(action=RotationAction.MODEL_SWITCH, provider=provider, model=model)

    def _ranked(
        self,
        strategy: RotationStrategy,
        current_provider: Optional[str],
        current_model: Optional[str],
    ) -> RotationDecision:
        combos = self.candidates(
            exclude=(current_provider, current_model) if current_provider else None
        )
        if not combos:
            return NO_ROTATION

        priority = {name: index for index, name in enumerate(self.config.provider_names())}

        def tiebreak(combo: Tuple[str, Optional[str]]) -> Tuple[int, int]:
            provider, model = combo
            chain = self.model_chain(provider)
            return priority.get(provider, len(priority)), chain.index(model) if model in chain else 0

        if strategy == RotationStrategy.COST_OPTIMIZED:
            best = min(combos, key=lambda c: (self._cost(*c), tiebreak(c)))
        elif strategy == RotationStrategy.PERFORMANCE_OPTIMIZED:
            best = min(combos, key=lambda c: (-self.performance.performance_score(*c), tiebreak(c)))
        else:
            best = min(combos, key=lambda c: (-self.quota.remaining(*c), tiebreak(c)))

        provider, model = best
        action = (
            RotationAction.MODEL_SWITCH
            if provider == current_provider
            else RotationAction.PROVIDER_SWITCH
        )
        return RotationDecision(action=action, provider=provider, model=model)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _balanced(
        self, combos: List[Tuple[str, Optional[str]]], weights: List[float]
    ) -> Tuple[str, Optional[str]]:
        """Lowest-load combinations, then a weighted draw among those tied."""
        loads = [self.performance.load_score(p, m) for p, m in combos]
        lowest = min(loads)
        tied = [(combo, weight) for combo, weight, load in zip(combos, weights, loads) if load == lowest]
        return weighted_choice([c for c, _ in tied], [w for _, w in tied], self._rng)

    def _model_weight(self, provider: str, model: Optional[str]) -> float:
        if model is None:
            return float(self.config.provider(provider).weight)
        model_cfg = self.config.provider(provider).get_model(model)
        return float(model_cfg.weight) if model_cfg is not None else 1.0

    def _cost(self, provider: str, model: Optional[str]) -> float:
        if model is None:
            return float("inf")
        model_cfg = self.config.provider(provider).get_model(model)
        if model_cfg is None or model_cfg.cost_per_1k_tokens is None:
            return float("inf")
        return model_cfg.cost_per_1k_tokens


# =============================================================================
# Rotation History
# =============================================================================


class RotationHistory:
    """Bounded ring of retry/rotation entries, used for statistics only."""

    def __init__(self, maxlen: int = DEFAULT_HISTORY_SIZE):
        self._entries: Deque[RotationHistoryEntry] = deque(maxlen=maxlen)
        self._lock = Lock()

    def append(self, entry: RotationHistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[RotationHistoryEntry]:
        with self._lock:
            return list(self._entries)

    def restore(self, entries: Iterable[RotationHistoryEntry]) -> None:
        with self._lock:
            self._entries.clear()
            self._entries.extend(entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def statistics(self) -> Dict[str, Any]:
        """Totals, breakdowns by reason and provider, mean duration, success rate."""
        entries = self.entries()
        rotations = [e for e in entries if e.type == HistoryEntryType.ROTATION]
        successes = sum(1 for e in entries if e.success)
        durations = [e.duration for e in entries]
        return {
            "total_entries": len(entries),
            "total_rotations": len(rotations),
            "total_retries": len(entries) - len(rotations),
            "successful": successes,
            "failed": len(entries) - successes,
            "success_rate": round(successes / len(entries), 4) if entries else 0.0,
            "average_duration": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "by_reason": dict(Counter(e.reason for e in entries)),
            "by_provider": dict(Counter(e.from_provider for e in entries if e.from_provider)),
        }
