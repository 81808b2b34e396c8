"""
Unit tests for provider_harness.core.rotation.

Providers come from the shared three-provider config: claude (sonnet,
haiku), gemini (pro, flash) and cursor (auto), chained in that order.
"""

import random
from collections import Counter

import pytest

from provider_harness.core.circuit_breaker import HealthTracker
from provider_harness.core.errors import ConfigurationError
from provider_harness.core.models import HistoryEntryType, RotationHistoryEntry
from provider_harness.core.performance import PerformanceTracker
from provider_harness.core.quota import QuotaTracker
from provider_harness.core.rate_limit import RateLimitTracker
from provider_harness.core.rotation import (
    NO_ROTATION,
    RotationAction,
    RotationEngine,
    RotationHistory,
    RotationStrategy,
    weighted_choice,
)


@pytest.fixture
def engine_factory(clock, events):
    def factory(config, seed=7):
        return RotationEngine(
            config,
            HealthTracker(clock=clock, events=events),
            RateLimitTracker(clock=clock),
            QuotaTracker(limit_for=config.quota_limit_for),
            PerformanceTracker(clock=clock),
            rng=random.Random(seed),
        )

    return factory


@pytest.fixture
def engine(engine_factory, harness_config):
    return engine_factory(harness_config)


# =============================================================================
# Weighted Selection
# =============================================================================


class TestWeightedChoice:
    """Test the cumulative weighted draw."""

    def test_frequencies_follow_weights(self):
        """Over many draws each item is chosen in proportion to its weight."""
        rng = random.Random(12345)
        counts = Counter(weighted_choice(["a", "b"], [3, 2], rng) for _ in range(10000))
        assert counts["a"] / 10000 == pytest.approx(0.6, abs=0.03)
        assert counts["b"] / 10000 == pytest.approx(0.4, abs=0.03)

    def test_zero_total_returns_first(self):
        """A zero total weight deterministically returns the first item."""
        assert weighted_choice(["a", "b"], [0, 0], random.Random(1)) == "a"

    def test_zero_weight_item_never_chosen(self):
        """Items with zero weight are never drawn when others have weight."""
        rng = random.Random(5)
        assert {weighted_choice(["a", "b"], [0, 1], rng) for _ in range(200)} == {"b"}

    def test_invalid_inputs(self):
        """Empty or mismatched inputs are rejected."""
        with pytest.raises(ValueError):
            weighted_choice([], [], random.Random())
        with pytest.raises(ValueError):
            weighted_choice(["a"], [1, 2], random.Random())


# =============================================================================
# Availability
# =============================================================================


class TestAvailability:
    """Test candidate filtering."""

    def test_model_chain_puts_default_first(self, engine):
        """The default model leads the model chain."""
        assert engine.model_chain("claude") == ["sonnet", "haiku"]
        assert engine.model_chain("cursor") == ["auto"]

    def test_model_chain_without_models(self, engine_factory, config_factory):
        """A provider without models uses the provider default (None)."""
        config = config_factory(
            harness={"fallback_chain": ["solo"]},
            providers={"solo": {"priority": 1}},
        )
        assert engine_factory(config).model_chain("solo") == [None]

    def test_usable_excludes_limited_and_open(self, engine):
        """Rate-limited and circuit-open combinations are not usable."""
        engine.rate_limits.mark("claude", "sonnet")
        engine.health.mark_failure_exhausted("gemini")
        assert not engine.usable("claude", "sonnet")
        assert engine.usable("claude", "haiku")
        assert not engine.usable("gemini", "pro")
        assert engine.usable_models("claude") == ["haiku"]

    def test_available_providers_wrap_around(self, engine):
        """Provider order starts after the given provider and wraps."""
        assert engine.available_providers(after="gemini") == ["cursor", "claude", "gemini"]
        assert engine.available_providers(exclude=["claude"], after="claude") == ["gemini", "cursor"]

    def test_candidates(self, engine):
        """candidates() lists usable combinations in priority then model order."""
        engine.rate_limits.mark("gemini")
        assert engine.candidates(exclude=("claude", "sonnet")) == [("claude", "haiku"), ("cursor", "auto")]


# =============================================================================
# Strategies
# =============================================================================


class TestProviderFirst:
    """Test the provider_first strategy."""

    def test_next_in_chain(self, engine):
        """The next provider in the chain is proposed with its default model."""
        decision = engine.next_combination("claude", "sonnet")
        assert decision.action == RotationAction.PROVIDER_SWITCH
        assert decision.provider == "gemini"
        assert decision.model == "pro"
        assert decision.strategy == RotationStrategy.PROVIDER_FIRST

    def test_wraps_around_chain(self, engine):
        """The chain wraps from the last provider to the first."""
        assert engine.next_combination("gemini", "pro").provider == "cursor"
        decision = engine.next_combination("cursor", "auto")
        assert (decision.provider, decision.model) == ("claude", "sonnet")

    def test_skips_limited_and_open(self, engine):
        """Rate-limited and circuit-open providers are skipped."""
        engine.rate_limits.mark("gemini")
        assert engine.next_combination("claude", "sonnet").provider == "cursor"

        engine.rate_limits.clear("gemini")
        engine.health.mark_failure_exhausted("gemini")
        assert engine.next_combination("claude", "sonnet").provider == "cursor"

    def test_skips_limited_default_model(self, engine):
        """A provider's first usable model is chosen when its default is limited."""
        engine.rate_limits.mark("gemini", "pro")
        decision = engine.next_combination("claude", "sonnet")
        assert (decision.provider, decision.model) == ("gemini", "flash")

    def test_falls_back_to_model_switch(self, engine):
        """With no other provider usable, another model of the current provider is tried."""
        engine.rate_limits.mark("gemini")
        engine.rate_limits.mark("cursor")
        decision = engine.next_combination("claude", "sonnet")
        assert decision.action == RotationAction.MODEL_SWITCH
        assert (decision.provider, decision.model) == ("claude", "haiku")

    def test_nothing_available(self, engine):
        """When every combination is excluded the decision is none."""
        engine.rate_limits.mark("gemini")
        engine.rate_limits.mark("cursor")
        engine.rate_limits.mark("claude", "haiku")
        decision = engine.next_combination("claude", "sonnet")
        assert decision == NO_ROTATION
        assert not decision.found

    def test_model_switching_disabled(self, engine_factory, config_factory):
        """Disabling model switching removes the model fallback."""
        engine = engine_factory(config_factory(harness={"model_switching": False}))
        engine.rate_limits.mark("gemini")
        engine.rate_limits.mark("cursor")
        assert not engine.next_combination("claude", "sonnet").found

    def test_no_current_provider(self, engine):
        """Without a current provider the first usable provider is chosen."""
        assert engine.next_combination(None).provider == "claude"

    def test_load_balancing_prefers_low_load(self, engine_factory, config_factory):
        """With load balancing, the least-loaded provider wins."""
        engine = engine_factory(config_factory(harness={"load_balancing": True}))
        engine.performance.record("gemini", success=True, duration=1.0)
        assert engine.next_combination("claude", "sonnet").provider == "cursor"

    def test_load_balancing_draws_among_ties(self, engine_factory, config_factory):
        """Tied loads are broken by a weighted draw."""
        config = config_factory(harness={"load_balancing": True})
        chosen = {
            engine_factory(config, seed=seed).next_combination("claude", "sonnet").provider
            for seed in range(40)
        }
        assert chosen == {"gemini", "cursor"}


class TestModelFirst:
    """Test the model_first strategy."""

    def test_next_model_first(self, engine):
        """Another model of the current provider is preferred."""
        decision = engine.next_combination("claude", "sonnet", "model_first")
        assert decision.action == RotationAction.MODEL_SWITCH
        assert decision.model == "haiku"

    def test_wraps_model_chain(self, engine):
        """The model chain wraps from the last model."""
        assert engine.next_combination("claude", "haiku", "model_first").model == "sonnet"

    def test_falls_back_to_next_provider(self, engine):
        """With no other usable model the next provider is proposed."""
        engine.rate_limits.mark("claude", "haiku")
        decision = engine.next_combination("claude", "sonnet", "model_first")
        assert decision.action == RotationAction.PROVIDER_SWITCH
        assert decision.provider == "gemini"

    def test_single_model_provider(self, engine):
        """A provider with one model moves on to the next provider."""
        decision = engine.next_combination("cursor", "auto", RotationStrategy.MODEL_FIRST.value)
        assert (decision.provider, decision.model) == ("claude", "sonnet")


class TestRankedStrategies:
    """Test cost, performance and quota strategies."""

    def test_cost_optimized(self, engine):
        """The cheapest usable combination is chosen."""
        decision = engine.next_combination("claude", "sonnet", "cost_optimized")
        assert (decision.provider, decision.model) == ("gemini", "flash")
        assert decision.action == RotationAction.PROVIDER_SWITCH

    def test_cost_optimized_skips_limited(self, engine):
        """Limited combinations are not considered."""
        engine.rate_limits.mark("gemini", "flash")
        decision = engine.next_combination("claude", "sonnet", "cost_optimized")
        assert (decision.provider, decision.model) == ("claude", "haiku")
        assert decision.action == RotationAction.MODEL_SWITCH

    def test_performance_optimized_tie_uses_priority(self, engine):
        """Without observations, ties fall to provider priority then model order."""
        decision = engine.next_combination("claude", "sonnet", "performance_optimized")
        assert (decision.provider, decision.model) == ("claude", "haiku")

    def test_performance_optimized(self, engine):
        """Poorly performing combinations lose to untried ones."""
        engine.performance.record("claude", "haiku", success=False)
        decision = engine.next_combination("claude", "sonnet", "performance_optimized")
        assert (decision.provider, decision.model) == ("gemini", "pro")

    def test_quota_aware(self, engine):
        """The combination with the most headroom is chosen."""
        engine.quota.record_usage("claude", "haiku", amount=10)
        decision = engine.next_combination("claude", "sonnet", "quota_aware")
        assert (decision.provider, decision.model) == ("gemini", "pro")

    def test_ranked_nothing_available(self, engine):
        """Ranked strategies report none when no candidate remains."""
        for provider in ("claude", "gemini", "cursor"):
            engine.health.mark_auth_failure(provider)
        assert engine.next_combination("claude", "sonnet", "cost_optimized") == NO_ROTATION

    def test_unknown_strategy(self, engine):
        """Unknown strategy names are configuration errors."""
        with pytest.raises(ConfigurationError):
            engine.next_combination("claude", "sonnet", "round_robin")


# =============================================================================
# History
# =============================================================================


class TestRotationHistory:
    """Test the bounded history and its statistics."""

    def _entry(self, clock, entry_type, provider, success, reason, duration=1.0):
        return RotationHistoryEntry(
            timestamp=clock(),
            type=entry_type,
            from_provider=provider,
            success=success,
            reason=reason,
            duration=duration,
        )

    def test_statistics(self, clock):
        """Statistics aggregate by type, reason and provider."""
        history = RotationHistory()
        history.append(self._entry(clock, HistoryEntryType.ROTATION, "claude", True, "rate_limit", 2.0))
        history.append(self._entry(clock, HistoryEntryType.RETRY, "claude", False, "timeout", 1.0))
        history.append(self._entry(clock, HistoryEntryType.RETRY, "gemini", True, "success", 3.0))

        stats = history.statistics()
        assert stats["total_entries"] == 3
        assert stats["total_rotations"] == 1
        assert stats["total_retries"] == 2
        assert stats["successful"] == 2
        assert stats["failed"] == 1
        assert stats["success_rate"] == 0.6667
        assert stats["average_duration"] == 2.0
        assert stats["by_reason"] == {"rate_limit": 1, "timeout": 1, "success": 1}
        assert stats["by_provider"] == {"claude": 2, "gemini": 1}

    def test_empty_statistics(self):
        """An empty history reports zeros."""
        stats = RotationHistory().statistics()
        assert stats["total_entries"] == 0
        assert stats["success_rate"] == 0.0

    def test_bounded(self, clock):
        """Only the most recent maxlen entries are kept."""
        history = RotationHistory(maxlen=2)
        for reason in ("a", "b", "c"):
            history.append(self._entry(clock, HistoryEntryType.RETRY, "claude", True, reason))
        assert len(history) == 2
        assert [e.reason for e in history.entries()] == ["b", "c"]

    def test_restore_and_clear(self, clock):
        """restore() replaces entries; clear() empties the history."""
        history = RotationHistory()
        history.restore([self._entry(clock, HistoryEntryType.ROTATION, "claude", True, "manual")])
        assert len(history) == 1
        history.clear()
        assert len(history) == 0
