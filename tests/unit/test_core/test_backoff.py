"""
Unit tests for provider_harness.core.backoff.
"""

import random

import pytest

from provider_harness.core.backoff import (
    IMMEDIATE_FAIL_POLICY,
    BackoffCalculator,
    RetryPolicy,
    RetryStrategy,
    delay,
)
from provider_harness.core.classifier import DEFAULT_POLICIES
from provider_harness.core.errors import ConfigurationError


class TestDelay:
    """Test the exponential delay formula."""

    def test_exponential_formula(self):
        """delay == base * exponential_base ** attempt."""
        assert delay(5, 120, 2, 0) == 5.0
        assert delay(5, 120, 2, 1) == 10.0
        assert delay(5, 120, 2, 4) == 80.0

    def test_capped_at_max(self):
        """Delays never exceed max_delay."""
        assert delay(5, 120, 2, 10) == 120.0

    def test_negative_attempt_rejected(self):
        """Attempts are zero-based; negatives are invalid."""
        with pytest.raises(ValueError):
            delay(1, 10, 2, -1)

    @pytest.mark.parametrize(
        "policy",
        [p for p in DEFAULT_POLICIES.values() if p.strategy == RetryStrategy.EXPONENTIAL_BACKOFF],
    )
    def test_every_exponential_kind_follows_formula(self, policy):
        """Every exponential default policy matches the closed-form delay."""
        calculator = BackoffCalculator(jitter=False)
        for attempt in range(6):
            expected = min(policy.max_delay, policy.base_delay * policy.exponential_base ** attempt)
            assert calculator.delay_for(policy, attempt) == expected


class TestStrategies:
    """Test each retry strategy without jitter."""

    @pytest.fixture
    def calculator(self):
        return BackoffCalculator(jitter=False)

    def test_linear(self, calculator):
        """Linear backoff is base * attempt, capped."""
        policy = RetryPolicy(RetryStrategy.LINEAR_BACKOFF, max_retries=5, base_delay=3, max_delay=10)
        assert calculator.delay_for(policy, 0) == 0.0
        assert calculator.delay_for(policy, 2) == 6.0
        assert calculator.delay_for(policy, 5) == 10.0

    def test_fixed(self, calculator):
        """Fixed delay ignores the attempt number."""
        policy = RetryPolicy(RetryStrategy.FIXED_DELAY, max_retries=2, base_delay=60, max_delay=60)
        assert calculator.delay_for(policy, 0) == 60.0
        assert calculator.delay_for(policy, 3) == 60.0

    def test_immediate_fail(self, calculator):
        """Immediate fail always yields zero and allows no retries."""
        assert calculator.delay_for(IMMEDIATE_FAIL_POLICY, 4) == 0.0
        assert not IMMEDIATE_FAIL_POLICY.retryable


class TestJitter:
    """Test bounded jitter."""

    def test_jitter_stays_within_ratio(self):
        """Jittered delays stay within +/- jitter_ratio of the raw delay."""
        calculator = BackoffCalculator(jitter=True, jitter_ratio=0.1, rng=random.Random(42))
        policy = RetryPolicy(RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=3, base_delay=5, max_delay=120)
        for _ in range(200):
            value = calculator.delay_for(policy, 2)
            assert 18.0 <= value <= 22.0

    def test_jitter_never_exceeds_cap(self):
        """Jitter is applied before the max_delay cap."""
        calculator = BackoffCalculator(jitter=True, jitter_ratio=0.5, rng=random.Random(1))
        policy = RetryPolicy(RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=3, base_delay=5, max_delay=20)
        for _ in range(200):
            assert 0.0 <= calculator.delay_for(policy, 5) <= 20.0

    def test_jitter_varies(self):
        """Jitter actually perturbs the delay."""
        calculator = BackoffCalculator(jitter=True, jitter_ratio=0.2, rng=random.Random(3))
        policy = RetryPolicy(RetryStrategy.FIXED_DELAY, max_retries=1, base_delay=10, max_delay=60)
        values = {calculator.delay_for(policy, 0) for _ in range(20)}
        assert len(values) > 1

    def test_jitter_can_be_disabled_per_call(self):
        """jitter=False returns the raw delay."""
        calculator = BackoffCalculator(jitter=True)
        policy = RetryPolicy(RetryStrategy.FIXED_DELAY, max_retries=1, base_delay=10, max_delay=10)
        assert calculator.delay_for(policy, 0, jitter=False) == 10.0

    def test_invalid_ratio(self):
        """Ratios outside [0, 1) are rejected."""
        with pytest.raises(ValueError):
            BackoffCalculator(jitter_ratio=1.5)


class TestRetryPolicy:
    """Test policy overrides and serialization."""

    def test_with_overrides(self):
        """Overrides return a modified copy."""
        base = RetryPolicy(RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=3, base_delay=5, max_delay=120)
        changed = base.with_overrides({"max_retries": 6, "strategy": "linear_backoff"})
        assert changed.max_retries == 6
        assert changed.strategy == RetryStrategy.LINEAR_BACKOFF
        assert base.max_retries == 3

    def test_immediate_fail_override_forces_zero_retries(self):
        """Switching to immediate_fail drops any retries."""
        base = RetryPolicy(RetryStrategy.FIXED_DELAY, max_retries=3, base_delay=1, max_delay=1)
        assert base.with_overrides({"strategy": "immediate_fail"}).max_retries == 0

    def test_unknown_strategy(self):
        """Unknown strategy names are configuration errors."""
        with pytest.raises(ConfigurationError):
            IMMEDIATE_FAIL_POLICY.with_overrides({"strategy": "random_walk"})

    def test_to_dict(self):
        """Policies serialize with strategy values."""
        data = RetryPolicy(RetryStrategy.FIXED_DELAY, max_retries=2, base_delay=60, max_delay=60).to_dict()
        assert data["strategy"] == "fixed_delay"
        assert data["max_retries"] == 2
