"""
Unit tests for provider_harness.core.quota.
"""

import pytest

from provider_harness.core.quota import QuotaTracker


@pytest.fixture
def limits():
    table = {("claude", None): 10, ("claude", "sonnet"): 4, ("gemini", None): 5}

    def limit_for(provider, model=None):
        return table.get((provider, model), 100)

    return limit_for


class TestQuotaTracker:
    """Test usage counting and headroom."""

    def test_record_usage_counts_both_levels(self):
        """Model usage also counts against the provider."""
        tracker = QuotaTracker()
        assert tracker.record_usage("claude", "sonnet") == 1
        tracker.record_usage("claude", "haiku")
        assert tracker.used("claude") == 2
        assert tracker.used("claude", "sonnet") == 1
        assert tracker.used("claude", "haiku") == 1

    def test_default_limit(self):
        """Without a resolver every key uses default_limit."""
        tracker = QuotaTracker(default_limit=3)
        tracker.record_usage("gemini", amount=3)
        assert tracker.limit("gemini", "pro") == 3
        assert tracker.exceeded("gemini")
        assert tracker.remaining("gemini") == 0

    def test_remaining_takes_tighter_budget(self, limits):
        """Headroom is the minimum of provider and model headroom."""
        tracker = QuotaTracker(limit_for=limits)
        tracker.record_usage("claude", "sonnet", amount=3)
        # provider: 10 - 3 = 7, model: 4 - 3 = 1
        assert tracker.remaining("claude", "sonnet") == 1

        tracker.record_usage("claude", "haiku", amount=6)
        # provider: 10 - 9 = 1, haiku: 100 - 6 = 94
        assert tracker.remaining("claude", "haiku") == 1
        assert tracker.remaining("claude") == 1

    def test_remaining_never_negative(self, limits):
        """Over-use reports zero headroom."""
        tracker = QuotaTracker(limit_for=limits)
        tracker.record_usage("gemini", amount=9)
        assert tracker.remaining("gemini") == 0

    def test_percentage(self, limits):
        """Percentage is used / limit * 100."""
        tracker = QuotaTracker(limit_for=limits)
        tracker.record_usage("claude", "sonnet")
        assert tracker.percentage("claude", "sonnet") == 25.0
        assert tracker.percentage("claude") == 10.0

    def test_zero_limit_is_fully_used(self):
        """A zero limit reports 100 percent."""
        tracker = QuotaTracker(default_limit=0)
        assert tracker.percentage("claude") == 100.0

    def test_clear_provider_clears_models(self):
        """Clearing a provider also drops its model counters."""
        tracker = QuotaTracker()
        tracker.record_usage("claude", "sonnet")
        tracker.record_usage("gemini", "pro")
        tracker.clear("claude")
        assert tracker.used("claude") == 0
        assert tracker.used("claude", "sonnet") == 0
        assert tracker.used("gemini", "pro") == 1

    def test_clear_model_only(self):
        """Clearing a model keeps the provider counter."""
        tracker = QuotaTracker()
        tracker.record_usage("claude", "sonnet")
        tracker.clear("claude", "sonnet")
        assert tracker.used("claude") == 1
        assert tracker.used("claude", "sonnet") == 0

    def test_snapshot_restore(self):
        """Snapshots restore into a fresh tracker."""
        tracker = QuotaTracker()
        tracker.record_usage("claude", "sonnet", amount=2)
        restored = QuotaTracker()
        restored.restore(tracker.snapshot())
        assert restored.snapshot() == {"claude": 2, "claude:sonnet": 2}

    def test_summary_status(self, limits):
        """summary() reports ok, warning and exceeded."""
        tracker = QuotaTracker(limit_for=limits)
        tracker.record_usage("gemini", amount=4)
        tracker.record_usage("claude", "sonnet", amount=4)
        summary = tracker.summary()
        assert summary["gemini"]["status"] == "warning"
        assert summary["claude:sonnet"]["status"] == "exceeded"
        assert summary["claude"]["status"] == "ok"
        assert summary["claude"]["remaining"] == 6
