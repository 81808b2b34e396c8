"""
Unit tests for provider_harness.core.performance.
"""

import pytest

from provider_harness.core.performance import PerformanceTracker, RequestMetrics


@pytest.fixture
def tracker(clock):
    return PerformanceTracker(clock=clock)


class TestRequestMetrics:
    """Test derived metrics."""

    def test_unused_defaults(self):
        """Unused metrics report a perfect success rate and no latency."""
        metrics = RequestMetrics()
        assert metrics.success_rate == 1.0
        assert metrics.average_duration == 0.0
        assert metrics.performance_score == 100.0

    def test_score(self):
        """Score is success_rate * 100 minus the average latency."""
        metrics = RequestMetrics(total_requests=4, successful_requests=3, failed_requests=1, total_duration=6.0)
        assert metrics.success_rate == 0.75
        assert metrics.average_duration == 2.0
        assert metrics.performance_score == 73.0


class TestPerformanceTracker:
    """Test recording and load scores."""

    def test_record_updates_provider_and_model(self, tracker):
        """Attempts count at provider and model level."""
        tracker.record("claude", "sonnet", success=True, duration=2.0, tokens=100)
        tracker.record("claude", "haiku", success=False, error=RuntimeError("boom"), error_kind="unknown")

        provider = tracker.get("claude")
        assert provider.total_requests == 2
        assert provider.successful_requests == 1
        assert provider.failed_requests == 1
        assert provider.total_tokens == 100
        assert provider.last_error == "boom"
        assert provider.last_error_kind == "unknown"

        assert tracker.get("claude", "sonnet").total_requests == 1
        assert tracker.get("claude", "haiku").failed_requests == 1

    def test_get_returns_copy(self, tracker):
        """Mutating a returned record does not affect the tracker."""
        tracker.record("claude", success=True)
        tracker.get("claude").total_requests = 99
        assert tracker.get("claude").total_requests == 1

    def test_unused_load_is_zero(self, tracker):
        """Combinations never used carry no load."""
        assert tracker.load_score("gemini", "pro") == 0.0

    def test_recent_use_penalty(self, tracker, clock):
        """Recent use adds a decaying penalty."""
        tracker.record("claude", success=True, duration=1.0)
        assert tracker.load_score("claude") == 11.0

        clock.advance(120)
        assert tracker.load_score("claude") == 6.0

        clock.advance(600)
        assert tracker.load_score("claude") == 1.0

    def test_failures_raise_load(self, tracker, clock):
        """Failures increase load through the success rate."""
        tracker.record("gemini", success=False)
        clock.advance(3600)
        assert tracker.load_score("gemini") == 100.0

    def test_summary_and_reset(self, tracker):
        """summary() serializes every key; reset() clears them."""
        tracker.record("claude", "sonnet", success=True, duration=0.5)
        summary = tracker.summary()
        assert set(summary) == {"claude", "claude:sonnet"}
        assert summary["claude"]["success_rate"] == 1.0

        tracker.reset()
        assert tracker.summary() == {}
