"""
Request performance metrics per provider and provider+model.

Feeds the performance_optimized rotation strategy and load-balanced
selection. Metrics are in-memory only; they describe this process's
observations and are not part of the persisted harness state.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Optional

from provider_harness.core.models import record_key, utcnow

logger = logging.getLogger(__name__)

#: Load penalty for a combination used within the last minute / five minutes
RECENT_USE_PENALTIES = ((60.0, 10.0), (300.0, 5.0))


@dataclass
class RequestMetrics:
    """Counters for one provider or provider+model key.

    Attributes:
        total_requests: Attempts recorded
        successful_requests: Attempts that completed
        failed_requests: Attempts that raised
        total_duration: Seconds spent in successful attempts
        total_tokens: Tokens reported by successful attempts
        last_used: Time of the latest attempt
        last_error: Message of the latest failure
        last_error_kind: Classified kind of the latest failure
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_duration: float = 0.0
    total_tokens: int = 0
    last_used: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    @property
    def average_duration(self) -> float:
        return self.total_duration / max(self.successful_requests, 1)

    @property
    def performance_score(self) -> float:
        """Higher is better: success_rate * 100 - average latency in seconds."""
        return self.success_rate * 100 - self.average_duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "total_duration": round(self.total_duration, 3),
            "total_tokens": self.total_tokens,
            "success_rate": round(self.success_rate, 4),
            "average_duration": round(self.average_duration, 3),
            "performance_score": round(self.performance_score, 3),
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "last_error": self.last_error,
            "last_error_kind": self.last_error_kind,
        }


class PerformanceTracker:
    """Thread-safe request metrics.

    Args:
        clock: Returns the current timezone-aware time (injectable for tests)
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow
        self._metrics: Dict[str, RequestMetrics] = {}
        self._lock = Lock()

    def record(
        self,
        provider: str,
        model: Optional[str] = None,
        *,
        success: bool,
        duration: float = 0.0,
        tokens: Optional[int] = None,
        error: Optional[BaseException] = None,
        error_kind: Optional[str] = None,
    ) -> None:
        """Record one attempt against the provider key and, when given, the model key."""
        keys = [record_key(provider)]
        if model:
            keys.append(record_key(provider, model))

        with self._lock:
            now = self._clock()
            for key in keys:
                metrics = self._metrics.setdefault(key, RequestMetrics())
                metrics.total_requests += 1
                metrics.last_used = now
                if success:
                    metrics.successful_requests += 1
                    metrics.total_duration += max(0.0, duration)
                    metrics.total_tokens += tokens or 0
                else:
                    metrics.failed_requests += 1
                    metrics.last_error = str(error) if error is not None else None
                    metrics.last_error_kind = error_kind

    def get(self, provider: str, model: Optional[str] = None) -> RequestMetrics:
        with self._lock:
            metrics = self._metrics.get(record_key(provider, model))
            return replace(metrics) if metrics is not None else RequestMetrics()

    def performance_score(self, provider: str, model: Optional[str] = None) -> float:
        return self.get(provider, model).performance_score

    def load_score(self, provider: str, model: Optional[str] = None) -> float:
        """Current load estimate, lower is better; 0 for unused combinations."""
        metrics = self.get(provider, model)
        if metrics.total_requests == 0:
            return 0.0

        load = (1 - metrics.success_rate) * 100 + metrics.average_duration
        if metrics.last_used is not None:
            idle = (self._clock() - metrics.last_used).total_seconds()
            for window, penalty in RECENT_USE_PENALTIES:
                if idle < window:
                    load += penalty
                    break
        return load

    def summary(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {key: metrics.to_dict() for key, metrics in self._metrics.items()}

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()
