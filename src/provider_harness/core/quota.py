"""
Quota usage counters per provider and provider+model.

Each recorded rate-limit event counts as one unit of quota. Usage is
tracked at the provider level and, when a model is given, at the model
level too. Quota never gates a retry on its own; it feeds the
quota_aware rotation strategy and status displays.
"""

import logging
from threading import Lock
from typing import Any, Callable, Dict, Optional

from provider_harness.core.models import record_key, split_key

logger = logging.getLogger(__name__)

#: Usage percentage at which a key is reported as "warning"
QUOTA_WARNING_PERCENT = 80.0

LimitResolver = Callable[[str, Optional[str]], int]


class QuotaTracker:
    """Thread-safe quota counters.

    Args:
        default_limit: Limit used when no resolver is given
        limit_for: Resolves the limit for (provider, model), typically
            ``HarnessConfig.quota_limit_for``
    """

    def __init__(self, *, default_limit: int = 1000, limit_for: Optional[LimitResolver] = None):
        self.default_limit = default_limit
        self._limit_for = limit_for
        self._usage: Dict[str, int] = {}
        self._lock = Lock()

    def record_usage(self, provider: str, model: Optional[str] = None, amount: int = 1) -> int:
        """Add ``amount`` to the provider (and model) counters; returns the key's new usage."""
        with self._lock:
            provider_key = record_key(provider)
            self._usage[provider_key] = self._usage.get(provider_key, 0) + amount
            if not model:
                return self._usage[provider_key]
            model_key = record_key(provider, model)
            self._usage[model_key] = self._usage.get(model_key, 0) + amount
            return self._usage[model_key]

    def used(self, provider: str, model: Optional[str] = None) -> int:
        with self._lock:
            return self._usage.get(record_key(provider, model), 0)

    def limit(self, provider: str, model: Optional[str] = None) -> int:
        if self._limit_for is not None:
            return self._limit_for(provider, model)
        return self.default_limit

    def remaining(self, provider: str, model: Optional[str] = None) -> int:
        """Headroom for a combination: the tighter of the provider and model budgets."""
        provider_left = self.limit(provider) - self.used(provider)
        if not model:
            return max(0, provider_left)
        model_left = self.limit(provider, model) - self.used(provider, model)
        return max(0, min(provider_left, model_left))

    def percentage(self, provider: str, model: Optional[str] = None) -> float:
        limit = self.limit(provider, model)
        if limit <= 0:
            return 100.0
        return round(self.used(provider, model) / limit * 100, 2)

    def exceeded(self, provider: str, model: Optional[str] = None) -> bool:
        return self.used(provider, model) >= self.limit(provider, model)

    def clear(self, provider: str, model: Optional[str] = None) -> None:
        """Reset usage for a combination; clearing a provider also clears its models."""
        with self._lock:
            if model:
                self._usage.pop(record_key(provider, model), None)
                return
            prefix = f"{provider}:"
            for key in [k for k in self._usage if k == provider or k.startswith(prefix)]:
                del self._usage[key]

    def clear_all(self) -> None:
        with self._lock:
            self._usage.clear()

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._usage)

    def restore(self, usage: Dict[str, int]) -> None:
        with self._lock:
            self._usage = {key: int(value) for key, value in usage.items()}

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Usage, limit, headroom and status for every tracked key."""
        result: Dict[str, Dict[str, Any]] = {}
        for key, used in self.snapshot().items():
            provider, model = split_key(key)
            limit = self.limit(provider, model)
            percent = self.percentage(provider, model)
            if used >= limit:
                status = "exceeded"
            elif percent >= QUOTA_WARNING_PERCENT:
                status = "warning"
            else:
                status = "ok"
            result[key] = {
                "used": used,
                "limit": limit,
                "remaining": max(0, limit - used),
                "percentage": percent,
                "status": status,
            }
        return result
