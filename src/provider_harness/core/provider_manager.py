"""
Provider manager: the authoritative current provider/model pointer.

Owns the health, rate-limit, quota and performance trackers, the rotation
engine and the rotation history, and persists their combined state through
a StateStore after every mutation. One manager may be shared by several
callers, each running its own ErrorHandler; mutations are serialized by a
re-entrant lock.

Example usage:

    config = HarnessConfig.from_env()
    manager = ProviderManager(config)
    provider, model = manager.require_available()
    ...
    manager.mark_rate_limited(provider, reset_time=detection.reset_time)
"""

import logging
import random
from datetime import datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from provider_harness.config import HarnessConfig
from provider_harness.core.circuit_breaker import HealthTracker
from provider_harness.core.errors import NoProviderAvailableError
from provider_harness.core.models import (
    HarnessCounters,
    HarnessState,
    HistoryEntryType,
    RotationHistoryEntry,
    utcnow,
)
from provider_harness.core.observability import EventEmitter, HarnessEventType, get_metrics
from provider_harness.core.performance import PerformanceTracker
from provider_harness.core.quota import QuotaTracker
from provider_harness.core.rate_limit import LimitType, RateLimitTracker
from provider_harness.core.rotation import (
    NO_ROTATION,
    RotationDecision,
    RotationEngine,
    RotationHistory,
)
from provider_harness.core.state_store import StateStore

logger = logging.getLogger(__name__)

#: Sentinel meaning "build the store from config.persistence"
_FROM_CONFIG: Any = object()


class ProviderManager:
    """Provider/model pointer plus the coordination state behind routing.

    Args:
        config: Resolved harness configuration
        store: State store; defaults to one built from ``config.persistence``
            (None disables persistence)
        events: Event emitter shared with the trackers
        clock: Returns the current timezone-aware time (injectable for tests)
        rng: Random source for weighted selection (injectable for tests)
    """

    def __init__(
        self,
        config: HarnessConfig,
        *,
        store: Optional[StateStore] = _FROM_CONFIG,
        events: Optional[EventEmitter] = None,
        clock: Optional[Any] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.events = events or EventEmitter()
        self._clock = clock or utcnow
        self._lock = RLock()

        if store is _FROM_CONFIG:
            store = StateStore.from_config(config) if config.persistence.enabled else None
        self.store: Optional[StateStore] = store

        self.health = HealthTracker(
            failure_threshold=config.circuit_breaker.failure_threshold,
            timeout_seconds=config.circuit_breaker.timeout_seconds,
            clock=self._clock,
            events=self.events,
        )
        self.rate_limits = RateLimitTracker(
            default_reset_seconds=config.rate_limit.default_reset_seconds,
            clock=self._clock,
            on_expire=self.health.clear_rate_limited,
        )
        self.quota = QuotaTracker(
            default_limit=config.rate_limit.quota_limit,
            limit_for=lambda provider, model: self.config.quota_limit_for(provider, model),
        )
        self.performance = PerformanceTracker(clock=self._clock)
        self.history = RotationHistory()
        self.rotation = RotationEngine(
            config,
            self.health,
            self.rate_limits,
            self.quota,
            self.performance,
            rng=rng,
        )
        self.counters = HarnessCounters()
        self._current_provider: Optional[str] = None
        self._current_model: Optional[str] = None

        self._restore()

    # ------------------------------------------------------------------
    # Current pointer
    # ------------------------------------------------------------------

    @property
    def current_provider(self) -> Optional[str]:
        with self._lock:
            return self._current_provider

    @property
    def current_model(self) -> Optional[str]:
        with self._lock:
            return self._current_model

    def current(self) -> Tuple[Optional[str], Optional[str]]:
        with self._lock:
            return self._current_provider, self._current_model

    def set_current_provider(self, provider: str, model: Optional[str] = None) -> None:
        """Point at ``provider`` (and ``model``, default: its default model).

        Raises:
            ConfigurationError: If the provider or model is not configured
        """
        provider_cfg = self.config.provider(provider)
        if model is not None:
            self.config.model(provider, model)
        else:
            model = provider_cfg.resolved_default_model()

        with self._lock:
            previous = (self._current_provider, self._current_model)
            self._current_provider = provider
            self._current_model = model
            if previous != (provider, model):
                self._note_switch(previous, (provider, model), reason="manual", strategy=None)
            self._persist()

    def set_current_model(self, model: str) -> None:
        """Switch model on the current provider.

        Raises:
            NoProviderAvailableError: If no provider is current
            ConfigurationError: If the model is unknown
        """
        with self._lock:
            provider = self._current_provider
        if provider is None:
            raise NoProviderAvailableError("No current provider to set a model on")
        self.set_current_provider(provider, model)

    def require_available(self) -> Tuple[str, Optional[str]]:
        """Current combination if usable, else switch to one.

        Raises:
            NoProviderAvailableError: If every combination is excluded
        """
        with self._lock:
            provider, model = self._current_provider, self._current_model
            if provider is not None and self.rotation.usable(provider, model):
                return provider, model

            decision = self._switch(reason="unavailable", strategy=None)
            if not decision.found:
                raise NoProviderAvailableError(
                    "No provider/model combination is available "
                    f"(current: {provider}:{model})"
                )
            self._persist()
            return decision.provider, decision.model

    # ------------------------------------------------------------------
    # Switching
    # ------------------------------------------------------------------

    def switch_provider(
        self,
        reason: str = "manual",
        strategy: Optional[str] = None,
        *,
        current: Optional[Tuple[str, Optional[str]]] = None,
    ) -> RotationDecision:
        """Rotate to the next combination proposed by the rotation engine.

        Args:
            reason: Why the switch happens (recorded in history and events)
            strategy: Rotation strategy name; defaults to the configured one
            current: Combination to rotate away from; defaults to the pointer

        Returns:
            The applied decision, or NO_ROTATION when nothing qualifies (the
            pointer is then left unchanged)
        """
        with self._lock:
            decision = self._switch(reason=reason, strategy=strategy, current=current)
            self._persist()
            return decision

    def switch_model(self, reason: str = "manual") -> RotationDecision:
        """Rotate to the next usable model of the current provider."""
        with self._lock:
            provider, model = self._current_provider, self._current_model
            if provider is None:
                return NO_ROTATION
            decision = self.rotation.next_model(provider, model)
            if decision.found:
                self._apply(decision, (provider, model), reason=reason)
            self._persist()
            return decision

    def _switch(
        self,
        *,
        reason: str,
        strategy: Optional[str],
        current: Optional[Tuple[str, Optional[str]]] = None,
    ) -> RotationDecision:
        source = current or (self._current_provider, self._current_model)
        decision = self.rotation.next_combination(source[0], source[1], strategy)
        if not decision.found:
            logger.warning(
                "No alternative to %s:%s (reason: %s); keeping current provider",
                source[0],
                source[1],
                reason,
            )
            return NO_ROTATION
        self._apply(decision, source, reason=reason)
        return decision

    def _apply(
        self,
        decision: RotationDecision,
        source: Tuple[Optional[str], Optional[str]],
        *,
        reason: str,
    ) -> None:
        previous = (self._current_provider, self._current_model)
        self._current_provider = decision.provider
        self._current_model = decision.model
        self._note_switch(
            source if source[0] is not None else previous,
            (decision.provider, decision.model),
            reason=reason,
            strategy=decision.strategy.value if decision.strategy else None,
        )

    def _note_switch(
        self,
        source: Tuple[Optional[str], Optional[str]],
        target: Tuple[Optional[str], Optional[str]],
        *,
        reason: str,
        strategy: Optional[str],
    ) -> None:
        if source[0] != target[0]:
            self.counters.provider_switches += 1
        self.history.append(
            RotationHistoryEntry(
                timestamp=self._clock(),
                type=HistoryEntryType.ROTATION,
                from_provider=source[0],
                from_model=source[1],
                to_provider=target[0],
                to_model=target[1],
                success=True,
                reason=reason,
                strategy=strategy,
            )
        )
        logger.info(
            "Switched %s:%s -> %s:%s (%s)", source[0], source[1], target[0], target[1], reason
        )
        self.events.emit(
            HarnessEventType.SWITCH,
            from_provider=source[0],
            from_model=source[1],
            to_provider=target[0],
            to_model=target[1],
            reason=reason,
            strategy=strategy,
        )
        get_metrics().counter(
            "provider_switches_total",
            labels={"from": str(source[0]), "to": str(target[0]), "reason": reason},
        )

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    def mark_rate_limited(
        self,
        provider: str,
        reset_time: Optional[datetime] = None,
        model: Optional[str] = None,
        *,
        limit_type: str = LimitType.RATE_LIMIT.value,
    ) -> RotationDecision:
        """Mark a provider (or one of its models) rate limited.

        Counts one unit of quota. When the limited target is the current
        pointer, switches to the next usable combination.

        Args:
            provider: Limited provider
            reset_time: When the limit lifts; default is now plus the
                configured default window
            model: Limit only this model instead of the whole provider
            limit_type: "rate_limit" or "quota_exceeded"

        Returns:
            The automatic switch that was applied, or NO_ROTATION
        """
        with self._lock:
            self.quota.record_usage(provider, model)
            record = self.rate_limits.mark(
                provider,
                model,
                reset_time=reset_time,
                limit_type=limit_type,
                quota_used=self.quota.used(provider, model),
                quota_limit=self.quota.limit(provider, model),
            )
            self.health.mark_rate_limited(provider, model)
            self.counters.rate_limit_events += 1

            logger.warning(
                "%s rate limited (%s) until %s",
                f"{provider}:{model}" if model else provider,
                record.limit_type,
                record.reset_time.isoformat() if record.reset_time else "unknown",
            )
            self.events.emit(
                HarnessEventType.RATE_LIMIT,
                provider=provider,
                model=model,
                limit_type=record.limit_type,
                reset_time=record.reset_time.isoformat() if record.reset_time else None,
                quota_used=record.quota_used,
            )
            get_metrics().counter(
                "rate_limit_events_total",
                labels={"provider": provider, "limit_type": record.limit_type or "rate_limit"},
            )

            decision = NO_ROTATION
            affects_current = provider == self._current_provider and (
                model is None or model == self._current_model
            )
            if affects_current:
                decision = self._switch(
                    reason=record.limit_type or "rate_limit",
                    strategy=None,
                    current=(provider, self._current_model),
                )
            self._persist()
            return decision

    def clear_rate_limit(self, provider: str, model: Optional[str] = None) -> bool:
        """Lift a rate limit early; returns whether one was active."""
        with self._lock:
            cleared = self.rate_limits.clear(provider, model)
            self.health.clear_rate_limited(provider, model)
            self._persist()
            return cleared

    def is_rate_limited(self, provider: str, model: Optional[str] = None) -> bool:
        return self.rate_limits.limited(provider, model)

    def next_reset_time(self) -> Optional[datetime]:
        return self.rate_limits.next_reset_time()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def mark_provider_auth_failure(self, provider: str, model: Optional[str] = None) -> None:
        """Mark the provider (and model) unhealthy_auth; sticky until success or reset."""
        with self._lock:
            self.health.mark_auth_failure(provider)
            if model:
                self.health.mark_auth_failure(provider, model)
            self.counters.error_events += 1
            self.events.emit(
                HarnessEventType.ERROR,
                provider=provider,
                model=model,
                error_kind="authentication",
                action="mark_unhealthy_auth",
            )
            self._persist()

    def mark_provider_failure_exhausted(self, provider: str) -> bool:
        """Mark the provider unhealthy after retry exhaustion.

        Returns:
            False when an auth failure is already recorded and was kept
        """
        with self._lock:
            changed = self.health.mark_failure_exhausted(provider)
            self._persist()
            return changed

    def mark_model_failure_exhausted(self, provider: str, model: str) -> bool:
        """Mark only ``provider:model`` unhealthy after retry exhaustion."""
        with self._lock:
            changed = self.health.mark_failure_exhausted(provider, model)
            self._persist()
            return changed

    def is_healthy(self, provider: str, model: Optional[str] = None) -> bool:
        return self.health.available(provider, model)

    def is_available(self, provider: str, model: Optional[str] = None) -> bool:
        return self.rotation.usable(provider, model)

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def record_success(
        self,
        provider: str,
        model: Optional[str] = None,
        *,
        duration: float = 0.0,
        tokens: Optional[int] = None,
    ) -> None:
        with self._lock:
            self.health.record_success(provider, model)
            self.performance.record(
                provider, model, success=True, duration=duration, tokens=tokens
            )
            self._note_attempt(provider, model, success=True, duration=duration, reason="success")
            self._persist()

    def record_failure(
        self,
        provider: str,
        model: Optional[str] = None,
        *,
        error: Optional[BaseException] = None,
        error_kind: Optional[str] = None,
        duration: float = 0.0,
    ) -> None:
        with self._lock:
            self.health.record_failure(provider, model)
            self.performance.record(
                provider, model, success=False, duration=duration, error=error, error_kind=error_kind
            )
            self.counters.error_events += 1
            self._note_attempt(
                provider,
                model,
                success=False,
                duration=duration,
                reason=error_kind or "error",
                error_kind=error_kind,
            )
            self._persist()

    def record_retry(self, provider: str, model: Optional[str] = None) -> None:
        with self._lock:
            self.counters.retry_attempts += 1
            self._persist()

    def _note_attempt(
        self,
        provider: str,
        model: Optional[str],
        *,
        success: bool,
        duration: float,
        reason: str,
        error_kind: Optional[str] = None,
    ) -> None:
        self.history.append(
            RotationHistoryEntry(
                timestamp=self._clock(),
                type=HistoryEntryType.RETRY,
                from_provider=provider,
                from_model=model,
                to_provider=provider,
                to_model=model,
                success=success,
                duration=round(duration, 3),
                reason=reason,
                error_kind=error_kind,
            )
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Pointer, routing, and counters at a glance."""
        with self._lock:
            next_reset = self.next_reset_time()
            return {
                "current_provider": self._current_provider,
                "current_model": self._current_model,
                "mode": self.config.mode,
                "rotation_strategy": self.config.rate_limit.rotation_strategy,
                "fallback_chain": self.config.resolved_fallback_chain(),
                "available_providers": self.rotation.available_providers(),
                "rate_limited": sorted(self.rate_limits.active()),
                "next_reset_time": next_reset.isoformat() if next_reset else None,
                "counters": self.counters.to_dict(),
                "persistence_enabled": self.store is not None,
            }

    def health_dashboard(self) -> Dict[str, Dict[str, Any]]:
        """Per provider health with nested per model entries."""
        # Expired limits release their health reason on read
        self.rate_limits.active()
        dashboard: Dict[str, Dict[str, Any]] = {}
        for provider in self.config.provider_names():
            entry = self._health_entry(provider, None)
            entry["models"] = {
                model: self._health_entry(provider, model)
                for model in self.config.provider(provider).model_names()
            }
            dashboard[provider] = entry
        return dashboard

    def _health_entry(self, provider: str, model: Optional[str]) -> Dict[str, Any]:
        record = self.health.get(provider, model)
        return {
            "available": self.rotation.usable(provider, model),
            "status": record.status.value,
            "unhealthy_reason": record.unhealthy_reason.value,
            "circuit_state": record.circuit_state.value,
            "circuit_breaker_open": record.circuit_breaker_open,
            "circuit_remaining_seconds": round(self.health.circuit_remaining(provider, model), 1),
            "success_count": record.success_count,
            "error_count": record.error_count,
            "rate_limited": self.rate_limits.is_rate_limited(provider, model),
            "quota_remaining": self.quota.remaining(provider, model),
            "performance": self.performance.get(provider, model).to_dict(),
        }

    def rate_limit_status(self) -> Dict[str, Dict[str, Any]]:
        return self.rate_limits.summary()

    def quota_status(self) -> Dict[str, Dict[str, Any]]:
        return self.quota.summary()

    def performance_metrics(self) -> Dict[str, Dict[str, Any]]:
        return self.performance.summary()

    def rotation_statistics(self) -> Dict[str, Any]:
        stats = self.history.statistics()
        stats["counters"] = self.counters.to_dict()
        return stats

    def switch_history(self) -> List[RotationHistoryEntry]:
        return self.history.entries()

    # ------------------------------------------------------------------
    # Reset / reload
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Clear health, rate-limit, quota and metrics state to defaults."""
        with self._lock:
            self.health.reset_all()
            self.rate_limits.clear_all()
            self.quota.clear_all()
            self.performance.reset()
            self.history.clear()
            self.counters = HarnessCounters()
            self._current_provider, self._current_model = self._initial_pointer()
            self._persist()
        logger.info("Harness state reset")

    def reload_config(self, config: HarnessConfig) -> None:
        """Swap in a new configuration, keeping accumulated state.

        Raises:
            ConfigurationError: If the new configuration is invalid
        """
        config.validate()
        with self._lock:
            self.config = config
            self.rotation.config = config
            self.health.failure_threshold = config.circuit_breaker.failure_threshold
            self.health.timeout_seconds = config.circuit_breaker.timeout_seconds
            self.rate_limits.default_reset_seconds = config.rate_limit.default_reset_seconds
            self.quota.default_limit = config.rate_limit.quota_limit
            if self._current_provider not in config.providers:
                self._current_provider, self._current_model = self._initial_pointer()
            elif self._current_model is not None and (
                config.provider(self._current_provider).get_model(self._current_model) is None
            ):
                self._current_model = config.provider(self._current_provider).resolved_default_model()
            self._persist()
        logger.info("Configuration reloaded (%d providers)", len(config.providers))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> HarnessState:
        with self._lock:
            return HarnessState(
                current_provider=self._current_provider,
                current_model=self._current_model,
                health=self.health.snapshot(),
                rate_limits=self.rate_limits.snapshot(),
                quota_usage=self.quota.snapshot(),
                switch_history=self.history.entries(),
                counters=HarnessCounters(**self.counters.to_dict()),
                last_updated=self._clock(),
            )

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.save_state(self.snapshot())

    def _restore(self) -> None:
        state = self.store.load_state() if self.store is not None else HarnessState()
        if not state.is_empty():
            self.health.restore(state.health)
            self.rate_limits.restore(state.rate_limits)
            self.quota.restore(state.quota_usage)
            self.history.restore(state.switch_history)
            self.counters = state.counters
            logger.info(
                "Restored harness state (current: %s:%s, %d health records)",
                state.current_provider,
                state.current_model,
                len(state.health),
            )

        if state.current_provider in self.config.providers:
            self._current_provider = state.current_provider
            self._current_model = state.current_model
        else:
            self._current_provider, self._current_model = self._initial_pointer()

    def _initial_pointer(self) -> Tuple[Optional[str], Optional[str]]:
        chain = self.config.resolved_fallback_chain()
        if not chain:
            return None, None
        provider = chain[0]
        return provider, self.config.provider(provider).resolved_default_model()
