"""
Circuit breaker and health tracking per provider and provider+model.

States per key:

    CLOSED ──(failure_threshold failures)──▶ OPEN
    OPEN ──(timeout_seconds past last failure)──▶ HALF_OPEN
    HALF_OPEN ──(success)──▶ CLOSED
    HALF_OPEN ──(failure)──▶ OPEN

Any success closes the breaker and resets error_count. Auth failures and
retry exhaustion open the circuit directly, bypassing the threshold.

Unhealthy reasons have a precedence (auth > fail_exhausted > rate_limit >
none): a write with a lower-precedence reason is a no-op until a success
or an explicit reset clears the record. The OPEN -> HALF_OPEN transition
is evaluated lazily whenever a record is read.

Example usage:

    tracker = HealthTracker(failure_threshold=5, timeout_seconds=300)
    tracker.record_failure("claude", "sonnet")
    if tracker.circuit_open("claude"):
        ...
"""

import logging
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from provider_harness.core.models import (
    CircuitState,
    HealthRecord,
    HealthStatus,
    UnhealthyReason,
    record_key,
    split_key,
    utcnow,
)
from provider_harness.core.observability import EventEmitter, HarnessEventType, get_metrics

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class HealthTracker:
    """Thread-safe health records keyed by provider or provider+model.

    Args:
        failure_threshold: Consecutive failures that open the circuit
        timeout_seconds: Cool-down before an open circuit becomes half-open
        clock: Returns the current timezone-aware time (injectable for tests)
        events: Emitter receiving circuit_breaker and recovery events
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        timeout_seconds: float = 300.0,
        clock: Optional[Clock] = None,
        events: Optional[EventEmitter] = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self._clock = clock or utcnow
        self._events = events or EventEmitter()
        self._records: Dict[str, HealthRecord] = {}
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, provider: str, model: Optional[str] = None) -> HealthRecord:
        """Copy of the record for a key (a fresh healthy record if unseen)."""
        with self._lock:
            record = self._records.get(record_key(provider, model))
            if record is None:
                return HealthRecord()
            self._refresh(record_key(provider, model), record, self._clock())
            return record.copy()

    def healthy(self, provider: str, model: Optional[str] = None) -> bool:
        """True when the key's status is healthy and its circuit is not open."""
        record = self.get(provider, model)
        return record.status == HealthStatus.HEALTHY and not record.circuit_breaker_open

    def circuit_open(self, provider: str, model: Optional[str] = None) -> bool:
        return self.get(provider, model).circuit_breaker_open

    def available(self, provider: str, model: Optional[str] = None) -> bool:
        """Healthy at the provider level and, when given, at the model level."""
        if not self.healthy(provider):
            return False
        return model is None or self.healthy(provider, model)

    def circuit_remaining(self, provider: str, model: Optional[str] = None) -> float:
        """Seconds until an open circuit goes half-open (0 when not open)."""
        record = self.get(provider, model)
        if not record.circuit_breaker_open or record.last_failure_at is None:
            return 0.0
        reopen_at = record.last_failure_at + timedelta(seconds=self.timeout_seconds)
        return max(0.0, (reopen_at - self._clock()).total_seconds())

    def snapshot(self) -> Dict[str, HealthRecord]:
        with self._lock:
            now = self._clock()
            for key, record in self._records.items():
                self._refresh(key, record, now)
            return {key: record.copy() for key, record in self._records.items()}

    def restore(self, records: Dict[str, HealthRecord]) -> None:
        with self._lock:
            self._records = {key: record.copy() for key, record in records.items()}

    def keys(self) -> Iterator[Tuple[str, Optional[str]]]:
        with self._lock:
            keys = list(self._records)
        for key in keys:
            yield split_key(key)

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def record_success(self, provider: str, model: Optional[str] = None) -> None:
        """Close the breaker and clear every unhealthy reason for the key(s)."""
        with self._lock:
            now = self._clock()
            for key in self._targets(provider, model):
                record = self._record(key)
                recovered = (
                    record.circuit_state != CircuitState.CLOSED
                    or record.status != HealthStatus.HEALTHY
                )
                record.success_count += 1
                record.error_count = 0
                record.status = HealthStatus.HEALTHY
                record.unhealthy_reason = UnhealthyReason.NONE
                record.circuit_breaker_open = False
                record.circuit_state = CircuitState.CLOSED
                record.circuit_opened_at = None
                record.last_updated = now
                record.last_used = now
                if recovered:
                    self._emit_recovery(key)

    def record_failure(self, provider: str, model: Optional[str] = None) -> None:
        """Count a failure; opens the circuit at the threshold or from half-open."""
        with self._lock:
            now = self._clock()
            for key in self._targets(provider, model):
                record = self._record(key)
                self._refresh(key, record, now)
                record.error_count += 1
                record.last_failure_at = now
                record.last_updated = now
                record.last_used = now

                if record.circuit_state == CircuitState.HALF_OPEN:
                    self._open(key, record, now, trigger="half_open_failure")
                elif (
                    not record.circuit_breaker_open
                    and record.error_count >= self.failure_threshold
                ):
                    self._open(key, record, now, trigger="threshold")

    def mark_auth_failure(self, provider: str, model: Optional[str] = None) -> None:
        """Mark the key unhealthy_auth and open its circuit, bypassing the threshold."""
        with self._lock:
            now = self._clock()
            key = record_key(provider, model)
            record = self._record(key)
            record.status = HealthStatus.UNHEALTHY_AUTH
            record.unhealthy_reason = UnhealthyReason.AUTH
            record.last_failure_at = now
            record.last_updated = now
            self._open(key, record, now, trigger="auth")
            logger.warning("Marked %s unhealthy: authentication failure", key)

    def mark_failure_exhausted(self, provider: str, model: Optional[str] = None) -> bool:
        """Mark the key unhealthy after retries were exhausted.

        Returns:
            False when a higher-precedence reason (auth) is already recorded
            and the write was skipped
        """
        with self._lock:
            now = self._clock()
            key = record_key(provider, model)
            record = self._record(key)
            self._refresh(key, record, now)
            if record.unhealthy_reason.priority > UnhealthyReason.FAIL_EXHAUSTED.priority:
                logger.debug(
                    "Keeping %s as %s; ignoring fail_exhausted",
                    key,
                    record.unhealthy_reason.value,
                )
                return False

            record.status = HealthStatus.UNHEALTHY
            record.unhealthy_reason = UnhealthyReason.FAIL_EXHAUSTED
            record.last_failure_at = now
            record.last_updated = now
            self._open(key, record, now, trigger="fail_exhausted")
            logger.warning("Marked %s unhealthy: retries exhausted", key)
            return True

    def mark_rate_limited(self, provider: str, model: Optional[str] = None) -> None:
        """Note a rate limit on the key; the status itself is left unchanged."""
        with self._lock:
            now = self._clock()
            record = self._record(record_key(provider, model))
            record.last_rate_limited = now
            record.last_updated = now
            if record.unhealthy_reason == UnhealthyReason.NONE:
                record.unhealthy_reason = UnhealthyReason.RATE_LIMIT

    def clear_rate_limited(self, provider: str, model: Optional[str] = None) -> None:
        with self._lock:
            record = self._records.get(record_key(provider, model))
            if record is not None and record.unhealthy_reason == UnhealthyReason.RATE_LIMIT:
                record.unhealthy_reason = UnhealthyReason.NONE
                record.last_updated = self._clock()

    def reset(self, provider: str, model: Optional[str] = None) -> None:
        with self._lock:
            self._records.pop(record_key(provider, model), None)

    def reset_all(self) -> None:
        with self._lock:
            self._records.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _targets(self, provider: str, model: Optional[str]) -> Tuple[str, ...]:
        if model:
            return (record_key(provider), record_key(provider, model))
        return (record_key(provider),)

    def _record(self, key: str) -> HealthRecord:
        record = self._records.get(key)
        if record is None:
            record = HealthRecord(last_updated=self._clock())
            self._records[key] = record
        return record

    def _open(self, key: str, record: HealthRecord, now: datetime, *, trigger: str) -> None:
        record.circuit_breaker_open = True
        record.circuit_state = CircuitState.OPEN
        record.circuit_opened_at = now
        if record.unhealthy_reason in (UnhealthyReason.NONE, UnhealthyReason.RATE_LIMIT):
            record.status = HealthStatus.CIRCUIT_BREAKER_OPEN

        provider, model = split_key(key)
        self._events.emit(
            HarnessEventType.CIRCUIT_BREAKER,
            provider=provider,
            model=model,
            state=CircuitState.OPEN.value,
            trigger=trigger,
            error_count=record.error_count,
        )
        get_metrics().counter(
            "circuit_breaker_transitions_total",
            labels={"provider": provider, "state": CircuitState.OPEN.value},
        )

    def _refresh(self, key: str, record: HealthRecord, now: datetime) -> None:
        """Apply the time-based OPEN -> HALF_OPEN transition if the cool-down elapsed."""
        if not record.circuit_breaker_open:
            return
        since = record.last_failure_at or record.circuit_opened_at
        if since is None or now < since + timedelta(seconds=self.timeout_seconds):
            return

        record.circuit_breaker_open = False
        record.circuit_state = CircuitState.HALF_OPEN
        record.last_updated = now
        if record.unhealthy_reason != UnhealthyReason.AUTH:
            record.status = HealthStatus.HEALTHY
            record.unhealthy_reason = UnhealthyReason.NONE

        provider, model = split_key(key)
        logger.info("Circuit for %s is half-open after %.0fs cool-down", key, self.timeout_seconds)
        self._events.emit(
            HarnessEventType.CIRCUIT_BREAKER,
            provider=provider,
            model=model,
            state=CircuitState.HALF_OPEN.value,
            trigger="timeout",
            error_count=record.error_count,
        )

    def _emit_recovery(self, key: str) -> None:
        provider, model = split_key(key)
        self._events.emit(
            HarnessEventType.RECOVERY,
            provider=provider,
            model=model,
            state=CircuitState.CLOSED.value,
        )

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Serializable view of every record, for dashboards."""
        result: Dict[str, Dict[str, Any]] = {}
        for key, record in self.snapshot().items():
            provider, model = split_key(key)
            entry = record.to_dict()
            entry["circuit_remaining_seconds"] = round(self.circuit_remaining(provider, model), 1)
            result[key] = entry
        return result
