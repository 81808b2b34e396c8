"""
Coordination records shared by the harness components.

Every record round-trips through ``to_dict``/``from_dict`` so the
provider manager can persist a ``HarnessState`` snapshot and restore it
in a fresh process. Timestamps are timezone-aware datetimes, serialized
as ISO 8601 strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _str_to_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def record_key(provider: str, model: Optional[str] = None) -> str:
    """Key for a provider-level or provider+model record."""
    return f"{provider}:{model}" if model else provider


def split_key(key: str) -> Tuple[str, Optional[str]]:
    provider, sep, model = key.partition(":")
    return provider, (model if sep else None)


# =============================================================================
# Enums
# =============================================================================


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNHEALTHY_AUTH = "unhealthy_auth"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"


class UnhealthyReason(str, Enum):
    """Why a record is unhealthy, ordered by precedence."""

    NONE = "none"
    RATE_LIMIT = "rate_limit"
    FAIL_EXHAUSTED = "fail_exhausted"
    AUTH = "auth"

    @property
    def priority(self) -> int:
        return _REASON_PRIORITY[self]


_REASON_PRIORITY = {
    UnhealthyReason.NONE: 0,
    UnhealthyReason.RATE_LIMIT: 1,
    UnhealthyReason.FAIL_EXHAUSTED: 2,
    UnhealthyReason.AUTH: 3,
}


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class HistoryEntryType(str, Enum):
    ROTATION = "rotation"
    RETRY = "retry"


# =============================================================================
# Records
# =============================================================================


@dataclass
class HealthRecord:
    """Health and circuit-breaker state for a provider or provider+model."""

    status: HealthStatus = HealthStatus.HEALTHY
    unhealthy_reason: UnhealthyReason = UnhealthyReason.NONE
    success_count: int = 0
    error_count: int = 0
    circuit_breaker_open: bool = False
    circuit_state: CircuitState = CircuitState.CLOSED
    circuit_opened_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    last_rate_limited: Optional[datetime] = None
    last_used: Optional[datetime] = None

    def copy(self) -> "HealthRecord":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "unhealthy_reason": self.unhealthy_reason.value,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "circuit_breaker_open": self.circuit_breaker_open,
            "circuit_state": self.circuit_state.value,
            "circuit_opened_at": _dt_to_str(self.circuit_opened_at),
            "last_failure_at": _dt_to_str(self.last_failure_at),
            "last_updated": _dt_to_str(self.last_updated),
            "last_rate_limited": _dt_to_str(self.last_rate_limited),
            "last_used": _dt_to_str(self.last_used),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthRecord":
        return cls(
            status=HealthStatus(data.get("status", HealthStatus.HEALTHY.value)),
            unhealthy_reason=UnhealthyReason(data.get("unhealthy_reason") or UnhealthyReason.NONE.value),
            success_count=int(data.get("success_count", 0)),
            error_count=int(data.get("error_count", 0)),
            circuit_breaker_open=bool(data.get("circuit_breaker_open", False)),
            circuit_state=CircuitState(data.get("circuit_state", CircuitState.CLOSED.value)),
            circuit_opened_at=_str_to_dt(data.get("circuit_opened_at")),
            last_failure_at=_str_to_dt(data.get("last_failure_at")),
            last_updated=_str_to_dt(data.get("last_updated")),
            last_rate_limited=_str_to_dt(data.get("last_rate_limited")),
            last_used=_str_to_dt(data.get("last_used")),
        )


@dataclass
class RateLimitRecord:
    """Rate-limit state for a provider or provider+model."""

    rate_limited: bool = False
    reset_time: Optional[datetime] = None
    limited_at: Optional[datetime] = None
    limit_type: str = "rate_limit"
    event_count: int = 0
    quota_used: int = 0
    quota_limit: int = 1000

    def copy(self) -> "RateLimitRecord":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate_limited": self.rate_limited,
            "reset_time": _dt_to_str(self.reset_time),
            "limited_at": _dt_to_str(self.limited_at),
            "limit_type": self.limit_type,
            "event_count": self.event_count,
            "quota_used": self.quota_used,
            "quota_limit": self.quota_limit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateLimitRecord":
        return cls(
            rate_limited=bool(data.get("rate_limited", False)),
            reset_time=_str_to_dt(data.get("reset_time")),
            limited_at=_str_to_dt(data.get("limited_at")),
            limit_type=str(data.get("limit_type", "rate_limit")),
            event_count=int(data.get("event_count", 0)),
            quota_used=int(data.get("quota_used", 0)),
            quota_limit=int(data.get("quota_limit", 1000)),
        )


@dataclass
class RotationHistoryEntry:
    """One retry or rotation, kept for statistics only."""

    timestamp: datetime
    type: HistoryEntryType
    from_provider: Optional[str] = None
    from_model: Optional[str] = None
    to_provider: Optional[str] = None
    to_model: Optional[str] = None
    success: bool = False
    duration: float = 0.0
    reason: str = ""
    error_kind: Optional[str] = None
    strategy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _dt_to_str(self.timestamp),
            "type": self.type.value,
            "from_provider": self.from_provider,
            "from_model": self.from_model,
            "to_provider": self.to_provider,
            "to_model": self.to_model,
            "success": self.success,
            "duration": self.duration,
            "reason": self.reason,
            "error_kind": self.error_kind,
            "strategy": self.strategy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RotationHistoryEntry":
        return cls(
            timestamp=_str_to_dt(data.get("timestamp")) or utcnow(),
            type=HistoryEntryType(data.get("type", HistoryEntryType.ROTATION.value)),
            from_provider=data.get("from_provider"),
            from_model=data.get("from_model"),
            to_provider=data.get("to_provider"),
            to_model=data.get("to_model"),
            success=bool(data.get("success", False)),
            duration=float(data.get("duration", 0.0)),
            reason=str(data.get("reason", "")),
            error_kind=data.get("error_kind"),
            strategy=data.get("strategy"),
        )


@dataclass
class RetryContext:
    """Ephemeral state of one execute_with_retry invocation."""

    provider: Optional[str]
    model: Optional[str]
    started_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0
    attempts: int = 0
    error_kind: Optional[str] = None
    last_error: Optional[BaseException] = None
    last_attempt_at: Optional[datetime] = None
    tried: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    reset_waits: int = 0

    def reset_for(self, provider: Optional[str], model: Optional[str]) -> None:
        """Point the context at a new combination and reset its retry budget."""
        self.provider = provider
        self.model = model
        self.retry_count = 0


@dataclass
class HarnessCounters:
    provider_switches: int = 0
    rate_limit_events: int = 0
    error_events: int = 0
    retry_attempts: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "provider_switches": self.provider_switches,
            "rate_limit_events": self.rate_limit_events,
            "error_events": self.error_events,
            "retry_attempts": self.retry_attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarnessCounters":
        return cls(
            provider_switches=int(data.get("provider_switches", 0)),
            rate_limit_events=int(data.get("rate_limit_events", 0)),
            error_events=int(data.get("error_events", 0)),
            retry_attempts=int(data.get("retry_attempts", 0)),
        )


@dataclass
class HarnessState:
    """Persisted coordination state, one copy per (project, mode)."""

    current_provider: Optional[str] = None
    current_model: Optional[str] = None
    health: Dict[str, HealthRecord] = field(default_factory=dict)
    rate_limits: Dict[str, RateLimitRecord] = field(default_factory=dict)
    quota_usage: Dict[str, int] = field(default_factory=dict)
    switch_history: List[RotationHistoryEntry] = field(default_factory=list)
    counters: HarnessCounters = field(default_factory=HarnessCounters)
    last_updated: Optional[datetime] = None

    def is_empty(self) -> bool:
        return self == HarnessState()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_provider": self.current_provider,
            "current_model": self.current_model,
            "health": {key: record.to_dict() for key, record in self.health.items()},
            "rate_limits": {key: record.to_dict() for key, record in self.rate_limits.items()},
            "quota_usage": dict(self.quota_usage),
            "switch_history": [entry.to_dict() for entry in self.switch_history],
            "counters": self.counters.to_dict(),
            "last_updated": _dt_to_str(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarnessState":
        return cls(
            current_provider=data.get("current_provider"),
            current_model=data.get("current_model"),
            health={
                key: HealthRecord.from_dict(value)
                for key, value in (data.get("health") or {}).items()
            },
            rate_limits={
                key: RateLimitRecord.from_dict(value)
                for key, value in (data.get("rate_limits") or {}).items()
            },
            quota_usage={key: int(value) for key, value in (data.get("quota_usage") or {}).items()},
            switch_history=[
                RotationHistoryEntry.from_dict(entry) for entry in (data.get("switch_history") or [])
            ],
            counters=HarnessCounters.from_dict(data.get("counters") or {}),
            last_updated=_str_to_dt(data.get("last_updated")),
        )
