"""
Observability utilities for provider-harness.

Provides structured metrics collection and the harness event stream.
The core never formats or persists logs itself: events go to a dedicated
logger and to any sinks subscribed on an ``EventEmitter``.

Usage:
    from provider_harness.core.observability import EventEmitter, HarnessEventType

    events = EventEmitter()
    events.subscribe(lambda event: print(event.to_dict()))
    events.emit(HarnessEventType.SWITCH, from_provider="claude", to_provider="gemini")
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from provider_harness.core.context import get_correlation_id

logger = logging.getLogger(__name__)

try:
    import prometheus_client  # noqa: F401

    _PROMETHEUS_AVAILABLE = True
except ImportError:
    _PROMETHEUS_AVAILABLE = False


def get_observability_status() -> Dict[str, Any]:
    """Report availability of optional observability dependencies."""
    from provider_harness.core.prometheus import get_prometheus_exporter

    return {
        "prometheus_available": _PROMETHEUS_AVAILABLE,
        "prometheus_enabled": get_prometheus_exporter().is_enabled(),
    }


# =============================================================================
# Metrics
# =============================================================================


class MetricType(Enum):
    """Types of metrics that can be emitted."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMER = "timer"


@dataclass
class Metric:
    """Structured metric data."""

    name: str
    value: Union[int, float]
    metric_type: MetricType
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "type": self.metric_type.value,
            "labels": self.labels,
            "timestamp": self.timestamp,
        }


class MetricsCollector:
    """
    Collects and emits metrics to the standard logger and Prometheus.

    Metrics are logged as structured records under the ``.metrics``
    child logger. When Prometheus is enabled they are also mirrored
    through the exporter.
    """

    def __init__(self, prefix: str = "provider_harness"):
        self.prefix = prefix
        self._logger = logging.getLogger(f"{__name__}.metrics")

    def emit(self, metric: Metric) -> None:
        self._logger.debug(
            f"METRIC: {self.prefix}.{metric.name}", extra={"metric": metric.to_dict()}
        )

        from provider_harness.core.prometheus import get_prometheus_exporter

        exporter = get_prometheus_exporter()
        if exporter.is_enabled():
            exporter.observe(metric)

    def counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None) -> None:
        """Emit a counter metric."""
        self.emit(Metric(name=name, value=value, metric_type=MetricType.COUNTER, labels=labels or {}))

    def gauge(self, name: str, value: Union[int, float], labels: Optional[Dict[str, str]] = None) -> None:
        """Emit a gauge metric."""
        self.emit(Metric(name=name, value=value, metric_type=MetricType.GAUGE, labels=labels or {}))

    def timer(self, name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Emit a timer metric (duration in milliseconds)."""
        self.emit(Metric(name=name, value=duration_ms, metric_type=MetricType.TIMER, labels=labels or {}))

    def histogram(self, name: str, value: Union[int, float], labels: Optional[Dict[str, str]] = None) -> None:
        """Emit a histogram metric for distribution tracking."""
        self.emit(Metric(name=name, value=value, metric_type=MetricType.HISTOGRAM, labels=labels or {}))


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# =============================================================================
# Harness Events
# =============================================================================


class HarnessEventType(Enum):
    """Structured events emitted by the orchestration core."""

    ERROR = "error"
    RECOVERY = "recovery"
    SWITCH = "switch"
    RETRY = "retry"
    CIRCUIT_BREAKER = "circuit_breaker"
    RATE_LIMIT = "rate_limit"


@dataclass
class HarnessEvent:
    """Structured harness event."""

    event_type: HarnessEventType
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.correlation_id is None:
            self.correlation_id = get_correlation_id() or None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "details": self.details,
        }
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        return result


EventSink = Callable[[HarnessEvent], None]


class EventEmitter:
    """
    Publishes harness events to a logger and to subscribed sinks.

    A sink that raises is logged and skipped so a broken observer
    cannot fail a provider request.
    """

    def __init__(self) -> None:
        self._logger = logging.getLogger(f"{__name__}.events")
        self._sinks: List[EventSink] = []
        self._lock = threading.Lock()

    def subscribe(self, sink: EventSink) -> None:
        with self._lock:
            if sink not in self._sinks:
                self._sinks.append(sink)

    def unsubscribe(self, sink: EventSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def emit(self, event_type: Union[HarnessEventType, str], **details: Any) -> HarnessEvent:
        """Emit an event.

        Args:
            event_type: HarnessEventType or its string value
            **details: Event payload

        Returns:
            The emitted HarnessEvent
        """
        if isinstance(event_type, str):
            try:
                event_type = HarnessEventType(event_type)
            except ValueError:
                details = {"original_event_type": event_type, **details}
                event_type = HarnessEventType.ERROR

        event = HarnessEvent(event_type=event_type, details=details)
        self._logger.info(f"EVENT: {event.event_type.value}", extra={"event": event.to_dict()})

        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(event)
            except Exception:
                self._logger.warning(
                    "Event sink %r failed for %s", sink, event.event_type.value, exc_info=True
                )

        get_metrics().counter("events_total", labels={"event_type": event.event_type.value})
        return event
