"""Prometheus metrics integration with graceful degradation.

Metrics emitted through ``MetricsCollector`` are mirrored into Prometheus
when the optional prometheus_client dependency is installed and metrics
are enabled. Otherwise every exporter method is a no-op.

Usage:
    from provider_harness.core.prometheus import PrometheusConfig, get_prometheus_exporter

    exporter = get_prometheus_exporter(PrometheusConfig(enabled=True, port=9090))
    exporter.start_server()
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

try:
    from prometheus_client import (
        CollectorRegistry,
        Counter,
        Gauge,
        Histogram,
        generate_latest,
        start_http_server,
    )

    _PROMETHEUS_AVAILABLE = True
except ImportError:
    _PROMETHEUS_AVAILABLE = False

    CollectorRegistry: Any = None
    Counter: Any = None
    Gauge: Any = None
    Histogram: Any = None
    generate_latest: Any = None
    start_http_server: Any = None

if TYPE_CHECKING:
    from provider_harness.core.observability import Metric

logger = logging.getLogger(__name__)

# Attempt durations are recorded in milliseconds by the collector
DURATION_BUCKETS_MS = (10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 120000)


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class PrometheusConfig:
    """Configuration for Prometheus metrics.

    Attributes:
        enabled: Whether Prometheus metrics are enabled
        port: HTTP server port for /metrics endpoint (0 = no server)
        host: HTTP server host
        namespace: Metric namespace prefix
    """

    enabled: bool = False
    port: int = 0
    host: str = "0.0.0.0"
    namespace: str = "provider_harness"

    @classmethod
    def from_env_and_config(cls, config: Optional[dict[str, Any]] = None) -> "PrometheusConfig":
        """Load configuration from environment variables and optional config dict.

        Env vars:
            PROVIDER_HARNESS_PROMETHEUS_ENABLED: "true" or "1" to enable
            PROVIDER_HARNESS_PROMETHEUS_PORT: HTTP server port (0 = no server)
            PROVIDER_HARNESS_PROMETHEUS_HOST: HTTP server host
            PROVIDER_HARNESS_PROMETHEUS_NAMESPACE: Metric namespace
        """
        config = config or {}

        env_enabled = os.environ.get("PROVIDER_HARNESS_PROMETHEUS_ENABLED", "").lower()
        if env_enabled:
            enabled = env_enabled in ("true", "1", "yes")
        else:
            enabled = bool(config.get("enabled", False))

        port_str = os.environ.get("PROVIDER_HARNESS_PROMETHEUS_PORT")
        if port_str:
            try:
                port = int(port_str)
            except ValueError:
                port = 0
        else:
            port = int(config.get("port", 0))

        host = os.environ.get("PROVIDER_HARNESS_PROMETHEUS_HOST", config.get("host", "0.0.0.0"))
        namespace = os.environ.get(
            "PROVIDER_HARNESS_PROMETHEUS_NAMESPACE",
            config.get("namespace", "provider_harness"),
        )

        return cls(enabled=enabled, port=port, host=host, namespace=namespace)


# =============================================================================
# Prometheus Exporter
# =============================================================================


class PrometheusExporter:
    """Prometheus metrics exporter with graceful degradation.

    Prometheus instruments are created lazily, one per metric name, the
    first time a metric with that name is observed. Label names are fixed
    by that first observation.
    """

    def __init__(self, config: Optional[PrometheusConfig] = None) -> None:
        self._config = config or PrometheusConfig.from_env_and_config()
        self._lock = threading.Lock()
        self._server_started = False
        self._instruments: Dict[str, Tuple[Any, Tuple[str, ...]]] = {}
        self.registry: Any = CollectorRegistry() if self.is_enabled() else None

    def is_available(self) -> bool:
        """Check if prometheus_client is installed."""
        return _PROMETHEUS_AVAILABLE

    def is_enabled(self) -> bool:
        """Check if Prometheus metrics are enabled and available."""
        return self._config.enabled and _PROMETHEUS_AVAILABLE

    def get_config(self) -> PrometheusConfig:
        return self._config

    def _instrument(self, name: str, metric_type: str, label_names: Tuple[str, ...]) -> Tuple[Any, Tuple[str, ...]]:
        with self._lock:
            existing = self._instruments.get(name)
            if existing is not None:
                return existing

            full_name = f"{self._config.namespace}_{name}"
            description = f"provider-harness {metric_type} {name}"
            if metric_type == "counter":
                instrument = Counter(full_name, description, label_names, registry=self.registry)
            elif metric_type == "gauge":
                instrument = Gauge(full_name, description, label_names, registry=self.registry)
            else:
                instrument = Histogram(
                    full_name,
                    description,
                    label_names,
                    buckets=DURATION_BUCKETS_MS,
                    registry=self.registry,
                )
            self._instruments[name] = (instrument, label_names)
            return self._instruments[name]

    def observe(self, metric: "Metric") -> None:
        """Mirror a collector metric into the matching Prometheus instrument."""
        if not self.is_enabled():
            return

        metric_type = metric.metric_type.value
        label_names = tuple(sorted(metric.labels))
        instrument, known_labels = self._instrument(metric.name, metric_type, label_names)
        if known_labels != label_names:
            logger.debug(
                "Dropping metric %s: labels %s do not match registered %s",
                metric.name,
                label_names,
                known_labels,
            )
            return

        target = instrument.labels(**metric.labels) if label_names else instrument
        if metric_type == "counter":
            target.inc(metric.value)
        elif metric_type == "gauge":
            target.set(metric.value)
        else:
            target.observe(metric.value)

    def render(self) -> bytes:
        """Render the exposition format for this exporter's registry."""
        if not self.is_enabled():
            return b""
        return generate_latest(self.registry)

    def start_server(self, port: Optional[int] = None, host: Optional[str] = None) -> bool:
        """Start the HTTP server for /metrics endpoint.

        Returns:
            True if server started, False if already running or not enabled
        """
        if not self.is_enabled() or self._server_started:
            return False

        with self._lock:
            if self._server_started:
                return False

            actual_port = port or self._config.port
            if actual_port <= 0:
                return False

            try:
                start_http_server(actual_port, addr=host or self._config.host, registry=self.registry)
            except OSError as exc:
                logger.warning("Failed to start Prometheus server on port %s: %s", actual_port, exc)
                return False
            self._server_started = True
            return True


# =============================================================================
# Singleton Instance
# =============================================================================

_exporter: Optional[PrometheusExporter] = None
_exporter_lock = threading.Lock()


def get_prometheus_exporter(config: Optional[PrometheusConfig] = None) -> PrometheusExporter:
    """Get the singleton Prometheus exporter instance.

    On first call, initializes with provided config or defaults.
    Subsequent calls return the same instance (config parameter ignored).
    """
    global _exporter

    if _exporter is None:
        with _exporter_lock:
            if _exporter is None:
                _exporter = PrometheusExporter(config)

    return _exporter


def reset_exporter() -> None:
    """Reset the singleton exporter (mainly for testing)."""
    global _exporter
    with _exporter_lock:
        _exporter = None


__all__ = [
    "PrometheusConfig",
    "PrometheusExporter",
    "get_prometheus_exporter",
    "reset_exporter",
]
