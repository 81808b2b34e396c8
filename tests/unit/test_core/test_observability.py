"""
Unit tests for the harness event stream, metrics, Prometheus mirroring and
logging formatters.
"""

import io
import json
import logging

import pytest

from provider_harness.core import prometheus
from provider_harness.core.context import execution_context
from provider_harness.core.logging_config import (
    ROOT_LOGGER_NAME,
    ContextFilter,
    HumanReadableFormatter,
    StructuredFormatter,
    configure_logging,
    get_logger,
)
from provider_harness.core.observability import (
    EventEmitter,
    HarnessEvent,
    HarnessEventType,
    Metric,
    MetricType,
    get_metrics,
    get_observability_status,
)
from provider_harness.core.prometheus import PrometheusConfig, PrometheusExporter


@pytest.fixture(autouse=True)
def fresh_exporter():
    prometheus.reset_exporter()
    yield
    prometheus.reset_exporter()


def _record(message="switched to %s", args=("gemini",), name="provider_harness.core.rotation"):
    return logging.LogRecord(name, logging.INFO, __file__, 10, message, args, None)


# =============================================================================
# Events
# =============================================================================


class TestEventEmitter:
    """Test event publication to sinks."""

    def test_subscribe_once(self):
        """Subscribing the same sink twice delivers each event once."""
        received = []
        emitter = EventEmitter()
        emitter.subscribe(received.append)
        emitter.subscribe(received.append)

        event = emitter.emit(HarnessEventType.SWITCH, from_provider="claude", to_provider="gemini")

        assert received == [event]
        assert event.details == {"from_provider": "claude", "to_provider": "gemini"}

    def test_unsubscribe(self):
        """Unsubscribed sinks stop receiving events."""
        received = []
        emitter = EventEmitter()
        emitter.subscribe(received.append)
        emitter.unsubscribe(received.append)
        emitter.emit(HarnessEventType.RETRY, attempt=1)
        assert received == []

    def test_failing_sink_is_skipped(self, caplog):
        """A raising sink is logged and later sinks still run."""
        received = []

        def broken(event):
            raise RuntimeError("sink down")

        emitter = EventEmitter()
        emitter.subscribe(broken)
        emitter.subscribe(received.append)

        with caplog.at_level(logging.WARNING, logger="provider_harness.core.observability.events"):
            emitter.emit(HarnessEventType.ERROR, error_type="timeout")

        assert len(received) == 1
        assert any("failed" in record.getMessage() for record in caplog.records)

    def test_string_event_types(self):
        """String event types are coerced; unknown ones become errors."""
        emitter = EventEmitter()
        assert emitter.emit("rate_limit").event_type == HarnessEventType.RATE_LIMIT

        event = emitter.emit("mystery", value=1)
        assert event.event_type == HarnessEventType.ERROR
        assert event.details == {"original_event_type": "mystery", "value": 1}

    def test_correlation_id_from_context(self):
        """Events emitted inside a run carry its correlation ID."""
        emitter = EventEmitter()
        with execution_context(correlation_id="run_abc123") as ctx:
            event = emitter.emit(HarnessEventType.RECOVERY)
        assert event.correlation_id == ctx.correlation_id == "run_abc123"
        assert event.to_dict()["correlation_id"] == "run_abc123"

    def test_to_dict_without_run(self):
        """Events outside a run omit the correlation ID."""
        event = HarnessEvent(HarnessEventType.CIRCUIT_BREAKER, details={"state": "open"})
        data = event.to_dict()
        assert data["event_type"] == "circuit_breaker"
        assert data["details"] == {"state": "open"}
        assert "correlation_id" not in data


# =============================================================================
# Metrics
# =============================================================================


class TestMetricsCollector:
    """Test structured metric logging."""

    def test_counter_logged(self, caplog):
        """Metrics are logged with their structured payload."""
        with caplog.at_level(logging.DEBUG, logger="provider_harness.core.observability.metrics"):
            get_metrics().counter("attempts_total", labels={"provider": "claude"})

        records = [r for r in caplog.records if hasattr(r, "metric")]
        assert records
        assert records[-1].metric["name"] == "attempts_total"
        assert records[-1].metric["type"] == "counter"
        assert records[-1].metric["labels"] == {"provider": "claude"}

    def test_status(self):
        """Observability status reports Prometheus availability."""
        status = get_observability_status()
        assert set(status) == {"prometheus_available", "prometheus_enabled"}


class TestPrometheusExporter:
    """Test mirroring metrics into Prometheus."""

    def test_disabled_is_noop(self):
        """A disabled exporter ignores metrics and renders nothing."""
        exporter = PrometheusExporter(PrometheusConfig(enabled=False))
        exporter.observe(Metric("attempts_total", 1, MetricType.COUNTER))
        assert exporter.render() == b""
        assert exporter.start_server() is False

    def test_mirrors_metrics(self):
        """Counters, gauges and timers map onto Prometheus instruments."""
        pytest.importorskip("prometheus_client")
        exporter = PrometheusExporter(PrometheusConfig(enabled=True))

        exporter.observe(Metric("attempts_total", 2, MetricType.COUNTER, {"provider": "claude"}))
        exporter.observe(Metric("open_circuits", 3, MetricType.GAUGE))
        exporter.observe(Metric("attempt_duration_ms", 120.0, MetricType.TIMER))

        output = exporter.render().decode()
        assert 'provider_harness_attempts_total{provider="claude"} 2.0' in output
        assert "provider_harness_open_circuits 3.0" in output
        assert "provider_harness_attempt_duration_ms_count 1.0" in output

    def test_mismatched_labels_dropped(self):
        """Label names are fixed by the first observation."""
        pytest.importorskip("prometheus_client")
        exporter = PrometheusExporter(PrometheusConfig(enabled=True))

        exporter.observe(Metric("switches_total", 1, MetricType.COUNTER, {"reason": "timeout"}))
        exporter.observe(Metric("switches_total", 1, MetricType.COUNTER, {"provider": "claude"}))

        output = exporter.render().decode()
        assert 'provider_harness_switches_total{reason="timeout"} 1.0' in output
        assert 'provider="claude"' not in output

    def test_server_needs_port(self):
        """No server is started without a port."""
        pytest.importorskip("prometheus_client")
        exporter = PrometheusExporter(PrometheusConfig(enabled=True, port=0))
        assert exporter.start_server() is False


# =============================================================================
# Logging
# =============================================================================


class TestFormatters:
    """Test log formatting with run context."""

    def test_structured_with_context(self):
        """JSON lines include the run context and extras."""
        record = _record()
        record.switch_reason = "timeout"
        with execution_context(correlation_id="run_0f0f", provider="claude", model="sonnet"):
            ContextFilter().filter(record)

        entry = json.loads(StructuredFormatter().format(record))
        assert entry["message"] == "switched to gemini"
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == "run_0f0f"
        assert entry["provider"] == "claude"
        assert entry["model"] == "sonnet"
        assert entry["extra"] == {"switch_reason": "timeout"}

    def test_structured_outside_run(self):
        """Outside a run the context fields are placeholders."""
        record = _record()
        ContextFilter().filter(record)
        entry = json.loads(StructuredFormatter(include_extra=False).format(record))
        assert entry["correlation_id"] == "-"
        assert entry["provider"] == "-"
        assert entry["elapsed_ms"] == 0.0

    def test_human_readable(self):
        """Human output prefixes the run and target."""
        record = _record()
        with execution_context(correlation_id="run_0f0f", provider="claude", model="sonnet"):
            ContextFilter().filter(record)

        line = HumanReadableFormatter(include_timestamp=False).format(record)
        assert line == "[INFO] [run_0f0f] [claude:sonnet] core.rotation: switched to gemini"

    def test_human_readable_without_context(self):
        """Records without context omit the prefixes."""
        line = HumanReadableFormatter(include_timestamp=False).format(_record())
        assert line == "[INFO] core.rotation: switched to gemini"


class TestConfigureLogging:
    """Test logger setup."""

    @pytest.fixture
    def root_logger(self):
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        handlers, level = list(logger.handlers), logger.level
        yield logger
        logger.handlers[:] = handlers
        logger.setLevel(level)

    def test_configure_human(self, root_logger):
        """configure_logging installs a single handler writing to the stream."""
        stream = io.StringIO()
        configure_logging(level="debug", format="human", stream=stream)

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, HumanReadableFormatter)

        get_logger("core.quota").debug("quota at %d", 3)
        assert "core.quota: quota at 3" in stream.getvalue()

    def test_configure_structured(self, root_logger):
        """The structured format writes JSON lines."""
        stream = io.StringIO()
        configure_logging(format="structured", stream=stream)
        get_logger("core.state_store").info("saved")
        entry = json.loads(stream.getvalue().splitlines()[-1])
        assert entry["logger"] == "provider_harness.core.state_store"

    def test_get_logger_namespacing(self):
        """Names outside the namespace are prefixed."""
        assert get_logger("custom").name == "provider_harness.custom"
        assert get_logger("provider_harness.core").name == "provider_harness.core"
