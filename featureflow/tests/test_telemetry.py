"""Tests for telemetry module.

These tests verify OpenTelemetry setup for traces and metrics.
"""

import os
from unittest.mock import MagicMock, patch

from featureflow import telemetry
from featureflow.config import FlowConfig


class TestSetupTelemetry:
    """Test setup_telemetry function."""

    def test_setup_returns_tracer_and_meter(self) -> None:
        """With OTLP disabled, providers without exporters are used."""
        tracer, meter = telemetry.setup_telemetry(FlowConfig())

        assert tracer is not None
        assert meter is not None

    def test_uses_otlp_endpoint_from_config(self) -> None:
        """Exporters receive the configured endpoint when OTLP is enabled."""
        config = FlowConfig(otlp_endpoint="http://custom:4317")

        with patch.dict(os.environ, {"OTLP_ENABLED": "true"}):
            with patch(
                "opentelemetry.exporter.otlp.proto.grpc.trace_exporter.OTLPSpanExporter"
            ) as mock_span_exporter:
                with patch(
                    "opentelemetry.exporter.otlp.proto.grpc.metric_exporter.OTLPMetricExporter"
                ) as mock_metric_exporter:
                    telemetry.setup_telemetry(config)

        mock_span_exporter.assert_called_with(endpoint="http://custom:4317")
        mock_metric_exporter.assert_called_with(endpoint="http://custom:4317")


class TestCreateMetrics:
    """Test metric instrument creation."""

    def test_creates_instruments(self) -> None:
        meter = MagicMock()

        telemetry.create_metrics(meter)

        counter_names = [c.args[0] for c in meter.create_counter.call_args_list]
        assert counter_names == [
            "featureflow_phases_total",
            "featureflow_gates_total",
            "featureflow_lessons_total",
        ]
        meter.create_histogram.assert_called_once()
        assert (
            meter.create_histogram.call_args.args[0]
            == "featureflow_agent_duration_seconds"
        )

    def test_recorders_use_created_instruments(self) -> None:
        meter = MagicMock()
        telemetry.create_metrics(meter)

        telemetry.record_phase("planning", "succeeded")
        telemetry.record_gate("quality", False)

        telemetry.phases_counter.add.assert_called_with(
            1, {"phase": "planning", "status": "succeeded"}
        )
        telemetry.gates_counter.add.assert_called_with(
            1, {"gate": "quality", "passed": "false"}
        )

    def test_recorders_tolerate_missing_instruments(self) -> None:
        """Recording before create_metrics() is a no-op."""
        with patch.object(telemetry, "lessons_counter", None, create=True):
            telemetry.record_lesson("persisted")

    def test_agent_duration_is_labelled_by_phase(self) -> None:
        """Session ids never reach metric attributes."""
        meter = MagicMock()
        telemetry.create_metrics(meter)

        telemetry.record_agent_duration(12.5, "reflect")

        telemetry.agent_duration.record.assert_called_with(12.5, {"phase": "reflect"})
