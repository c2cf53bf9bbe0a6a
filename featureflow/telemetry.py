"""Telemetry setup for OpenTelemetry traces and metrics.

Phase runs are traced as spans; phase outcomes, gate decisions, lesson
extraction and agent runtime are recorded as metrics.

When OTLP export is not enabled, falls back to no-op telemetry.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from featureflow.config import FlowConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
phases_counter: metrics.Counter
gates_counter: metrics.Counter
lessons_counter: metrics.Counter
agent_duration: metrics.Histogram


def setup_telemetry(config: FlowConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with OTLP export.

    If OTLP_ENABLED is not "true" or no endpoint is configured, uses
    providers without exporters.

    Args:
        config: Configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for pipeline tracking.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global phases_counter, gates_counter, lessons_counter, agent_duration

    phases_counter = meter.create_counter(
        "featureflow_phases_total",
        description="Phase executions by phase and status",
    )

    gates_counter = meter.create_counter(
        "featureflow_gates_total",
        description="Gate checks by gate kind and outcome",
    )

    lessons_counter = meter.create_counter(
        "featureflow_lessons_total",
        description="Lesson candidates by outcome (persisted, deduplicated, invalid)",
    )

    agent_duration = meter.create_histogram(
        "featureflow_agent_duration_seconds",
        description="Agent process wall time",
        unit="s",
    )


def record_phase(phase: str, status: str) -> None:
    """Count a phase execution. No-op before create_metrics() is called."""
    try:
        phases_counter.add(1, {"phase": phase, "status": status})
    except (AttributeError, NameError):
        pass


def record_gate(gate: str, passed: bool) -> None:
    """Count a gate decision. No-op before create_metrics() is called."""
    try:
        gates_counter.add(1, {"gate": gate, "passed": str(passed).lower()})
    except (AttributeError, NameError):
        pass


def record_lesson(outcome: str) -> None:
    """Count a lesson candidate outcome. No-op before create_metrics() is called."""
    try:
        lessons_counter.add(1, {"outcome": outcome})
    except (AttributeError, NameError):
        pass


def record_agent_duration(seconds: float, phase: str) -> None:
    """Record agent wall time by phase. No-op before create_metrics() is called."""
    try:
        agent_duration.record(seconds, {"phase": phase})
    except (AttributeError, NameError):
        pass
