"""Telemetry for conveyor: structlog logging, OpenTelemetry tracing and metrics."""

from __future__ import annotations

from conveyor.telemetry.logging import add_trace_context, configure_logging
from conveyor.telemetry.metrics import MetricRecorder
from conveyor.telemetry.sanitization import sanitize_error_message
from conveyor.telemetry.tracing import create_span, get_tracer, reset_tracer, trace_id_of, traced

__all__ = [
    "MetricRecorder",
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "trace_id_of",
    "traced",
]
