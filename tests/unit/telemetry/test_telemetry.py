"""Unit tests for tracing, logging and metrics helpers."""

from __future__ import annotations

import json
from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from conveyor.telemetry.logging import configure_logging
from conveyor.telemetry.metrics import MetricRecorder
from conveyor.telemetry.sanitization import sanitize_error_message
from conveyor.telemetry.tracing import create_span, reset_tracer, set_tracer, traced


@pytest.fixture
def exporter() -> Generator[InMemorySpanExporter, None, None]:
    """Route conveyor spans to an in-memory exporter."""
    span_exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    set_tracer(provider.get_tracer("conveyor"))
    yield span_exporter
    reset_tracer()


class TestCreateSpan:
    def test_attributes_recorded_and_none_skipped(self, exporter: InMemorySpanExporter) -> None:
        with create_span("conveyor.rollout", attributes={"environment": "staging", "x": None}):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.name == "conveyor.rollout"
        assert span.attributes == {"environment": "staging"}

    def test_nested_spans_share_trace(self, exporter: InMemorySpanExporter) -> None:
        with create_span("conveyor.pipeline.run"), create_span("conveyor.ci.step"):
            pass

        child, parent = exporter.get_finished_spans()
        assert child.parent is not None
        assert child.parent.span_id == parent.context.span_id
        assert child.context.trace_id == parent.context.trace_id

    def test_error_status_is_sanitized(self, exporter: InMemorySpanExporter) -> None:
        with pytest.raises(RuntimeError), create_span("conveyor.migrations"):
            raise RuntimeError("connect postgres://app:hunter2@db/app failed")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code is StatusCode.ERROR
        assert "hunter2" not in (span.status.description or "")
        assert span.attributes["exception.type"] == "RuntimeError"


class TestTraced:
    def test_decorator_with_name(self, exporter: InMemorySpanExporter) -> None:
        @traced(name="conveyor.publish", attributes={"component": "artifacts"})
        def publish() -> str:
            return "ok"

        assert publish() == "ok"
        (span,) = exporter.get_finished_spans()
        assert span.name == "conveyor.publish"
        assert span.attributes == {"component": "artifacts"}

    def test_bare_decorator_uses_function_name(self, exporter: InMemorySpanExporter) -> None:
        @traced
        def build_release() -> None:
            raise ValueError("bad")

        with pytest.raises(ValueError):
            build_release()

        (span,) = exporter.get_finished_spans()
        assert span.name == "build_release"
        assert span.status.status_code is StatusCode.ERROR


class TestConfigureLogging:
    def test_json_lines_to_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging("INFO", json_output=True)

        structlog.get_logger("conveyor.test").info("rollout_started", environment="staging")

        captured = capsys.readouterr()
        assert captured.out == ""
        line = json.loads(captured.err.strip().splitlines()[-1])
        assert line["event"] == "rollout_started"
        assert line["environment"] == "staging"
        assert line["level"] == "info"

    def test_level_filtering(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging("WARNING", json_output=True)

        log = structlog.get_logger("conveyor.test")
        log.info("hidden")
        log.warning("shown")

        err = capsys.readouterr().err
        assert "hidden" not in err
        assert "shown" in err

    def test_trace_context_added_inside_span(
        self,
        capsys: pytest.CaptureFixture[str],
        exporter: InMemorySpanExporter,
    ) -> None:
        configure_logging("INFO", json_output=True)

        with create_span("conveyor.rollout"):
            structlog.get_logger("conveyor.test").info("batch_started")

        line = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        (span,) = exporter.get_finished_spans()
        assert line["trace_id"] == format(span.context.trace_id, "032x")

    def test_invalid_level(self) -> None:
        with pytest.raises(ValueError, match="Invalid log level"):
            configure_logging("LOUD")


class TestMetricRecorder:
    def test_counters_created_once_and_labelled(self) -> None:
        meter = MagicMock()
        with patch("conveyor.telemetry.metrics.metrics.get_meter", return_value=meter):
            recorder = MetricRecorder()

        recorder.record_rollout("production", "success")
        recorder.record_rollout("production", "failed")

        meter.create_counter.assert_called_once()
        assert meter.create_counter.call_args.args[0] == "conveyor_rollouts_total"
        counter = meter.create_counter.return_value
        assert counter.add.call_args.kwargs["attributes"] == {
            "environment": "production",
            "status": "failed",
        }

    def test_pipeline_runs_counter(self) -> None:
        meter = MagicMock()
        with patch("conveyor.telemetry.metrics.metrics.get_meter", return_value=meter):
            MetricRecorder().record_pipeline_run("rejected")

        counter = meter.create_counter.return_value
        counter.add.assert_called_once_with(1, attributes={"state": "rejected"})


class TestSanitization:
    @pytest.mark.parametrize(
        ("message", "secret"),
        [
            ("connect postgres://app:hunter2@db/app", "hunter2"),
            ("token=abc123 rejected", "abc123"),
            ("Authorization: Bearer-xyz", "Bearer-xyz"),
        ],
    )
    def test_redacts(self, message: str, secret: str) -> None:
        assert secret not in sanitize_error_message(message)

    def test_truncates(self) -> None:
        assert len(sanitize_error_message("x" * 1000, max_length=50)) == 50
