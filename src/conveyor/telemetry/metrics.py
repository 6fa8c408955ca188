"""MetricRecorder: OpenTelemetry counters for pipeline and rollout outcomes.

Metrics Emitted:
    - conveyor_rollouts_total{environment, status}
    - conveyor_pipeline_runs_total{state}
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from opentelemetry import metrics

if TYPE_CHECKING:
    from opentelemetry.metrics import Counter as CounterType
    from opentelemetry.metrics import Meter


class MetricRecorder:
    """OpenTelemetry metrics recorder.

    Caches counter instruments by name.

    Examples:
        >>> recorder = MetricRecorder()
        >>> recorder.increment("conveyor_rollouts_total", labels={"status": "success"})
    """

    def __init__(
        self,
        name: str = "conveyor",
        version: str = "0.1.0",
    ) -> None:
        self._meter: Meter = metrics.get_meter(name, version)
        self._counters: dict[str, CounterType] = {}

    def increment(
        self,
        name: str,
        value: int = 1,
        *,
        labels: dict[str, Any] | None = None,
        description: str | None = None,
        unit: str | None = None,
    ) -> None:
        """Increment a counter metric, creating it on first use."""
        counter = self._get_or_create_counter(name, description=description, unit=unit)
        attributes: dict[str, Any] = labels if labels is not None else {}
        counter.add(value, attributes=attributes)

    def record_rollout(self, environment: str, status: str) -> None:
        """Count a finalized RolloutAttempt."""
        self.increment(
            "conveyor_rollouts_total",
            labels={"environment": environment, "status": status},
            description="Finalized rollout attempts",
            unit="1",
        )

    def record_pipeline_run(self, state: str) -> None:
        """Count a pipeline run reaching a terminal state."""
        self.increment(
            "conveyor_pipeline_runs_total",
            labels={"state": state},
            description="Pipeline runs by terminal state",
            unit="1",
        )

    def _get_or_create_counter(
        self,
        name: str,
        *,
        description: str | None = None,
        unit: str | None = None,
    ) -> CounterType:
        if name not in self._counters:
            kwargs: dict[str, str] = {}
            if description is not None:
                kwargs["description"] = description
            if unit is not None:
                kwargs["unit"] = unit

            self._counters[name] = self._meter.create_counter(name, **kwargs)

        return self._counters[name]


__all__ = [
    "MetricRecorder",
]
