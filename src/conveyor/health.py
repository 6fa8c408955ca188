"""Health Gate: block until new compute units report ready, or give up.

The gate polls a HealthProbe at a fixed interval. Waiting happens on a
threading.Event with a timeout, so only the calling rollout thread is
suspended and an operator cancellation wakes it immediately.

Example:
    >>> gate = HealthGate(InMemoryHealthProbe(), poll_interval=0.5)
    >>> gate.wait_healthy("staging", timeout=60.0, targets=["staging-task-7"])
    <GateOutcome.HEALTHY: 'healthy'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from conveyor.providers.base import ProbeStatus
from conveyor.telemetry.tracing import create_span

if TYPE_CHECKING:
    from conveyor.providers.base import HealthProbe

logger = structlog.get_logger(__name__)


class GateOutcome(str, Enum):
    """Result of a health gate wait."""

    HEALTHY = "healthy"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class HealthGate:
    """Polls readiness for a set of targets until all have reported healthy.

    A target counts as passed once it returns a positive signal. Probe
    exceptions are negative signals.

    Attributes:
        poll_interval: Default seconds between polls.
    """

    def __init__(
        self,
        probe: HealthProbe,
        poll_interval: float = 5.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._probe = probe
        self.poll_interval = poll_interval
        self._clock = clock

    def wait_healthy(
        self,
        environment: str,
        timeout: float | None,
        *,
        targets: Sequence[str] | None = None,
        cancel: threading.Event | None = None,
        poll_interval: float | None = None,
    ) -> GateOutcome:
        """Wait for every target to pass the readiness probe.

        Args:
            environment: Environment name; the default target when targets is empty.
            timeout: Maximum wait in seconds. Mandatory.
            targets: Task ids or target groups to probe.
            cancel: Cancellation token; setting it ends the wait.
            poll_interval: Override of the gate's poll interval.

        Returns:
            HEALTHY on the first poll where all targets have passed,
            TIMED_OUT when the timeout elapses first, CANCELLED when the
            token is set.

        Raises:
            ValueError: If timeout is missing or not positive.
        """
        if timeout is None or timeout <= 0:
            raise ValueError("Health gate timeout is mandatory and must be positive")

        interval = poll_interval or self.poll_interval
        pending = list(dict.fromkeys(targets or [environment]))
        # Waiting on an Event that is never set still sleeps without spinning.
        token = cancel or threading.Event()
        log = logger.bind(environment=environment, timeout_seconds=timeout)

        with create_span(
            "conveyor.health.wait",
            attributes={
                "environment": environment,
                "timeout_seconds": timeout,
                "target_count": len(pending),
            },
        ) as span:
            start = self._clock()
            polls = 0
            while True:
                if token.is_set():
                    span.set_attribute("outcome", GateOutcome.CANCELLED.value)
                    log.info("health_gate_cancelled", polls=polls)
                    return GateOutcome.CANCELLED

                polls += 1
                pending = [t for t in pending if not self._passes(t, log)]
                if not pending:
                    span.set_attribute("outcome", GateOutcome.HEALTHY.value)
                    span.set_attribute("polls", polls)
                    log.info("health_gate_passed", polls=polls)
                    return GateOutcome.HEALTHY

                elapsed = self._clock() - start
                if elapsed >= timeout:
                    span.set_attribute("outcome", GateOutcome.TIMED_OUT.value)
                    span.set_attribute("polls", polls)
                    log.warning("health_gate_timed_out", polls=polls, unhealthy=pending)
                    return GateOutcome.TIMED_OUT

                token.wait(min(interval, timeout - elapsed))

    def _passes(self, target: str, log: structlog.typing.FilteringBoundLogger) -> bool:
        try:
            return self._probe.status(target) is ProbeStatus.HEALTHY
        except Exception as e:
            log.debug("health_probe_failed", target=target, error=str(e))
            return False


__all__: list[str] = ["GateOutcome", "HealthGate"]
