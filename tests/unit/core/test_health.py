"""Unit tests for the Health Gate."""

from __future__ import annotations

import threading
import time

import pytest

from conveyor.health import GateOutcome, HealthGate
from conveyor.providers.base import HealthProbe, ProbeStatus
from conveyor.providers.memory import InMemoryHealthProbe


class _FlakyProbe(HealthProbe):
    """Healthy after ``passes_after`` calls per target; raises before that."""

    def __init__(self, passes_after: int) -> None:
        self.passes_after = passes_after
        self.counts: dict[str, int] = {}

    def status(self, target: str) -> ProbeStatus:
        self.counts[target] = self.counts.get(target, 0) + 1
        if self.counts[target] <= self.passes_after:
            raise ConnectionError("probe failed")
        return ProbeStatus.HEALTHY


class TestHealthGate:
    def test_all_targets_healthy(self) -> None:
        gate = HealthGate(InMemoryHealthProbe(), poll_interval=0.01)

        outcome = gate.wait_healthy("staging", 1.0, targets=["t1", "t2"])

        assert outcome is GateOutcome.HEALTHY

    def test_defaults_to_environment_target(self) -> None:
        probe = InMemoryHealthProbe()
        HealthGate(probe, poll_interval=0.01).wait_healthy("staging", 1.0)
        assert probe.calls == ["staging"]

    def test_times_out_when_a_target_stays_unhealthy(self) -> None:
        probe = InMemoryHealthProbe()
        probe.mark("t2", healthy=False)
        gate = HealthGate(probe, poll_interval=0.01)

        start = time.monotonic()
        outcome = gate.wait_healthy("staging", 0.1, targets=["t1", "t2"])

        assert outcome is GateOutcome.TIMED_OUT
        assert time.monotonic() - start < 1.0

    def test_passed_targets_not_reprobed(self) -> None:
        probe = InMemoryHealthProbe()
        probe.mark("slow", healthy=False)
        gate = HealthGate(probe, poll_interval=0.01)

        def heal() -> None:
            time.sleep(0.05)
            probe.mark("slow", healthy=True)

        healer = threading.Thread(target=heal)
        healer.start()
        outcome = gate.wait_healthy("staging", 2.0, targets=["fast", "slow"])
        healer.join()

        assert outcome is GateOutcome.HEALTHY
        assert probe.calls.count("fast") == 1
        assert probe.calls.count("slow") > 1

    def test_probe_exceptions_are_negative_signals(self) -> None:
        probe = _FlakyProbe(passes_after=2)
        outcome = HealthGate(probe, poll_interval=0.01).wait_healthy("staging", 1.0, targets=["t"])

        assert outcome is GateOutcome.HEALTHY
        assert probe.counts["t"] == 3

    def test_cancel_wakes_wait(self) -> None:
        probe = InMemoryHealthProbe(predicate=lambda target: False)
        gate = HealthGate(probe, poll_interval=10.0)
        token = threading.Event()
        threading.Timer(0.05, token.set).start()

        start = time.monotonic()
        outcome = gate.wait_healthy("staging", 30.0, targets=["t"], cancel=token)

        assert outcome is GateOutcome.CANCELLED
        assert time.monotonic() - start < 5.0

    @pytest.mark.parametrize("timeout", [None, 0, -1.0])
    def test_timeout_is_mandatory(self, timeout: float | None) -> None:
        gate = HealthGate(InMemoryHealthProbe())
        with pytest.raises(ValueError, match="mandatory"):
            gate.wait_healthy("staging", timeout)

    def test_poll_interval_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            HealthGate(InMemoryHealthProbe(), poll_interval=0)
