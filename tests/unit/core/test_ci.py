"""Unit tests for CIRunner.

Steps run as real shell commands inside a temporary sandbox.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from conveyor.ci import CIRunner
from conveyor.errors import BuildFailedError, RolloutCancelledError
from conveyor.schemas.config import CIStepConfig
from conveyor.schemas.models import CIStepResult, SourceEvent, SourceEventKind

EVENT = SourceEvent(kind=SourceEventKind.PUSH, revision="f" * 40, ref="refs/heads/main")


def _runner(tmp_path: Path, *steps: CIStepConfig) -> CIRunner:
    return CIRunner(list(steps), workspace_root=tmp_path)


class TestCIRunner:
    def test_all_steps_pass(self, tmp_path: Path) -> None:
        runner = _runner(
            tmp_path,
            CIStepConfig(name="build", command="true"),
            CIStepConfig(name="test", command="exit 0"),
        )

        results = runner.run(EVENT)

        assert [(r.name, r.passed, r.exit_code) for r in results] == [
            ("build", True, 0),
            ("test", True, 0),
        ]

    def test_first_failure_stops_stage(self, tmp_path: Path) -> None:
        runner = _runner(
            tmp_path,
            CIStepConfig(name="build", command="echo broken >&2; exit 3"),
            CIStepConfig(name="test", command="true"),
        )
        results: list[CIStepResult] = []

        with pytest.raises(BuildFailedError) as exc_info:
            runner.run(EVENT, results=results)

        assert exc_info.value.step == "build"
        assert [r.name for r in results] == ["build"]
        assert results[0].exit_code == 3
        assert "broken" in (results[0].error or "")

    def test_step_timeout(self, tmp_path: Path) -> None:
        runner = _runner(tmp_path, CIStepConfig(name="hang", command="sleep 5", timeout_seconds=0.3))
        results: list[CIStepResult] = []

        start = time.monotonic()
        with pytest.raises(BuildFailedError, match="timed out"):
            runner.run(EVENT, results=results)

        assert time.monotonic() - start < 4.0
        assert results[0].passed is False

    def test_event_exported_to_steps(self, tmp_path: Path) -> None:
        out = tmp_path / "seen.txt"
        runner = _runner(
            tmp_path,
            CIStepConfig(
                name="env",
                command=f'echo "$CONVEYOR_REVISION $CONVEYOR_REF" > {out}',
            ),
        )

        runner.run(EVENT)

        assert out.read_text().split() == ["f" * 40, "refs/heads/main"]

    def test_steps_run_in_sandbox_that_is_removed(self, tmp_path: Path) -> None:
        out = tmp_path / "cwd.txt"
        runner = _runner(tmp_path, CIStepConfig(name="pwd", command=f"pwd > {out}"))

        runner.run(EVENT)

        sandbox = Path(out.read_text().strip())
        assert sandbox.name.startswith("conveyor-ci-")
        assert not sandbox.exists()

    def test_cancel_terminates_running_step(self, tmp_path: Path) -> None:
        runner = _runner(tmp_path, CIStepConfig(name="hang", command="sleep 30"))
        token = threading.Event()
        threading.Timer(0.1, token.set).start()

        start = time.monotonic()
        with pytest.raises(RolloutCancelledError):
            runner.run(EVENT, cancel=token)

        assert time.monotonic() - start < 10.0
