"""CI stage: run configured build and test steps in an isolated sandbox.

Each pipeline run gets its own temporary working directory, so runs can be in
CI concurrently. Steps run sequentially as shell commands with a mandatory
timeout; the first failing step stops the stage.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from conveyor.errors import BuildFailedError, RolloutCancelledError
from conveyor.schemas.models import CIStepResult
from conveyor.telemetry.sanitization import sanitize_error_message
from conveyor.telemetry.tracing import create_span

if TYPE_CHECKING:
    from conveyor.schemas.config import CIStepConfig
    from conveyor.schemas.models import SourceEvent

logger = structlog.get_logger(__name__)

TERMINATE_GRACE_SECONDS = 5.0
"""Wait after SIGTERM before SIGKILL for timed-out or cancelled steps."""

_CANCEL_POLL_SECONDS = 0.2


class CIRunner:
    """Runs CI steps for source events.

    Example:
        >>> runner = CIRunner([CIStepConfig(name="test", command="pytest -q")])
        >>> results = runner.run(event)
        >>> [r.passed for r in results]
        [True]
    """

    def __init__(
        self,
        steps: list[CIStepConfig],
        *,
        workspace_root: Path | str | None = None,
    ) -> None:
        self.steps = list(steps)
        self._workspace_root = str(workspace_root) if workspace_root else None

    def run(
        self,
        event: SourceEvent,
        *,
        cancel: threading.Event | None = None,
        results: list[CIStepResult] | None = None,
    ) -> list[CIStepResult]:
        """Run every step in a fresh sandbox.

        Args:
            event: Triggering source event.
            cancel: Cancellation token.
            results: List that step results are appended to as they finish,
                so callers keep partial results when a step fails.

        Returns:
            Results of all steps, all passed.

        Raises:
            BuildFailedError: On the first failing or timed-out step.
            RolloutCancelledError: If cancelled while a step runs.
        """
        results = results if results is not None else []
        sandbox = tempfile.mkdtemp(prefix="conveyor-ci-", dir=self._workspace_root)
        log = logger.bind(revision=event.revision, ref=event.ref, sandbox=sandbox)
        log.info("ci_started", steps=len(self.steps))
        try:
            env = dict(os.environ)
            env["CONVEYOR_REVISION"] = event.revision
            env["CONVEYOR_REF"] = event.ref
            env["CONVEYOR_SANDBOX"] = sandbox
            for step in self.steps:
                result = self._run_step(step, sandbox, env, cancel)
                results.append(result)
                if not result.passed:
                    raise BuildFailedError(step.name, result.error or "failed")
        finally:
            shutil.rmtree(sandbox, ignore_errors=True)

        log.info("ci_passed", steps=len(results))
        return results

    def _run_step(
        self,
        step: CIStepConfig,
        sandbox: str,
        env: dict[str, str],
        cancel: threading.Event | None,
    ) -> CIStepResult:
        with create_span(
            "conveyor.ci.step",
            attributes={"step": step.name, "timeout_seconds": step.timeout_seconds},
        ) as span:
            start_time = time.monotonic()
            logger.info(
                "ci_step_started",
                step=step.name,
                command=step.command,
                timeout_seconds=step.timeout_seconds,
            )
            try:
                proc = subprocess.Popen(
                    step.command,
                    shell=True,
                    cwd=sandbox,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    start_new_session=True,
                )
            except OSError as e:
                return CIStepResult(
                    name=step.name,
                    passed=False,
                    duration_ms=int((time.monotonic() - start_time) * 1000),
                    error=str(e),
                )

            deadline = start_time + step.timeout_seconds
            timed_out = False
            while True:
                try:
                    _, stderr = proc.communicate(timeout=_CANCEL_POLL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        self._terminate(proc)
                        logger.warning("ci_step_cancelled", step=step.name)
                        raise RolloutCancelledError("ci_running") from None
                    if time.monotonic() >= deadline:
                        timed_out = True
                        self._terminate(proc)
                        stderr = ""
                        break

            duration_ms = int((time.monotonic() - start_time) * 1000)
            span.set_attribute("duration_ms", duration_ms)

            if timed_out:
                error = f"timed out after {step.timeout_seconds:g}s"
                logger.warning("ci_step_timeout", step=step.name, duration_ms=duration_ms)
                return CIStepResult(
                    name=step.name, passed=False, duration_ms=duration_ms, error=error
                )

            if proc.returncode == 0:
                logger.info("ci_step_passed", step=step.name, duration_ms=duration_ms)
                return CIStepResult(
                    name=step.name, passed=True, duration_ms=duration_ms, exit_code=0
                )

            error = f"exit code {proc.returncode}"
            if stderr:
                error = f"{error}: {sanitize_error_message(stderr.strip())}"
            logger.warning(
                "ci_step_failed",
                step=step.name,
                duration_ms=duration_ms,
                exit_code=proc.returncode,
                error=error,
            )
            return CIStepResult(
                name=step.name,
                passed=False,
                duration_ms=duration_ms,
                exit_code=proc.returncode,
                error=error,
            )

    def _terminate(self, proc: subprocess.Popen[str]) -> None:
        """SIGTERM the step's process group, then SIGKILL after the grace period."""
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            proc.communicate(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            proc.communicate()


__all__: list[str] = ["CIRunner", "TERMINATE_GRACE_SECONDS"]
