"""Pipeline State Machine: CI -> staging -> approval -> production.

Each source event starts one PipelineRun. The run walks an explicit
transition table; any state change not in the table raises
InvalidTransitionError. A failed stage is terminal: the run stops there, the
error is recorded on the run, and no later stage starts.

Event routing:
    pull_request                  CI only
    push to a deploy branch       CI + staging
    push to any other branch      CI only
    tag matching the prod pattern CI + staging + approval + production
    any other tag                 CI + staging

Production is only entered through ``approved`` after the approval gate for
the exact (production environment, release id) pair has been consumed.

PipelineDispatcher puts an event queue between the event source and the
state machine and runs each pipeline on a worker thread.
"""

from __future__ import annotations

import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict

from conveyor.errors import (
    ApprovalRejectedError,
    ConveyorError,
    InvalidTransitionError,
    RolloutCancelledError,
)
from conveyor.schemas.models import (
    ApprovalState,
    PipelineRun,
    PipelineState,
    Release,
    RolloutStatus,
    SourceEventKind,
    StateTransition,
)
from conveyor.telemetry.tracing import create_span

if TYPE_CHECKING:
    from conveyor.approvals import ApprovalRegistry
    from conveyor.artifacts import ArtifactStoreClient
    from conveyor.ci import CIRunner
    from conveyor.rollout import RolloutController
    from conveyor.schemas.config import ConveyorConfig
    from conveyor.schemas.models import CIStepResult, RolloutAttempt, SourceEvent
    from conveyor.store import ControlPlaneStore
    from conveyor.telemetry.metrics import MetricRecorder
    from conveyor.webhooks import WebhookNotifier

logger = structlog.get_logger(__name__)

S = PipelineState

TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    S.IDLE: frozenset({S.CI_RUNNING, S.CANCELLED}),
    S.CI_RUNNING: frozenset({S.CI_FAILED, S.CI_PASSED, S.CANCELLED}),
    S.CI_PASSED: frozenset({S.STAGING_ROLLOUT}),
    S.STAGING_ROLLOUT: frozenset({S.STAGING_FAILED, S.STAGING_HEALTHY, S.CANCELLED}),
    S.STAGING_HEALTHY: frozenset({S.AWAITING_APPROVAL}),
    S.AWAITING_APPROVAL: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.PRODUCTION_ROLLOUT}),
    S.PRODUCTION_ROLLOUT: frozenset({S.PRODUCTION_FAILED, S.PRODUCTION_HEALTHY, S.CANCELLED}),
}
"""Allowed transitions. States without an entry are terminal."""

FAILURE_STATES = frozenset(
    {S.CI_FAILED, S.STAGING_FAILED, S.REJECTED, S.PRODUCTION_FAILED, S.CANCELLED}
)

AUTO_APPROVER = "conveyor:auto"
"""decided_by recorded when the production environment does not require approval."""


class Route(BaseModel):
    """Stages a source event is routed through after CI."""

    model_config = ConfigDict(frozen=True)

    staging: bool = False
    production: bool = False


def validate_transition(from_state: PipelineState, to_state: PipelineState) -> None:
    """Raise InvalidTransitionError unless the table allows from_state -> to_state."""
    allowed = TRANSITIONS.get(from_state, frozenset())
    if to_state not in allowed:
        reason = "state is terminal" if not allowed else None
        raise InvalidTransitionError(from_state.value, to_state.value, reason)


class PipelineStateMachine:
    """Executes pipeline runs and owns their authoritative state.

    Runs are mutated only through this class, under its lock; snapshot()
    hands out copies to other threads.
    """

    def __init__(
        self,
        config: ConveyorConfig,
        ci: CIRunner,
        artifacts: ArtifactStoreClient,
        rollouts: RolloutController,
        approvals: ApprovalRegistry,
        store: ControlPlaneStore | None = None,
        *,
        metrics: MetricRecorder | None = None,
        notifier: WebhookNotifier | None = None,
    ) -> None:
        self._config = config
        self._ci = ci
        self._artifacts = artifacts
        self._rollouts = rollouts
        self._approvals = approvals
        self._store = store
        self._metrics = metrics
        self._notifier = notifier
        self._lock = threading.RLock()

    def route(self, event: SourceEvent) -> Route:
        """Decide which stages follow CI for an event."""
        if event.kind is SourceEventKind.PULL_REQUEST:
            return Route()
        if event.kind is SourceEventKind.TAG:
            return Route(staging=True, production=self._config.is_production_tag(event.tag))
        return Route(staging=event.branch in self._config.deploy_branches)

    def create_run(self, event: SourceEvent) -> PipelineRun:
        return PipelineRun(event=event)

    def snapshot(self, run: PipelineRun) -> PipelineRun:
        """Return a consistent deep copy of a run."""
        with self._lock:
            return run.model_copy(deep=True)

    def transition(self, run: PipelineRun, to_state: PipelineState) -> None:
        """Move a run to a new state.

        Raises:
            InvalidTransitionError: If the table does not allow it.
        """
        with self._lock:
            from_state = run.state
            validate_transition(from_state, to_state)
            run.transitions.append(StateTransition(from_state=from_state, to_state=to_state))
            run.state = to_state
        logger.info(
            "pipeline_transition",
            run_id=run.run_id,
            from_state=from_state.value,
            to_state=to_state.value,
        )

    def execute(
        self,
        run: PipelineRun,
        *,
        cancel: threading.Event | None = None,
    ) -> PipelineRun:
        """Run a pipeline to a terminal state on the calling thread.

        Stage failures are recorded on the run (``error``/``error_type``), not
        raised.

        Returns:
            The finished run.
        """
        token = cancel or threading.Event()
        route = self.route(run.event)
        log = logger.bind(
            run_id=run.run_id,
            kind=run.event.kind.value,
            ref=run.event.ref,
            revision=run.event.revision,
        )
        log.info("pipeline_started", staging=route.staging, production=route.production)
        self._notify("pipeline_started", run)

        with create_span(
            "conveyor.pipeline.run",
            attributes={
                "run_id": run.run_id,
                "event_kind": run.event.kind.value,
                "ref": run.event.ref,
            },
        ) as span:
            try:
                self._run_stages(run, route, token, log)
            except ConveyorError as e:
                self._record_error(run, e)
                log.warning(
                    "pipeline_failed",
                    state=run.state.value,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            except Exception as e:
                self._record_error(run, e)
                if run.state in TRANSITIONS:
                    log.exception("pipeline_crashed", state=run.state.value)
                    raise
                # A stage already moved the run to its failed state.
                log.error(
                    "pipeline_failed",
                    state=run.state.value,
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                with self._lock:
                    run.finished_at = datetime.now(timezone.utc)
                span.set_attribute("final_state", run.state.value)
                self._finish(run, log)

        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_stages(
        self,
        run: PipelineRun,
        route: Route,
        token: threading.Event,
        log: Any,
    ) -> None:
        if token.is_set():
            self.transition(run, S.CANCELLED)
            raise RolloutCancelledError("idle")

        release = self._run_ci(run, token)
        if not route.staging:
            log.info("pipeline_ci_only")
            return

        staging = self._config.staging_environment
        attempt = self._deploy(run, staging, release, token, S.STAGING_ROLLOUT)
        if not self._settle(run, attempt, S.STAGING_HEALTHY, S.STAGING_FAILED):
            return
        if not route.production:
            return

        production = self._config.production_environment
        self._await_approval(run, production, release, token)
        attempt = self._deploy(run, production, release, token, S.PRODUCTION_ROLLOUT)
        self._settle(run, attempt, S.PRODUCTION_HEALTHY, S.PRODUCTION_FAILED)

    def _run_ci(self, run: PipelineRun, token: threading.Event) -> Release:
        self.transition(run, S.CI_RUNNING)
        results: list[CIStepResult] = []
        try:
            with create_span("conveyor.pipeline.ci", attributes={"run_id": run.run_id}):
                self._ci.run(run.event, cancel=token, results=results)
                event = run.event
                release = Release.build(
                    revision=event.revision,
                    ref=event.ref,
                    tag=event.tag,
                    outputs={r.name: "passed" for r in results},
                )
                reference = self._artifacts.publish(release)
        except RolloutCancelledError:
            self._set(run, ci_results=results)
            self.transition(run, S.CANCELLED)
            raise
        except Exception:
            self._set(run, ci_results=results)
            self.transition(run, S.CI_FAILED)
            raise

        self._set(run, ci_results=results, release=release, stored_reference=reference)
        self.transition(run, S.CI_PASSED)
        return release

    def _deploy(
        self,
        run: PipelineRun,
        environment: str,
        release: Release,
        token: threading.Event,
        rollout_state: PipelineState,
    ) -> RolloutAttempt:
        self.transition(run, rollout_state)
        failed_state = (
            S.STAGING_FAILED if rollout_state is S.STAGING_ROLLOUT else S.PRODUCTION_FAILED
        )
        try:
            attempt = self._rollouts.rollout(environment, release, cancel=token)
        except RolloutCancelledError:
            self.transition(run, S.CANCELLED)
            raise
        except Exception:
            self.transition(run, failed_state)
            raise
        with self._lock:
            run.attempts.append(attempt.attempt_id)
        return attempt

    def _settle(
        self,
        run: PipelineRun,
        attempt: RolloutAttempt,
        healthy_state: PipelineState,
        failed_state: PipelineState,
    ) -> bool:
        if attempt.status is RolloutStatus.SUCCESS:
            self.transition(run, healthy_state)
            return True
        if attempt.error_type == RolloutCancelledError.__name__:
            self.transition(run, S.CANCELLED)
        else:
            self.transition(run, failed_state)
        with self._lock:
            run.error = attempt.error
            run.error_type = attempt.error_type
        return False

    def _await_approval(
        self,
        run: PipelineRun,
        environment: str,
        release: Release,
        token: threading.Event,
    ) -> None:
        self.transition(run, S.AWAITING_APPROVAL)
        release_id = release.release_id
        gate = self._approvals.request(environment, release_id)
        env_config = self._config.get_environment(environment)
        if not env_config.requires_approval and gate.state is ApprovalState.PENDING:
            self._approvals.approve(environment, release_id, operator=AUTO_APPROVER)
        else:
            self._notify(
                "approval_requested",
                run,
                environment=environment,
                release_id=release_id,
            )

        try:
            self._approvals.wait(
                environment,
                release_id,
                self._config.approval_timeout_seconds,
                cancel=token,
            )
            self._approvals.consume(environment, release_id)
        except RolloutCancelledError:
            self.transition(run, S.CANCELLED)
            raise
        except ApprovalRejectedError:
            self.transition(run, S.REJECTED)
            raise
        self.transition(run, S.APPROVED)

    # ------------------------------------------------------------------

    def _set(self, run: PipelineRun, **fields: Any) -> None:
        with self._lock:
            for name, value in fields.items():
                setattr(run, name, value)

    def _record_error(self, run: PipelineRun, error: Exception) -> None:
        with self._lock:
            if run.error is None:
                run.error = str(error)
                run.error_type = type(error).__name__

    def _finish(self, run: PipelineRun, log: Any) -> None:
        final = self.snapshot(run)
        log.info(
            "pipeline_completed",
            state=final.state.value,
            visited=[s.value for s in final.visited],
            error_type=final.error_type,
        )
        if self._store is not None:
            self._store.append_run(final)
        if self._metrics is not None:
            self._metrics.record_pipeline_run(final.state.value)
        self._notify("pipeline_completed", final, state=final.state.value, error=final.error)

    def _notify(self, event_type: str, run: PipelineRun, **extra: Any) -> None:
        if self._notifier is None:
            return
        data = {
            "run_id": run.run_id,
            "event_kind": run.event.kind.value,
            "ref": run.event.ref,
            "revision": run.event.revision,
            **extra,
        }
        self._notifier.notify_all(event_type, data)


class PipelineDispatcher:
    """Queue of source events feeding a pool of pipeline worker threads.

    A dispatcher thread takes events off the queue and starts each run on a
    bounded ThreadPoolExecutor. Runs targeting the same environment queue
    behind its rollout lock; runs in CI proceed in parallel.

    Example:
        >>> with PipelineDispatcher(machine, max_workers=4) as dispatcher:
        ...     run_id = dispatcher.submit(event)
        ...     run = dispatcher.wait(run_id, timeout=600)
    """

    def __init__(self, machine: PipelineStateMachine, max_workers: int = 4) -> None:
        self._machine = machine
        self._queue: queue.Queue[str | None] = queue.Queue()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="conveyor-run"
        )
        self._runs: dict[str, PipelineRun] = {}
        self._tokens: dict[str, threading.Event] = {}
        self._done: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._dispatch_loop, name="conveyor-dispatcher", daemon=True
        )
        self._started = False
        self._closed = False

    def __enter__(self) -> PipelineDispatcher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def start(self) -> None:
        with self._lock:
            if not self._started:
                self._thread.start()
                self._started = True

    def submit(self, event: SourceEvent) -> str:
        """Queue a source event and return the new run's id.

        Raises:
            RuntimeError: After shutdown().
        """
        run = self._machine.create_run(event)
        with self._lock:
            if self._closed:
                raise RuntimeError("Dispatcher is shut down")
            self._runs[run.run_id] = run
            self._tokens[run.run_id] = threading.Event()
            self._done[run.run_id] = threading.Event()
        self._queue.put(run.run_id)
        logger.info("pipeline_queued", run_id=run.run_id, kind=event.kind.value, ref=event.ref)
        return run.run_id

    def cancel(self, run_id: str) -> bool:
        """Signal cancellation to a queued or running pipeline.

        Returns:
            True if the run had not finished yet.
        """
        with self._lock:
            token = self._tokens.get(run_id)
            done = self._done.get(run_id)
        if token is None or done is None or done.is_set():
            return False
        token.set()
        logger.info("pipeline_cancel_requested", run_id=run_id)
        return True

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            run = self._runs.get(run_id)
        return self._machine.snapshot(run) if run is not None else None

    def runs(self) -> list[PipelineRun]:
        with self._lock:
            runs = list(self._runs.values())
        return [self._machine.snapshot(r) for r in runs]

    def wait(self, run_id: str, timeout: float | None = None) -> PipelineRun:
        """Block until a run finishes.

        Raises:
            KeyError: Unknown run id.
            TimeoutError: If the run is still going after timeout.
        """
        with self._lock:
            done = self._done[run_id]
        if not done.wait(timeout):
            raise TimeoutError(f"Pipeline run {run_id} still running after {timeout}s")
        with self._lock:
            run = self._runs[run_id]
        return self._machine.snapshot(run)

    def shutdown(self, wait: bool = True, *, cancel_running: bool = False) -> None:
        """Stop accepting events and stop the dispatcher thread.

        Args:
            wait: Block until queued and running pipelines finish.
            cancel_running: Cancel every unfinished run first.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            tokens = list(self._tokens.values())
        if cancel_running:
            for token in tokens:
                token.set()
        self._queue.put(None)
        if self._started:
            self._thread.join()
        self._executor.shutdown(wait=wait)
        logger.info("dispatcher_stopped")

    def _dispatch_loop(self) -> None:
        while True:
            run_id = self._queue.get()
            if run_id is None:
                return
            self._executor.submit(self._execute, run_id)

    def _execute(self, run_id: str) -> None:
        with self._lock:
            run = self._runs[run_id]
            token = self._tokens[run_id]
            done = self._done[run_id]
        try:
            self._machine.execute(run, cancel=token)
        except Exception:
            logger.exception("pipeline_worker_error", run_id=run_id)
        finally:
            done.set()


__all__: list[str] = [
    "AUTO_APPROVER",
    "FAILURE_STATES",
    "PipelineDispatcher",
    "PipelineStateMachine",
    "Route",
    "TRANSITIONS",
    "validate_transition",
]
