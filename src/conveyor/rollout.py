"""Rollout Controller: rolling replacement of compute units for one environment.

Flow of rollout(environment, release):

1. Queue for the environment's rollout lock (backing off between waits)
2. Refuse frozen environments
3. Create the RolloutAttempt (the only in_progress attempt for the environment)
4. Run migrations; on failure stop here without starting any unit
5. For each batch: start new units, wait for the Health Gate, stop as many
   old units
6. On success point the environment at the release; on failure drain the
   batch's new units and leave old units running
7. Append the finalized attempt to the ledger and release the lock

A failure after some batches completed leaves the environment mixed and
``degraded``. With ``rollback_on_failure`` the completed batches are
reverted to the previous release instead and the attempt ends
``rolled_back``.
"""

from __future__ import annotations

import math
import threading
import time
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

from conveyor.errors import (
    ConveyorError,
    EnvironmentFrozenError,
    HealthCheckTimeoutError,
    LockContentionError,
    MigrationFailedError,
    RolloutCancelledError,
)
from conveyor.health import GateOutcome
from conveyor.resilience import ResilientCaller, RetryPolicy
from conveyor.schemas.models import HealthStatus, RolloutAttempt, RolloutStatus, TaskAction
from conveyor.telemetry.tracing import create_span

if TYPE_CHECKING:
    from conveyor.arena import EnvironmentArena
    from conveyor.health import HealthGate
    from conveyor.migrations import MigrationRunner
    from conveyor.providers.base import ComputeScheduler
    from conveyor.schemas.config import ConveyorConfig, EnvironmentConfig
    from conveyor.schemas.models import Release
    from conveyor.store import ControlPlaneStore
    from conveyor.telemetry.metrics import MetricRecorder
    from conveyor.webhooks import WebhookNotifier

logger = structlog.get_logger(__name__)

_MAX_BACKOFF_EXPONENT = 16


class _BatchState:
    """Units touched by the attempt so far."""

    def __init__(self, old_task_ids: list[str]) -> None:
        self.remaining_old = list(old_task_ids)
        self.stopped_old: list[str] = []
        self.promoted_new: list[str] = []
        self.in_flight: list[str] = []


class RolloutController:
    """Drives rolling replacements, one attempt per environment at a time.

    Example:
        >>> controller = RolloutController(config, arena, scheduler, gate, migrations)
        >>> attempt = controller.rollout("staging", release)
        >>> attempt.status
        <RolloutStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        config: ConveyorConfig,
        arena: EnvironmentArena,
        scheduler: ComputeScheduler,
        health_gate: HealthGate,
        migrations: MigrationRunner,
        store: ControlPlaneStore | None = None,
        *,
        metrics: MetricRecorder | None = None,
        notifier: WebhookNotifier | None = None,
        scheduler_caller: ResilientCaller | None = None,
    ) -> None:
        self._config = config
        self._arena = arena
        self._scheduler = scheduler
        self._gate = health_gate
        self._migrations = migrations
        self._store = store
        self._metrics = metrics
        self._notifier = notifier
        self._scheduler_caller = scheduler_caller or ResilientCaller(
            "scheduler", config.provider_retry, config.circuit_breaker
        )

    def rollout(
        self,
        environment: str,
        release: Release,
        *,
        cancel: threading.Event | None = None,
    ) -> RolloutAttempt:
        """Roll a release out to an environment.

        Failures of the rollout itself are recorded on the returned attempt
        (status ``failed`` or ``rolled_back`` with ``error``/``error_type``).

        Args:
            environment: Target environment name.
            release: Release to run.
            cancel: Cancellation token; setting it takes the health-timeout
                abort path.

        Returns:
            The finalized RolloutAttempt.

        Raises:
            EnvironmentNotFoundError: Unknown environment.
            LockContentionError: Lock still held after ``lock_max_wait_seconds``
                (only when that cap is configured).
            EnvironmentFrozenError: Environment is frozen.
            RolloutCancelledError: Cancelled while queued for the lock.
        """
        env_config = self._config.get_environment(environment)
        return self._run(env_config, release.release_id, release, cancel)

    def rollback(
        self,
        environment: str,
        *,
        cancel: threading.Event | None = None,
    ) -> RolloutAttempt:
        """Re-roll the environment's previous version as a new attempt.

        Migrations are not run; schema changes are forward-only. A completed
        rollback ends with status ``rolled_back``.

        Raises:
            ValueError: If the environment has no previous version.
        """
        env_config = self._config.get_environment(environment)
        record = self._arena.get(environment)
        if record.previous_version is None:
            raise ValueError(f"Environment {environment} has no previous version to roll back to")
        return self._run(env_config, record.previous_version, None, cancel)

    # ------------------------------------------------------------------

    def _run(
        self,
        env_config: EnvironmentConfig,
        release_id: str,
        release: Release | None,
        cancel: threading.Event | None,
    ) -> RolloutAttempt:
        # release is None for operator rollbacks, which skip migrations.
        name = env_config.name
        rollback = release is None
        token = cancel or threading.Event()
        attempt_id = uuid4().hex
        log = logger.bind(environment=name, release_id=release_id, attempt_id=attempt_id)

        self._acquire(name, attempt_id, token, log)
        try:
            try:
                if token.is_set():
                    raise RolloutCancelledError("lock_wait", name)
                self._arena.check_not_frozen(name)
            except (EnvironmentFrozenError, RolloutCancelledError) as e:
                log.warning("rollout_refused", reason=str(e))
                raise

            attempt = RolloutAttempt(
                attempt_id=attempt_id,
                environment=name,
                release_id=release_id,
                previous_version=self._arena.get(name).current_version,
            )
            try:
                with create_span(
                    "conveyor.rollout",
                    attributes={
                        "environment": name,
                        "release_id": release_id,
                        "attempt_id": attempt_id,
                        "rollback": rollback,
                    },
                ) as span:
                    log.info(
                        "rollout_started",
                        desired_count=env_config.desired_count,
                        batch_size=env_config.rollout.batch_size,
                        rollback=rollback,
                    )
                    self._execute(attempt, env_config, release, token, log)
                    span.set_attribute("status", attempt.status.value)
                    span.set_attribute("batches_completed", attempt.batches_completed)
            except Exception as e:
                if not attempt.status.is_terminal:
                    attempt.finish(RolloutStatus.FAILED, e)
                raise
            finally:
                if self._store is not None:
                    self._store.append_attempt(attempt)
        finally:
            self._arena.release(name, attempt_id)

        self._report(attempt, log)
        return attempt

    def _acquire(
        self,
        name: str,
        attempt_id: str,
        token: threading.Event,
        log: Any,
    ) -> None:
        """Queue for the rollout lock until it is free or the token is set.

        Each blocking wait lasts ``lock_wait_seconds``; between waits the
        caller backs off on the ``lock_retry`` delay schedule. Waiting is
        unbounded unless ``lock_max_wait_seconds`` is configured.
        """
        backoff = RetryPolicy(self._config.lock_retry)
        max_wait = self._config.lock_max_wait_seconds
        started = time.monotonic()
        contended = 0
        while True:
            if token.is_set():
                raise RolloutCancelledError("lock_wait", name)
            wait = self._config.lock_wait_seconds
            if max_wait is not None:
                wait = min(wait, max(max_wait - (time.monotonic() - started), 0.0))
            try:
                self._arena.acquire(name, attempt_id, wait)
            except LockContentionError as e:
                contended += 1
                waited = time.monotonic() - started
                if max_wait is not None and waited >= max_wait:
                    log.warning("rollout_lock_unavailable", waited_seconds=round(waited, 3))
                    raise
                log.info(
                    "rollout_lock_queued",
                    holder=e.holder,
                    waits=contended,
                    waited_seconds=round(waited, 3),
                )
                token.wait(backoff.calculate_delay(min(contended - 1, _MAX_BACKOFF_EXPONENT)))
                continue
            if contended:
                log.info(
                    "rollout_lock_acquired_after_queue",
                    waited_seconds=round(time.monotonic() - started, 3),
                )
            return

    def _execute(
        self,
        attempt: RolloutAttempt,
        env_config: EnvironmentConfig,
        release: Release | None,
        token: threading.Event,
        log: Any,
    ) -> None:
        name = env_config.name
        rollback = release is None
        caller = self._scheduler_caller.with_sleep(token.wait)
        state = _BatchState([])

        try:
            if release is not None:
                result = self._migrations.run(env_config, release, attempt.attempt_id)
                if not result.success:
                    raise MigrationFailedError(name, attempt.release_id, result.reason or "unknown")

            old_tasks = caller.call(self._scheduler.list_tasks, name)
            state = _BatchState([t.task_id for t in old_tasks])
            self._replace(attempt, env_config, attempt.release_id, state, caller, token, log)
        except Exception as e:
            if not isinstance(e, ConveyorError):
                log.error(
                    "rollout_unexpected_error",
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
            self._abort(attempt, env_config, state, caller, e, log)
            return

        record = self._arena.get(name)
        previous = record.current_version
        if previous == attempt.release_id:
            previous = record.previous_version
        self._arena.update(
            name,
            attempt.attempt_id,
            current_version=attempt.release_id,
            desired_version=attempt.release_id,
            previous_version=previous,
            health=HealthStatus.HEALTHY,
        )
        attempt.finish(RolloutStatus.ROLLED_BACK if rollback else RolloutStatus.SUCCESS)

    def _replace(
        self,
        attempt: RolloutAttempt,
        env_config: EnvironmentConfig,
        release_id: str,
        state: _BatchState,
        caller: ResilientCaller,
        token: threading.Event,
        log: Any,
    ) -> None:
        name = env_config.name
        total = env_config.desired_count
        batch_size = env_config.rollout.batch_size
        batch_count = math.ceil(total / batch_size)

        for batch in range(1, batch_count + 1):
            if token.is_set():
                raise RolloutCancelledError("rollout", name)

            count = min(batch_size, total - len(state.promoted_new))
            state.in_flight = caller.call(self._scheduler.start, name, release_id, count)
            attempt.record(batch, TaskAction.STARTED, state.in_flight)
            log.info("batch_started", batch=batch, batches=batch_count, task_ids=state.in_flight)

            self._gate_batch(env_config, batch, state.in_flight, token)
            attempt.record(batch, TaskAction.HEALTHY, state.in_flight)
            state.promoted_new.extend(state.in_flight)
            state.in_flight = []

            to_stop = state.remaining_old[:count]
            if to_stop:
                caller.call(self._scheduler.stop, name, to_stop)
                del state.remaining_old[:count]
                state.stopped_old.extend(to_stop)
                attempt.record(batch, TaskAction.REPLACED, to_stop)
            attempt.batches_completed = batch
            log.info("batch_completed", batch=batch, batches=batch_count, replaced=to_stop)

        if state.remaining_old:
            # Environment was running more units than desired_count.
            leftover = list(state.remaining_old)
            caller.call(self._scheduler.stop, name, leftover)
            state.stopped_old.extend(leftover)
            state.remaining_old = []
            attempt.record(batch_count, TaskAction.REPLACED, leftover)

    def _gate_batch(
        self,
        env_config: EnvironmentConfig,
        batch: int,
        task_ids: list[str],
        token: threading.Event,
    ) -> None:
        timeout = env_config.rollout.health_timeout_seconds
        outcome = self._gate.wait_healthy(
            env_config.name,
            timeout,
            targets=task_ids,
            cancel=token,
            poll_interval=env_config.rollout.poll_interval_seconds,
        )
        if outcome is GateOutcome.CANCELLED:
            raise RolloutCancelledError("health_gate", env_config.name)
        if outcome is GateOutcome.TIMED_OUT:
            raise HealthCheckTimeoutError(env_config.name, batch, timeout)

    def _abort(
        self,
        attempt: RolloutAttempt,
        env_config: EnvironmentConfig,
        state: _BatchState,
        caller: ResilientCaller,
        error: Exception,
        log: Any,
    ) -> None:
        name = env_config.name
        batch = attempt.batches_completed + 1
        log.warning(
            "rollout_aborting",
            error_type=type(error).__name__,
            error=str(error),
            batches_completed=attempt.batches_completed,
        )

        stray: list[str] = []
        if state.in_flight:
            if not self._drain(attempt, name, batch, state.in_flight, caller, log):
                stray.extend(state.in_flight)
            state.in_flight = []

        if attempt.batches_completed == 0 and not state.stopped_old:
            # No old unit was stopped: units that passed the gate are surplus.
            if state.promoted_new:
                if not self._drain(attempt, name, batch, state.promoted_new, caller, log):
                    stray.extend(state.promoted_new)
                state.promoted_new = []
            if stray:
                self._arena.update(name, attempt.attempt_id, health=HealthStatus.DEGRADED)
                log.error("rollout_left_stray_units", task_ids=stray)
            attempt.finish(RolloutStatus.FAILED, error)
            return

        if env_config.rollout.rollback_on_failure and attempt.previous_version:
            if self._revert(attempt, env_config, state, log):
                self._arena.update(name, attempt.attempt_id, health=HealthStatus.HEALTHY)
                attempt.finish(RolloutStatus.ROLLED_BACK, error)
                return

        self._arena.update(name, attempt.attempt_id, health=HealthStatus.DEGRADED)
        log.error(
            "rollout_left_mixed",
            promoted=state.promoted_new,
            remaining_old=state.remaining_old,
            stray=stray,
        )
        attempt.finish(RolloutStatus.FAILED, error)

    def _revert(
        self,
        attempt: RolloutAttempt,
        env_config: EnvironmentConfig,
        state: _BatchState,
        log: Any,
    ) -> bool:
        """Replace promoted units with previous-release units. Returns True on success."""
        name = env_config.name
        previous = attempt.previous_version or ""
        batch = attempt.batches_completed + 1
        # Backoff and health waits here ignore the cancellation token; a
        # cancelled rollout still has to restore capacity.
        caller = self._scheduler_caller
        revert_token = threading.Event()
        restored: list[str] = []
        try:
            if state.stopped_old:
                restored = caller.call(self._scheduler.start, name, previous, len(state.stopped_old))
                attempt.record(batch, TaskAction.REVERTED, restored, release_id=previous)
                self._gate_batch(env_config, batch, restored, revert_token)
            caller.call(self._scheduler.stop, name, state.promoted_new)
            attempt.record(batch, TaskAction.DRAINED, state.promoted_new)
        except Exception as e:
            log.error("rollback_failed", error_type=type(e).__name__, error=str(e))
            if restored:
                self._drain(attempt, name, batch, restored, caller, log, release_id=previous)
            return False

        log.info("rollback_completed", restored=restored, drained=state.promoted_new)
        return True

    def _drain(
        self,
        attempt: RolloutAttempt,
        name: str,
        batch: int,
        task_ids: list[str],
        caller: ResilientCaller,
        log: Any,
        *,
        release_id: str | None = None,
    ) -> bool:
        """Stop task_ids. Returns False if they could not be stopped."""
        try:
            caller.call(self._scheduler.stop, name, task_ids)
        except Exception as e:
            # The attempt already carries the primary error; units that could
            # not be stopped are left for the operator.
            log.error("drain_failed", task_ids=task_ids, error=str(e))
            return False
        attempt.record(batch, TaskAction.DRAINED, task_ids, release_id=release_id)
        log.info("batch_drained", batch=batch, task_ids=task_ids)
        return True

    def _report(self, attempt: RolloutAttempt, log: Any) -> None:
        log.info(
            "rollout_finished",
            status=attempt.status.value,
            batches_completed=attempt.batches_completed,
            error_type=attempt.error_type,
        )
        if self._metrics is not None:
            self._metrics.record_rollout(attempt.environment, attempt.status.value)
        if self._notifier is not None:
            event = (
                "rollout_succeeded"
                if attempt.status is RolloutStatus.SUCCESS
                else "rollout_failed"
            )
            self._notifier.notify_all(
                event,
                {
                    "environment": attempt.environment,
                    "release_id": attempt.release_id,
                    "attempt_id": attempt.attempt_id,
                    "status": attempt.status.value,
                    "error": attempt.error,
                },
            )


__all__: list[str] = ["RolloutController"]
