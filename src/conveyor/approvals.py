"""Human approval channel for production promotions.

An ApprovalGate is keyed by its exact (environment, release_id) pair. The
pipeline requests a gate, blocks in wait() until an operator decides (or the
timeout or cancellation fires), and consumes an approved gate exactly once
before starting the production rollout.

Example:
    >>> registry = ApprovalRegistry()
    >>> gate = registry.request("production", "v1.0.0")
    >>> gate = registry.approve("production", "v1.0.0", operator="alice")
    >>> registry.wait("production", "v1.0.0", timeout=1.0).state
    <ApprovalState.APPROVED: 'approved'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from conveyor.errors import ApprovalRejectedError, ApprovalTimeoutError, RolloutCancelledError
from conveyor.schemas.models import ApprovalGate, ApprovalState

logger = structlog.get_logger(__name__)


class ApprovalRegistry:
    """Thread-safe store of approval gates with blocking waits.

    A single Condition guards all gates; decisions wake every waiter and
    each waiter re-checks its own pair.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._gates: dict[tuple[str, str], ApprovalGate] = {}
        self._cond = threading.Condition()
        self._clock = clock

    def request(self, environment: str, release_id: str) -> ApprovalGate:
        """Open a pending gate for the pair, or return the existing one.

        A decision recorded before the pipeline asked is kept, so operators
        can pre-approve a tag.
        """
        key = (environment, release_id)
        with self._cond:
            gate = self._gates.get(key)
            if gate is None or gate.consumed:
                gate = ApprovalGate(environment=environment, release_id=release_id)
                self._gates[key] = gate
                logger.info("approval_requested", environment=environment, release_id=release_id)
            return gate.model_copy()

    def get(self, environment: str, release_id: str) -> ApprovalGate | None:
        with self._cond:
            gate = self._gates.get((environment, release_id))
            return gate.model_copy() if gate is not None else None

    def pending(self) -> list[ApprovalGate]:
        """Gates awaiting a decision."""
        with self._cond:
            return [
                g.model_copy() for g in self._gates.values() if g.state is ApprovalState.PENDING
            ]

    def approve(self, environment: str, release_id: str, operator: str) -> ApprovalGate:
        """Record an approval for the exact pair."""
        return self._decide(environment, release_id, ApprovalState.APPROVED, operator, None)

    def reject(
        self,
        environment: str,
        release_id: str,
        operator: str,
        reason: str | None = None,
    ) -> ApprovalGate:
        """Record a rejection for the exact pair."""
        return self._decide(environment, release_id, ApprovalState.REJECTED, operator, reason)

    def wait(
        self,
        environment: str,
        release_id: str,
        timeout: float | None,
        *,
        cancel: threading.Event | None = None,
        poll_interval: float = 0.5,
    ) -> ApprovalGate:
        """Block until the gate for the pair is decided.

        Args:
            environment: Gated environment.
            release_id: Release awaiting promotion.
            timeout: Seconds to wait; None waits without a timeout and is only
                passed when explicitly configured.
            cancel: Cancellation token.
            poll_interval: Upper bound on each condition wait, so that a set
                cancellation token is noticed.

        Returns:
            The approved gate.

        Raises:
            ApprovalRejectedError: If the gate was rejected.
            ApprovalTimeoutError: If no decision arrived in time.
            RolloutCancelledError: If the token was set.
        """
        key = (environment, release_id)
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                gate = self._gates.get(key)
                if gate is None:
                    raise KeyError(f"No approval requested for {environment}/{release_id}")
                if gate.state is ApprovalState.APPROVED:
                    return gate.model_copy()
                if gate.state is ApprovalState.REJECTED:
                    raise ApprovalRejectedError(
                        environment, release_id, gate.decided_by, gate.reason
                    )
                if cancel is not None and cancel.is_set():
                    raise RolloutCancelledError("awaiting_approval", environment)

                wait_for = poll_interval
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        self._expire(gate)
                        raise ApprovalTimeoutError(environment, release_id, timeout or 0.0)
                    wait_for = min(wait_for, remaining)
                self._cond.wait(wait_for)

    def consume(self, environment: str, release_id: str) -> ApprovalGate:
        """Mark an approved gate as used.

        Raises:
            ApprovalRejectedError: If the pair has no approved, unconsumed gate.
        """
        key = (environment, release_id)
        with self._cond:
            gate = self._gates.get(key)
            if gate is None or gate.state is not ApprovalState.APPROVED or gate.consumed:
                raise ApprovalRejectedError(
                    environment,
                    release_id,
                    reason="no unconsumed approval for this release",
                )
            gate.consumed = True
            logger.info(
                "approval_consumed",
                environment=environment,
                release_id=release_id,
                decided_by=gate.decided_by,
            )
            return gate.model_copy()

    def _decide(
        self,
        environment: str,
        release_id: str,
        state: ApprovalState,
        operator: str,
        reason: str | None,
    ) -> ApprovalGate:
        key = (environment, release_id)
        with self._cond:
            gate = self._gates.get(key)
            if gate is None or gate.consumed:
                gate = ApprovalGate(environment=environment, release_id=release_id)
                self._gates[key] = gate
            if gate.state is not ApprovalState.PENDING:
                raise ValueError(
                    f"Approval for {environment}/{release_id} already {gate.state.value}"
                )
            gate.state = state
            gate.decided_by = operator
            gate.decided_at = datetime.now(timezone.utc)
            gate.reason = reason
            self._cond.notify_all()
            logger.info(
                "approval_decided",
                environment=environment,
                release_id=release_id,
                state=state.value,
                decided_by=operator,
            )
            return gate.model_copy()

    def _expire(self, gate: ApprovalGate) -> None:
        # Called with the condition held.
        gate.state = ApprovalState.REJECTED
        gate.decided_by = "timeout"
        gate.decided_at = datetime.now(timezone.utc)
        gate.reason = "approval timed out"
        logger.warning(
            "approval_timed_out",
            environment=gate.environment,
            release_id=gate.release_id,
        )


__all__: list[str] = ["ApprovalRegistry"]
