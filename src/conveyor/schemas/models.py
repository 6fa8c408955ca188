"""Control-plane record schemas.

Pydantic v2 models for the records the orchestrator owns: environments,
releases, rollout attempts, approval gates, source events and pipeline runs.

Key Components:
    HealthStatus / RolloutStatus / ApprovalState / PipelineState: Enums
    Release: Immutable build artifact identity
    Environment: Current/desired version and health of one target
    RolloutAttempt: Audit record of one rolling replacement
    ApprovalGate: Human decision on one (environment, release) pair
    SourceEvent: Trigger delivered by source control
    PipelineRun: One pipeline execution with its state history

Environment and Release are frozen; an Environment update is a
``model_copy(update=...)`` stored back into the arena. RolloutAttempt and
PipelineRun are mutated only by the component that owns them and are copied
when handed to a store.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

SHA256_DIGEST_PATTERN = r"^sha256:[a-f0-9]{64}$"
"""Regex pattern for valid SHA256 digest format (sha256:<64 hex chars>)."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


# =============================================================================
# Enums
# =============================================================================


class HealthStatus(str, Enum):
    """Observed health of an environment.

    Examples:
        >>> HealthStatus.DEGRADED.value
        'degraded'
    """

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class RolloutStatus(str, Enum):
    """Outcome of a RolloutAttempt."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self is not RolloutStatus.IN_PROGRESS


class ApprovalState(str, Enum):
    """Decision state of an approval gate."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SourceEventKind(str, Enum):
    """Source-control event types that trigger pipeline runs."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    TAG = "tag"


class PipelineState(str, Enum):
    """States of the promotion pipeline state machine."""

    IDLE = "idle"
    CI_RUNNING = "ci_running"
    CI_FAILED = "ci_failed"
    CI_PASSED = "ci_passed"
    STAGING_ROLLOUT = "staging_rollout"
    STAGING_FAILED = "staging_failed"
    STAGING_HEALTHY = "staging_healthy"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PRODUCTION_ROLLOUT = "production_rollout"
    PRODUCTION_FAILED = "production_failed"
    PRODUCTION_HEALTHY = "production_healthy"
    CANCELLED = "cancelled"


class TaskAction(str, Enum):
    """Kinds of compute-unit replacement events recorded on an attempt."""

    STARTED = "started"
    HEALTHY = "healthy"
    REPLACED = "replaced"
    DRAINED = "drained"
    REVERTED = "reverted"


# =============================================================================
# Records
# =============================================================================


class ComputeTask(BaseModel):
    """A compute unit as reported by the scheduler."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_id: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    release_id: str = Field(..., min_length=1)


class Release(BaseModel):
    """Immutable build artifact identity.

    Created once at CI completion and never mutated. The same Release may be
    promoted to several environments.

    Attributes:
        release_id: Tag (for tag events) or ``rev-<sha12>``.
        digest: Content hash of the release manifest.
        revision: Source revision the release was built from.
        ref: Git ref (branch or tag) of the triggering event.
        created_at: Build completion time (UTC).

    Examples:
        >>> release = Release.build(revision="a" * 40, ref="refs/tags/v1.0.0", tag="v1.0.0")
        >>> release.release_id
        'v1.0.0'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    release_id: str = Field(..., min_length=1, max_length=128)
    digest: str = Field(..., pattern=SHA256_DIGEST_PATTERN)
    revision: str = Field(..., min_length=1)
    ref: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def build(
        cls,
        revision: str,
        ref: str = "",
        tag: str | None = None,
        outputs: dict[str, str] | None = None,
    ) -> Release:
        """Create a Release whose digest covers the revision, ref and build outputs.

        Args:
            revision: Source revision.
            ref: Git ref.
            tag: Tag name; becomes the release id when present.
            outputs: Build output fingerprints folded into the digest.

        Returns:
            New immutable Release.
        """
        content = json.dumps(
            {"revision": revision, "ref": ref, "tag": tag, "outputs": outputs or {}},
            sort_keys=True,
        ).encode()
        digest = "sha256:" + hashlib.sha256(content).hexdigest()
        release_id = tag or f"rev-{revision[:12]}"
        return cls(release_id=release_id, digest=digest, revision=revision, ref=ref)


class EnvironmentFreeze(BaseModel):
    """Operator freeze on an environment.

    While frozen, no rollouts start in the environment. Typically used during
    incidents or maintenance windows.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    frozen: bool = Field(..., description="Whether the environment is frozen")
    reason: str | None = Field(default=None)
    frozen_by: str | None = Field(default=None)
    frozen_at: datetime | None = Field(default=None)


class Environment(BaseModel):
    """Deployment target state.

    One record per target, mutated only by the Rollout Controller that holds
    the environment's rollout lock (and by operator freezes). Records are
    never deleted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    current_version: str | None = Field(default=None)
    desired_version: str | None = Field(default=None)
    previous_version: str | None = Field(default=None)
    health: HealthStatus = Field(default=HealthStatus.UNKNOWN)
    freeze: EnvironmentFreeze = Field(
        default_factory=lambda: EnvironmentFreeze(frozen=False)
    )
    updated_at: datetime = Field(default_factory=_utcnow)


class TaskReplacementEvent(BaseModel):
    """One step of a rolling replacement."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    batch: int = Field(..., ge=0)
    action: TaskAction
    task_ids: list[str] = Field(default_factory=list)
    release_id: str
    at: datetime = Field(default_factory=_utcnow)


class RolloutAttempt(BaseModel):
    """Audit record of one Rollout Controller execution.

    Created at rollout start with status ``in_progress``, finalized once at a
    terminal outcome, then retained append-only.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    attempt_id: str = Field(default_factory=_new_id)
    environment: str
    release_id: str
    previous_version: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    status: RolloutStatus = RolloutStatus.IN_PROGRESS
    batches_completed: int = Field(default=0, ge=0)
    events: list[TaskReplacementEvent] = Field(default_factory=list)
    error: str | None = None
    error_type: str | None = None

    def record(
        self,
        batch: int,
        action: TaskAction,
        task_ids: list[str],
        release_id: str | None = None,
    ) -> None:
        """Append a task replacement event."""
        self.events.append(
            TaskReplacementEvent(
                batch=batch,
                action=action,
                task_ids=list(task_ids),
                release_id=release_id or self.release_id,
            )
        )

    def finish(self, status: RolloutStatus, error: BaseException | None = None) -> None:
        """Finalize the attempt.

        Raises:
            ValueError: If the attempt was already finalized or status is not terminal.
        """
        if self.status.is_terminal:
            raise ValueError(f"Attempt {self.attempt_id} already finalized as {self.status.value}")
        if not status.is_terminal:
            raise ValueError("Cannot finish an attempt with a non-terminal status")
        if error is not None:
            self.error = str(error)
            self.error_type = type(error).__name__
        self.finished_at = _utcnow()
        self.status = status


class ApprovalGate(BaseModel):
    """Approval decision for one (environment, release) pair."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    environment: str
    release_id: str
    state: ApprovalState = ApprovalState.PENDING
    requested_at: datetime = Field(default_factory=_utcnow)
    decided_by: str | None = None
    decided_at: datetime | None = None
    reason: str | None = None
    consumed: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.environment, self.release_id)


class SourceEvent(BaseModel):
    """Trigger delivered by the source-control event source.

    Examples:
        >>> event = SourceEvent(kind="tag", revision="a" * 40, ref="refs/tags/v1.0.0")
        >>> event.tag
        'v1.0.0'
        >>> event.branch is None
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: SourceEventKind
    revision: str = Field(..., pattern=r"^[0-9a-f]{7,40}$")
    ref: str = Field(..., min_length=1)
    received_at: datetime = Field(default_factory=_utcnow)

    @field_validator("ref")
    @classmethod
    def validate_ref(cls, v: str) -> str:
        """Reject refs with whitespace or shell metacharacters."""
        if any(c.isspace() for c in v) or any(c in v for c in ";&|$`\"'<>"):
            raise ValueError(f"Invalid ref: {v!r}")
        return v

    @property
    def tag(self) -> str | None:
        """Tag name for tag events."""
        if self.kind is not SourceEventKind.TAG:
            return None
        return self.ref.removeprefix("refs/tags/")

    @property
    def branch(self) -> str | None:
        """Branch name for push and pull request events."""
        if self.kind is SourceEventKind.TAG:
            return None
        return self.ref.removeprefix("refs/heads/")

    @classmethod
    def from_github(cls, event_name: str, payload: dict[str, Any]) -> SourceEvent:
        """Parse a GitHub webhook delivery.

        Args:
            event_name: Value of the ``X-GitHub-Event`` header.
            payload: Decoded JSON body.

        Returns:
            SourceEvent for push, tag push, or pull_request deliveries.

        Raises:
            ValueError: For unsupported events or payloads missing fields.
        """
        if event_name == "push":
            ref = payload.get("ref", "")
            revision = payload.get("after", "")
            kind = SourceEventKind.TAG if ref.startswith("refs/tags/") else SourceEventKind.PUSH
            return cls(kind=kind, revision=revision, ref=ref)
        if event_name == "pull_request":
            pull = payload.get("pull_request") or {}
            head = pull.get("head") or {}
            return cls(
                kind=SourceEventKind.PULL_REQUEST,
                revision=head.get("sha", ""),
                ref=head.get("ref", ""),
            )
        raise ValueError(f"Unsupported event: {event_name}")


class StateTransition(BaseModel):
    """One recorded state change of a pipeline run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    from_state: PipelineState
    to_state: PipelineState
    at: datetime = Field(default_factory=_utcnow)


class CIStepResult(BaseModel):
    """Result of one CI step."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    passed: bool
    duration_ms: int = Field(..., ge=0)
    exit_code: int | None = None
    error: str | None = None


class PipelineRun(BaseModel):
    """One execution of the promotion pipeline for a source event."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    run_id: str = Field(default_factory=_new_id)
    event: SourceEvent
    state: PipelineState = PipelineState.IDLE
    release: Release | None = None
    stored_reference: str | None = None
    transitions: list[StateTransition] = Field(default_factory=list)
    ci_results: list[CIStepResult] = Field(default_factory=list)
    attempts: list[str] = Field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def visited(self) -> list[PipelineState]:
        """States entered by this run, in order."""
        return [t.to_state for t in self.transitions]


__all__: list[str] = [
    "ApprovalGate",
    "ApprovalState",
    "CIStepResult",
    "ComputeTask",
    "Environment",
    "EnvironmentFreeze",
    "HealthStatus",
    "PipelineRun",
    "PipelineState",
    "Release",
    "RolloutAttempt",
    "RolloutStatus",
    "SHA256_DIGEST_PATTERN",
    "SourceEvent",
    "SourceEventKind",
    "StateTransition",
    "TaskAction",
    "TaskReplacementEvent",
]
