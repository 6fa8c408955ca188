"""Exception hierarchy for conveyor.

All exceptions inherit from ConveyorError, the base exception class.

Exception Hierarchy:
    ConveyorError (base)
    ├── ConfigurationError         # Manifest could not be loaded or validated
    ├── BuildFailedError           # A CI step failed or timed out
    ├── MigrationFailedError       # Schema migration failed before rollout
    ├── HealthCheckTimeoutError    # New compute units never became healthy
    ├── RolloutCancelledError      # Operator cancelled an in-flight rollout
    ├── ApprovalRejectedError      # Production approval was rejected
    │   └── ApprovalTimeoutError   # No approval decision arrived in time
    ├── LockContentionError        # Another rollout holds the environment lock
    ├── EnvironmentFrozenError     # Environment frozen by an operator
    ├── EnvironmentNotFoundError   # Unknown environment name
    ├── InvalidTransitionError     # Illegal pipeline state transition
    └── ProviderUnavailableError   # Transient control-plane failure
        └── CircuitBreakerOpenError

Retry semantics:
    LockContentionError and ProviderUnavailableError are the only classes
    retried automatically (see conveyor.resilience). A queued rollout retries
    LockContentionError until the lock frees. Everything else needs a
    new explicit trigger (re-push, re-tag, re-approval).

Exit Codes:
    0  - Success
    1  - General error (ConveyorError)
    2  - Configuration error
    3  - Environment not found
    5  - Provider unavailable / circuit breaker open
    8  - Build failed
    9  - Invalid transition
    10 - Migration failed
    11 - Health check timeout
    12 - Approval rejected / timed out
    13 - Lock contention / environment frozen
    14 - Rollout cancelled
"""

from __future__ import annotations


class ConveyorError(Exception):
    """Base exception for all conveyor errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).

    Example:
        >>> try:
        ...     controller.rollout("staging", release)
        ... except ConveyorError as e:
        ...     sys.exit(e.exit_code)
    """

    exit_code: int = 1


class ConfigurationError(ConveyorError):
    """Raised when a conveyor manifest cannot be loaded or validated.

    Attributes:
        path: Path of the manifest, if loaded from disk.
        reason: What was wrong with it.
    """

    exit_code: int = 2

    def __init__(self, reason: str, path: str | None = None) -> None:
        self.reason = reason
        self.path = path
        if path:
            super().__init__(f"Invalid configuration in {path}: {reason}")
        else:
            super().__init__(f"Invalid configuration: {reason}")


class EnvironmentNotFoundError(ConveyorError):
    """Raised when an environment name is not in the configured arena.

    Attributes:
        environment: The unknown environment name.
        available: Names that are configured.
    """

    exit_code: int = 3

    def __init__(self, environment: str, available: list[str] | None = None) -> None:
        self.environment = environment
        self.available = available or []
        msg = f"Environment not found: '{environment}'"
        if self.available:
            msg += f". Configured environments: {', '.join(self.available)}"
        super().__init__(msg)


class ProviderUnavailableError(ConveyorError):
    """Raised when a control-plane collaborator fails transiently.

    Retried with bounded exponential backoff; once retries are exhausted the
    error is attached to the RolloutAttempt as a failure.

    Attributes:
        provider: Collaborator that failed (e.g. "scheduler", "registry").
        reason: Description of the failure.
    """

    exit_code: int = 5

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"Provider unavailable: {provider}: {reason}")


class CircuitBreakerOpenError(ProviderUnavailableError):
    """Raised when the circuit breaker for a provider is open.

    Calls are rejected without contacting the provider until the recovery
    timeout elapses.

    Attributes:
        failure_count: Consecutive failures that opened the circuit.
        recovery_at: ISO timestamp when probing resumes, if known.
    """

    def __init__(
        self,
        provider: str,
        failure_count: int,
        recovery_at: str | None = None,
    ) -> None:
        self.failure_count = failure_count
        self.recovery_at = recovery_at
        reason = f"circuit open after {failure_count} failures"
        if recovery_at:
            reason += f", retry after {recovery_at}"
        super().__init__(provider, reason)


class BuildFailedError(ConveyorError):
    """Raised when a CI step exits non-zero or exceeds its timeout.

    Attributes:
        step: Name of the failing CI step.
        details: stderr excerpt or timeout description.
    """

    exit_code: int = 8

    def __init__(self, step: str, details: str) -> None:
        self.step = step
        self.details = details
        super().__init__(f"CI step '{step}' failed: {details}")


class InvalidTransitionError(ConveyorError):
    """Raised when a pipeline run attempts an illegal state transition.

    Attributes:
        from_state: Current state of the run.
        to_state: Requested state.
        reason: Why it is not allowed.
    """

    exit_code: int = 9

    def __init__(self, from_state: str, to_state: str, reason: str | None = None) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or "transition not permitted"
        super().__init__(f"Invalid transition {from_state} -> {to_state}: {self.reason}")


class MigrationFailedError(ConveyorError):
    """Raised when the pre-rollout schema migration fails.

    A failed migration aborts the whole attempt before any compute unit is
    started. Re-running requires a new RolloutAttempt.

    Attributes:
        environment: Target environment.
        release_id: Release whose migrations failed.
        reason: Failure description.
    """

    exit_code: int = 10

    def __init__(self, environment: str, release_id: str, reason: str) -> None:
        self.environment = environment
        self.release_id = release_id
        self.reason = reason
        super().__init__(f"Migration failed for {release_id} in {environment}: {reason}")


class HealthCheckTimeoutError(ConveyorError):
    """Raised when a rollout batch does not pass the health gate in time.

    Attributes:
        environment: Target environment.
        batch: 1-indexed batch number that failed.
        timeout_seconds: Health gate timeout that elapsed.
    """

    exit_code: int = 11

    def __init__(self, environment: str, batch: int, timeout_seconds: float) -> None:
        self.environment = environment
        self.batch = batch
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Batch {batch} in {environment} not healthy after {timeout_seconds:g}s"
        )


class ApprovalRejectedError(ConveyorError):
    """Raised when a production approval gate is rejected.

    Attributes:
        environment: Gated environment.
        release_id: Release awaiting promotion.
        decided_by: Operator that rejected, if known.
        reason: Rejection reason, if given.
    """

    exit_code: int = 12

    def __init__(
        self,
        environment: str,
        release_id: str,
        decided_by: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.environment = environment
        self.release_id = release_id
        self.decided_by = decided_by
        self.reason = reason
        msg = f"Promotion of {release_id} to {environment} rejected"
        if decided_by:
            msg += f" by {decided_by}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ApprovalTimeoutError(ApprovalRejectedError):
    """Raised when no approval decision arrives within the configured timeout."""

    def __init__(self, environment: str, release_id: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            environment,
            release_id,
            reason=f"no decision within {timeout_seconds:g}s",
        )


class LockContentionError(ConveyorError):
    """Raised when another rollout holds the environment's rollout lock.

    Retried with backoff by the Rollout Controller while a rollout queues;
    surfaced only once a configured ``lock_max_wait_seconds`` has elapsed.

    Attributes:
        environment: Contended environment.
        holder: Attempt id currently holding the lock, if known.
    """

    exit_code: int = 13

    def __init__(self, environment: str, holder: str | None = None) -> None:
        self.environment = environment
        self.holder = holder
        msg = f"Rollout lock for {environment} is held"
        if holder:
            msg += f" by attempt {holder}"
        super().__init__(msg)


class EnvironmentFrozenError(ConveyorError):
    """Raised when a rollout targets an environment frozen by an operator.

    Attributes:
        environment: Frozen environment.
        frozen_by: Operator that applied the freeze.
        reason: Freeze reason.
    """

    exit_code: int = 13

    def __init__(self, environment: str, frozen_by: str = "", reason: str = "") -> None:
        self.environment = environment
        self.frozen_by = frozen_by
        self.reason = reason
        msg = f"Environment {environment} is frozen"
        if frozen_by:
            msg += f" by {frozen_by}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class RolloutCancelledError(ConveyorError):
    """Raised when an operator cancels an in-flight rollout or pipeline stage.

    Attributes:
        environment: Environment of the cancelled rollout, if any.
        stage: Stage that was interrupted.
    """

    exit_code: int = 14

    def __init__(self, stage: str, environment: str | None = None) -> None:
        self.stage = stage
        self.environment = environment
        msg = f"Cancelled during {stage}"
        if environment:
            msg += f" ({environment})"
        super().__init__(msg)


__all__: list[str] = [
    "ApprovalRejectedError",
    "ApprovalTimeoutError",
    "BuildFailedError",
    "CircuitBreakerOpenError",
    "ConfigurationError",
    "ConveyorError",
    "EnvironmentFrozenError",
    "EnvironmentNotFoundError",
    "HealthCheckTimeoutError",
    "InvalidTransitionError",
    "LockContentionError",
    "MigrationFailedError",
    "ProviderUnavailableError",
    "RolloutCancelledError",
]
