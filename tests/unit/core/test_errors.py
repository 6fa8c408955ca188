"""Unit tests for the ConveyorError hierarchy and exit codes."""

from __future__ import annotations

import pytest

from conveyor.errors import (
    ApprovalRejectedError,
    ApprovalTimeoutError,
    BuildFailedError,
    CircuitBreakerOpenError,
    ConfigurationError,
    ConveyorError,
    EnvironmentFrozenError,
    EnvironmentNotFoundError,
    HealthCheckTimeoutError,
    InvalidTransitionError,
    LockContentionError,
    MigrationFailedError,
    ProviderUnavailableError,
    RolloutCancelledError,
)


@pytest.mark.parametrize(
    ("error", "exit_code"),
    [
        (ConfigurationError("bad"), 2),
        (EnvironmentNotFoundError("qa"), 3),
        (ProviderUnavailableError("scheduler", "down"), 5),
        (CircuitBreakerOpenError("scheduler", 5), 5),
        (BuildFailedError("test", "exit code 1"), 8),
        (InvalidTransitionError("idle", "approved"), 9),
        (MigrationFailedError("production", "r1", "exit 1"), 10),
        (HealthCheckTimeoutError("staging", 1, 30.0), 11),
        (ApprovalRejectedError("production", "v1.0.0"), 12),
        (ApprovalTimeoutError("production", "v1.0.0", 60.0), 12),
        (LockContentionError("staging"), 13),
        (EnvironmentFrozenError("production"), 13),
        (RolloutCancelledError("rollout"), 14),
    ],
)
def test_exit_codes(error: ConveyorError, exit_code: int) -> None:
    assert isinstance(error, ConveyorError)
    assert error.exit_code == exit_code


def test_approval_timeout_is_a_rejection() -> None:
    error = ApprovalTimeoutError("production", "v1.0.0", 60.0)
    assert isinstance(error, ApprovalRejectedError)
    assert "no decision within 60s" in str(error)


def test_circuit_open_is_provider_unavailable() -> None:
    error = CircuitBreakerOpenError("registry", 5, recovery_at="2026-01-01T00:00:00+00:00")
    assert isinstance(error, ProviderUnavailableError)
    assert error.provider == "registry"
    assert "retry after" in str(error)


def test_messages_carry_context() -> None:
    assert "Batch 2 in staging not healthy after 30s" in str(
        HealthCheckTimeoutError("staging", 2, 30.0)
    )
    assert "by attempt abc" in str(LockContentionError("staging", holder="abc"))
    assert "frozen by sre: incident" in str(
        EnvironmentFrozenError("production", frozen_by="sre", reason="incident")
    )
    assert "Configured environments: staging, production" in str(
        EnvironmentNotFoundError("qa", ["staging", "production"])
    )
    assert str(InvalidTransitionError("idle", "approved")).endswith("transition not permitted")
