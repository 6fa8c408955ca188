"""conveyor: release promotion orchestrator.

This package provides:
- PipelineStateMachine, PipelineDispatcher: CI -> staging -> approval -> production
- RolloutController: batched rolling replacement behind health gates
- ApprovalRegistry: human approval channel for production promotions
- EnvironmentArena: per-environment records and rollout locks
- Orchestrator: wiring of all components from a ConveyorConfig
- Errors: ConveyorError hierarchy with CLI exit codes
- Schemas: pydantic models for the manifest and control-plane records

Example:
    >>> from conveyor import Orchestrator, SourceEvent, load_config
    >>> orchestrator = Orchestrator.from_config(load_config("conveyor.yaml"))
    >>> event = SourceEvent(kind="push", revision="3f2a9c1", ref="refs/heads/main")
    >>> with orchestrator.dispatcher() as dispatcher:
    ...     run = dispatcher.wait(dispatcher.submit(event), timeout=600)
    >>> run.state
    <PipelineState.STAGING_HEALTHY: 'staging_healthy'>

See Also:
    - conveyor.providers: external-system interfaces and local implementations
    - conveyor.telemetry: tracing, logging and metrics
"""

from __future__ import annotations

__version__ = "0.1.0"

from conveyor.approvals import ApprovalRegistry
from conveyor.arena import EnvironmentArena
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
from conveyor.orchestrator import Orchestrator
from conveyor.pipeline import PipelineDispatcher, PipelineStateMachine
from conveyor.rollout import RolloutController
from conveyor.schemas import (
    ConveyorConfig,
    Environment,
    PipelineRun,
    PipelineState,
    Release,
    RolloutAttempt,
    RolloutStatus,
    SourceEvent,
    load_config,
)

__all__: list[str] = [
    "__version__",
    "ApprovalRegistry",
    "ApprovalRejectedError",
    "ApprovalTimeoutError",
    "BuildFailedError",
    "CircuitBreakerOpenError",
    "ConfigurationError",
    "ConveyorConfig",
    "ConveyorError",
    "Environment",
    "EnvironmentArena",
    "EnvironmentFrozenError",
    "EnvironmentNotFoundError",
    "HealthCheckTimeoutError",
    "InvalidTransitionError",
    "LockContentionError",
    "MigrationFailedError",
    "Orchestrator",
    "PipelineDispatcher",
    "PipelineRun",
    "PipelineState",
    "PipelineStateMachine",
    "ProviderUnavailableError",
    "Release",
    "RolloutAttempt",
    "RolloutController",
    "RolloutStatus",
    "SourceEvent",
    "load_config",
]
