"""Pydantic schemas for conveyor configuration and control-plane records."""

from __future__ import annotations

from conveyor.schemas.config import (
    CIStepConfig,
    CircuitBreakerConfig,
    ConveyorConfig,
    EnvironmentConfig,
    RetryConfig,
    RolloutConfig,
    WebhookConfig,
    load_config,
)
from conveyor.schemas.models import (
    ApprovalGate,
    ApprovalState,
    CIStepResult,
    ComputeTask,
    Environment,
    EnvironmentFreeze,
    HealthStatus,
    PipelineRun,
    PipelineState,
    Release,
    RolloutAttempt,
    RolloutStatus,
    SourceEvent,
    SourceEventKind,
    TaskAction,
    TaskReplacementEvent,
)

__all__: list[str] = [
    "ApprovalGate",
    "ApprovalState",
    "CIStepConfig",
    "CIStepResult",
    "CircuitBreakerConfig",
    "ComputeTask",
    "ConveyorConfig",
    "Environment",
    "EnvironmentConfig",
    "EnvironmentFreeze",
    "HealthStatus",
    "PipelineRun",
    "PipelineState",
    "Release",
    "RetryConfig",
    "RolloutAttempt",
    "RolloutConfig",
    "RolloutStatus",
    "SourceEvent",
    "SourceEventKind",
    "TaskAction",
    "TaskReplacementEvent",
    "WebhookConfig",
    "load_config",
]
