"""Configuration schemas for the conveyor manifest (conveyor.yaml).

This module defines Pydantic v2 schemas for the promotion pipeline: ordered
environments with rollout settings, CI steps, event routing, approval and
lock timeouts, resilience policies, and webhook notifications.

Key Components:
    RetryConfig: Exponential backoff for retried error classes
    CircuitBreakerConfig: Circuit breaker thresholds for providers
    RolloutConfig: Rolling replacement settings for one environment
    EnvironmentConfig: Per-environment deployment target
    CIStepConfig: One CI command with a mandatory timeout
    WebhookConfig: Lifecycle event notifications
    ConveyorConfig: Top-level manifest

Example:
    >>> config = ConveyorConfig()
    >>> [env.name for env in config.environments]
    ['staging', 'production']
    >>> config.get_environment("production").requires_approval
    True
"""

from __future__ import annotations

import re
from collections import Counter
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from conveyor.errors import ConfigurationError, EnvironmentNotFoundError

# Valid webhook event types
VALID_WEBHOOK_EVENTS = frozenset(
    {
        "pipeline_started",
        "pipeline_completed",
        "approval_requested",
        "rollout_succeeded",
        "rollout_failed",
        "environment_frozen",
        "environment_unfrozen",
    }
)

ENVIRONMENT_NAME_PATTERN = r"^[a-z][a-z0-9_-]*$"


class RetryConfig(BaseModel):
    """Backoff for the failure classes conveyor retries on its own.

    Examples:
        >>> RetryConfig(max_attempts=5).max_attempts
        5
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts (including the first)",
    )
    initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Delay before the second attempt, in ms",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Factor applied to the delay after each failed attempt",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Upper bound on any single delay, in ms",
    )
    jitter: bool = Field(
        default=True,
        description="Spread each delay by up to 25%",
    )


class CircuitBreakerConfig(BaseModel):
    """Per-provider circuit breaker thresholds (see conveyor.resilience)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(
        default=True,
        description="Disable to let every call through",
    )
    failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive provider failures that open the circuit",
    )
    recovery_timeout_ms: int = Field(
        default=60000,
        ge=0,
        description="How long an open circuit rejects calls, in ms",
    )
    half_open_requests: int = Field(
        default=1,
        ge=1,
        description="Trial calls admitted once the recovery timeout passes",
    )


class RolloutConfig(BaseModel):
    """Rolling replacement settings for one environment.

    Attributes:
        batch_size: New units started (and old units drained) per batch.
        health_timeout_seconds: Health gate timeout per batch.
        poll_interval_seconds: Readiness poll interval.
        migration_timeout_seconds: Timeout for the pre-rollout migration.
        rollback_on_failure: Revert completed batches when a later batch fails.

    Examples:
        >>> RolloutConfig(batch_size=2).health_timeout_seconds
        60.0
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    batch_size: int = Field(
        default=1,
        ge=1,
        description="Compute units replaced per batch",
    )
    health_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Maximum time for a batch to pass the health gate",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Interval between readiness probes",
    )
    migration_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Maximum schema migration execution time",
    )
    rollback_on_failure: bool = Field(
        default=False,
        description=(
            "Revert already-replaced batches to the previous release when a "
            "later batch fails. When False a partial rollout is left mixed."
        ),
    )


class EnvironmentConfig(BaseModel):
    """Deployment target configuration.

    Attributes:
        name: Environment name (e.g. "staging", "production").
        desired_count: Number of compute units the environment runs.
        health_target: Load balancer target group probed when no task ids apply.
        requires_approval: Whether promotion needs a human approval gate.
        rollout: Rolling replacement settings.
        migration_command: Shell command running schema migrations, if any.
        database_secret_id: Secret store id of the database URL for migrations.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        pattern=ENVIRONMENT_NAME_PATTERN,
        description="Environment name (lowercase, alphanumeric with hyphens/underscores)",
    )
    desired_count: int = Field(
        default=2,
        ge=1,
        description="Compute units running in this environment",
    )
    health_target: str | None = Field(
        default=None,
        description="Readiness target for environment-level probes",
    )
    requires_approval: bool = Field(
        default=False,
        description="Require an approval gate before rolling out",
    )
    rollout: RolloutConfig = Field(
        default_factory=RolloutConfig,
        description="Rolling replacement settings",
    )
    migration_command: str | None = Field(
        default=None,
        description="Shell command that applies schema migrations",
    )
    database_secret_id: str | None = Field(
        default=None,
        description="Secret id holding the database connection URL",
    )

    @property
    def effective_health_target(self) -> str:
        """Return the readiness target, defaulting to the environment name."""
        return self.health_target or self.name


class CIStepConfig(BaseModel):
    """One CI step: a shell command run inside the build sandbox.

    Examples:
        >>> CIStepConfig(name="test", command="pytest -q").timeout_seconds
        600.0
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Step name")
    command: str = Field(..., min_length=1, description="Shell command to run")
    timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Maximum execution time in seconds",
    )


class WebhookConfig(BaseModel):
    """A subscriber to lifecycle events, delivered as JSON POSTs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(
        ...,
        min_length=1,
        description="Endpoint receiving the POST",
    )
    events: list[str] = Field(
        ...,
        min_length=1,
        description="Lifecycle events this endpoint subscribes to",
    )
    headers: dict[str, str] | None = Field(
        default=None,
        description="Extra request headers, e.g. Authorization",
    )
    timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Per-request timeout in seconds",
    )
    retry_count: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first attempt on 5xx or connection errors",
    )

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        """Reject event names conveyor never emits."""
        invalid = set(v) - VALID_WEBHOOK_EVENTS
        if invalid:
            raise ValueError(
                f"Invalid event types: {invalid}. Valid types: {sorted(VALID_WEBHOOK_EVENTS)}"
            )
        return v


def _default_environments() -> list[EnvironmentConfig]:
    """Create default environment configurations [staging, production]."""
    return [
        EnvironmentConfig(name="staging"),
        EnvironmentConfig(name="production", requires_approval=True),
    ]


class ConveyorConfig(BaseModel):
    """Top-level conveyor manifest.

    Attributes:
        environments: Ordered deployment targets.
        staging_environment: Environment deployed on branch pushes and tags.
        production_environment: Environment deployed on production tags.
        ci_steps: Commands run in the CI stage.
        deploy_branches: Branches whose pushes deploy to staging.
        production_tag_pattern: Regex a tag must match to reach production.
        approval_timeout_seconds: Approval wait; None means wait indefinitely.
        lock_wait_seconds: Blocking wait on a held rollout lock per acquisition.
        lock_retry: Backoff between acquisitions while a rollout is queued.
        lock_max_wait_seconds: Give up queueing after this long (None = wait
            until the lock is free or the rollout is cancelled).
        provider_retry: Backoff for ProviderUnavailableError.
        circuit_breaker: Breaker settings shared by providers.
        webhooks: Lifecycle notifications.
        store_path: Directory for the JSON file store (None = in-memory).
        health_check_url: Readiness URL template with a {target} placeholder;
            probes run over HTTP when set.
        max_concurrent_runs: Worker threads for the pipeline dispatcher.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environments: list[EnvironmentConfig] = Field(
        default_factory=_default_environments,
        min_length=1,
        description="Ordered list of deployment targets",
    )
    staging_environment: str = Field(
        default="staging",
        description="Environment deployed after CI passes",
    )
    production_environment: str = Field(
        default="production",
        description="Environment deployed for production tags",
    )
    ci_steps: list[CIStepConfig] = Field(
        default_factory=list,
        description="CI commands run sequentially",
    )
    deploy_branches: list[str] = Field(
        default_factory=lambda: ["main"],
        description="Branches whose pushes are deployed to staging",
    )
    production_tag_pattern: str = Field(
        default=r"^v\d+\.\d+\.\d+$",
        description="Tags matching this pattern are promoted to production",
    )
    approval_timeout_seconds: float | None = Field(
        default=86400.0,
        gt=0,
        description="Approval wait in seconds; null waits without a timeout",
    )
    lock_wait_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Blocking wait for a held rollout lock per acquisition attempt",
    )
    lock_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(initial_delay_ms=250, max_delay_ms=5000),
        description="Backoff between lock acquisitions while queued (max_attempts unused)",
    )
    lock_max_wait_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Optional cap on time spent queued for a rollout lock",
    )
    provider_retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Backoff for transient provider failures",
    )
    circuit_breaker: CircuitBreakerConfig = Field(
        default_factory=CircuitBreakerConfig,
        description="Circuit breaker for provider calls",
    )
    webhooks: list[WebhookConfig] | None = Field(
        default=None,
        description="Webhook configurations for notifications",
    )
    store_path: str | None = Field(
        default=None,
        description="Directory for persisted control-plane records",
    )
    health_check_url: str | None = Field(
        default=None,
        description="Readiness URL template, e.g. http://{target}.internal/healthz",
    )
    max_concurrent_runs: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrently executing pipeline runs",
    )

    @field_validator("environments")
    @classmethod
    def validate_unique_environment_names(
        cls, v: list[EnvironmentConfig]
    ) -> list[EnvironmentConfig]:
        counts = Counter(env.name for env in v)
        repeated = sorted(name for name, n in counts.items() if n > 1)
        if repeated:
            raise ValueError(f"Environment names must be unique; repeated: {repeated}")
        return v

    @field_validator("health_check_url")
    @classmethod
    def validate_health_check_url(cls, v: str | None) -> str | None:
        if v is not None and "{target}" not in v:
            raise ValueError("health_check_url must contain a {target} placeholder")
        return v

    @field_validator("production_tag_pattern")
    @classmethod
    def validate_tag_pattern(cls, v: str) -> str:
        """Validate the production tag pattern compiles."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid production_tag_pattern: {e}") from e
        return v

    @model_validator(mode="after")
    def validate_stage_environments(self) -> ConveyorConfig:
        """Validate that staging/production names refer to configured environments."""
        names = {env.name for env in self.environments}
        for field_name in ("staging_environment", "production_environment"):
            value = getattr(self, field_name)
            if value not in names:
                raise ValueError(f"{field_name} '{value}' is not a configured environment")
        return self

    def get_environment(self, name: str) -> EnvironmentConfig:
        """Look up an environment by name.

        Raises:
            EnvironmentNotFoundError: If no environment has that name.
        """
        for env in self.environments:
            if env.name == name:
                return env
        raise EnvironmentNotFoundError(name, [e.name for e in self.environments])

    def is_production_tag(self, tag: str | None) -> bool:
        """Check whether a tag should be promoted to production."""
        return bool(tag) and re.match(self.production_tag_pattern, tag or "") is not None


def load_config(path: Path | str) -> ConveyorConfig:
    """Load and validate a conveyor manifest from YAML.

    Args:
        path: Path to conveyor.yaml.

    Returns:
        Validated ConveyorConfig.

    Raises:
        ConfigurationError: If the file cannot be read, parsed, or validated.
    """
    path = Path(path)
    try:
        with open(path) as f:
            data: Any = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(str(e), path=str(path)) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML: {e}", path=str(path)) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("top-level document must be a mapping", path=str(path))

    try:
        return ConveyorConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(e), path=str(path)) from e


__all__: list[str] = [
    "CIStepConfig",
    "CircuitBreakerConfig",
    "ConveyorConfig",
    "EnvironmentConfig",
    "RetryConfig",
    "RolloutConfig",
    "VALID_WEBHOOK_EVENTS",
    "WebhookConfig",
    "load_config",
]
