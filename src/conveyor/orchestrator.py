"""Wiring of conveyor components from a ConveyorConfig.

Orchestrator.from_config() assembles the store, environment arena, health
gate, migration runner, artifact client, rollout controller, approval
registry, CI runner and pipeline state machine. Providers that are not
passed in default to local mode: in-memory registry and scheduler, an HTTP
probe when ``health_check_url`` is set (in-memory otherwise), environment
variable secrets, and shell-command migration executors for environments
that configure a ``migration_command``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from conveyor.approvals import ApprovalRegistry
from conveyor.arena import EnvironmentArena
from conveyor.artifacts import ArtifactStoreClient
from conveyor.ci import CIRunner
from conveyor.health import HealthGate
from conveyor.migrations import MigrationRunner
from conveyor.pipeline import PipelineDispatcher, PipelineStateMachine
from conveyor.providers.http import HttpHealthProbe
from conveyor.providers.local import CommandMigrationExecutor, EnvSecretStore
from conveyor.providers.memory import (
    InMemoryArtifactRegistry,
    InMemoryComputeScheduler,
    InMemoryHealthProbe,
)
from conveyor.resilience import ResilientCaller
from conveyor.rollout import RolloutController
from conveyor.store import open_store
from conveyor.telemetry.metrics import MetricRecorder
from conveyor.webhooks import WebhookNotifier

if TYPE_CHECKING:
    import httpx

    from conveyor.providers.base import (
        ArtifactRegistry,
        ComputeScheduler,
        HealthProbe,
        MigrationExecutor,
        SecretStore,
    )
    from conveyor.schemas.config import ConveyorConfig
    from conveyor.store import ControlPlaneStore

logger = structlog.get_logger(__name__)


class Orchestrator:
    """All components for one conveyor manifest.

    Attributes:
        config: The manifest.
        store: Control-plane store.
        arena: Environment records and rollout locks.
        approvals: Human approval channel.
        rollouts: Rollout Controller.
        machine: Pipeline State Machine.
        notifier: Webhook notifier, if webhooks are configured.
    """

    def __init__(
        self,
        config: ConveyorConfig,
        store: ControlPlaneStore,
        arena: EnvironmentArena,
        approvals: ApprovalRegistry,
        rollouts: RolloutController,
        machine: PipelineStateMachine,
        notifier: WebhookNotifier | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.arena = arena
        self.approvals = approvals
        self.rollouts = rollouts
        self.machine = machine
        self.notifier = notifier

    @classmethod
    def from_config(
        cls,
        config: ConveyorConfig,
        *,
        registry: ArtifactRegistry | None = None,
        scheduler: ComputeScheduler | None = None,
        probe: HealthProbe | None = None,
        secrets: SecretStore | None = None,
        migration_executors: dict[str, MigrationExecutor] | None = None,
        store: ControlPlaneStore | None = None,
        webhook_transport: httpx.BaseTransport | None = None,
    ) -> Orchestrator:
        """Build an orchestrator, defaulting unspecified providers to local mode."""
        store = store if store is not None else open_store(config.store_path)
        arena = EnvironmentArena([env.name for env in config.environments], store)

        if scheduler is None:
            local_scheduler = InMemoryComputeScheduler()
            for record in arena.snapshot():
                if record.current_version is not None:
                    local_scheduler.seed(
                        record.name,
                        record.current_version,
                        config.get_environment(record.name).desired_count,
                    )
            scheduler = local_scheduler

        if migration_executors is None:
            migration_executors = {
                env.name: CommandMigrationExecutor(env.migration_command)
                for env in config.environments
                if env.migration_command
            }

        notifier = (
            WebhookNotifier(config.webhooks, transport=webhook_transport)
            if config.webhooks
            else None
        )
        if probe is None:
            probe = (
                HttpHealthProbe(config.health_check_url)
                if config.health_check_url
                else InMemoryHealthProbe()
            )
        metrics = MetricRecorder()

        rollouts = RolloutController(
            config,
            arena,
            scheduler,
            HealthGate(probe),
            MigrationRunner(migration_executors, secrets or EnvSecretStore()),
            store,
            metrics=metrics,
            notifier=notifier,
            scheduler_caller=ResilientCaller(
                "scheduler", config.provider_retry, config.circuit_breaker
            ),
        )
        artifacts = ArtifactStoreClient(
            registry or InMemoryArtifactRegistry(),
            ResilientCaller("registry", config.provider_retry, config.circuit_breaker),
        )
        approvals = ApprovalRegistry()
        machine = PipelineStateMachine(
            config,
            CIRunner(config.ci_steps),
            artifacts,
            rollouts,
            approvals,
            store,
            metrics=metrics,
            notifier=notifier,
        )
        logger.debug(
            "orchestrator_built",
            environments=arena.names,
            ci_steps=len(config.ci_steps),
            webhooks=len(config.webhooks or []),
        )
        return cls(config, store, arena, approvals, rollouts, machine, notifier)

    def dispatcher(self) -> PipelineDispatcher:
        """Create a dispatcher sized by ``max_concurrent_runs``."""
        return PipelineDispatcher(self.machine, max_workers=self.config.max_concurrent_runs)


__all__: list[str] = ["Orchestrator"]
