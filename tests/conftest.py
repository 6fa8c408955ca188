"""Shared pytest fixtures for conveyor tests.

Fixtures build a fast configuration (millisecond backoffs, sub-second health
timeouts) and the in-memory providers, so the rollout and pipeline tests run
real threads without touching external systems.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import pytest
import structlog

from conveyor.approvals import ApprovalRegistry
from conveyor.arena import EnvironmentArena
from conveyor.artifacts import ArtifactStoreClient
from conveyor.ci import CIRunner
from conveyor.health import HealthGate
from conveyor.migrations import MigrationRunner
from conveyor.pipeline import PipelineStateMachine
from conveyor.providers.memory import (
    InMemoryArtifactRegistry,
    InMemoryComputeScheduler,
    InMemoryHealthProbe,
    InMemoryMigrationExecutor,
    InMemorySecretStore,
)
from conveyor.resilience import ResilientCaller
from conveyor.rollout import RolloutController
from conveyor.schemas.config import ConveyorConfig
from conveyor.schemas.models import Release
from conveyor.store import InMemoryStore

REVISION = "3f2a9c1b7d4e5f60718293a4b5c6d7e8f9012345"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "requirement(id): behavioral requirement a test verifies",
    )


@pytest.fixture(autouse=True)
def _reset_structlog() -> Generator[None, None, None]:
    """Undo configure_logging() so later tests do not log to a closed stream."""
    yield
    structlog.reset_defaults()


def _fast_rollout(**overrides: Any) -> dict[str, Any]:
    rollout = {
        "batch_size": 1,
        "health_timeout_seconds": 0.3,
        "poll_interval_seconds": 0.01,
    }
    rollout.update(overrides)
    return rollout


def make_config(**overrides: Any) -> ConveyorConfig:
    """Build a ConveyorConfig tuned for tests.

    staging runs 2 units in batches of 1; production runs 6 units in batches
    of 2 behind an approval gate.
    """
    data: dict[str, Any] = {
        "environments": [
            {"name": "staging", "desired_count": 2, "rollout": _fast_rollout()},
            {
                "name": "production",
                "desired_count": 6,
                "requires_approval": True,
                "rollout": _fast_rollout(batch_size=2),
                "database_secret_id": "prod-db",
            },
        ],
        "ci_steps": [{"name": "build", "command": "true", "timeout_seconds": 10}],
        "approval_timeout_seconds": 5.0,
        "lock_wait_seconds": 0.05,
        "lock_retry": {"max_attempts": 2, "initial_delay_ms": 1, "jitter": False},
        "provider_retry": {"max_attempts": 2, "initial_delay_ms": 1, "jitter": False},
    }
    data.update(overrides)
    return ConveyorConfig.model_validate(data)


@pytest.fixture
def config_factory() -> Callable[..., ConveyorConfig]:
    """Provide make_config for tests that need variations."""
    return make_config


@pytest.fixture
def config() -> ConveyorConfig:
    return make_config()


@pytest.fixture
def release() -> Release:
    return Release.build(revision=REVISION, ref="refs/tags/r2", tag="r2")


@pytest.fixture
def scheduler() -> InMemoryComputeScheduler:
    return InMemoryComputeScheduler()


@pytest.fixture
def probe() -> InMemoryHealthProbe:
    return InMemoryHealthProbe()


@pytest.fixture
def migration_executor() -> InMemoryMigrationExecutor:
    return InMemoryMigrationExecutor()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def arena(config: ConveyorConfig, store: InMemoryStore) -> EnvironmentArena:
    return EnvironmentArena([env.name for env in config.environments], store)


@pytest.fixture
def controller(
    config: ConveyorConfig,
    arena: EnvironmentArena,
    scheduler: InMemoryComputeScheduler,
    probe: InMemoryHealthProbe,
    migration_executor: InMemoryMigrationExecutor,
    store: InMemoryStore,
) -> RolloutController:
    """RolloutController over in-memory providers; migrations run in every environment."""
    migrations = MigrationRunner(
        {env.name: migration_executor for env in config.environments},
        InMemorySecretStore({"prod-db": "postgres://prod"}),
    )
    return RolloutController(
        config,
        arena,
        scheduler,
        HealthGate(probe, poll_interval=0.01),
        migrations,
        store,
        scheduler_caller=ResilientCaller(
            "scheduler", config.provider_retry, config.circuit_breaker, sleep=lambda _: None
        ),
    )


@pytest.fixture
def approvals() -> ApprovalRegistry:
    return ApprovalRegistry()


@pytest.fixture
def registry() -> InMemoryArtifactRegistry:
    return InMemoryArtifactRegistry()


@pytest.fixture
def machine(
    config: ConveyorConfig,
    controller: RolloutController,
    approvals: ApprovalRegistry,
    registry: InMemoryArtifactRegistry,
    store: InMemoryStore,
    tmp_path: Any,
) -> PipelineStateMachine:
    return PipelineStateMachine(
        config,
        CIRunner(config.ci_steps, workspace_root=tmp_path),
        ArtifactStoreClient(registry),
        controller,
        approvals,
        store,
    )
