"""Control-plane provider interfaces and bundled implementations."""

from __future__ import annotations

from conveyor.providers.base import (
    ArtifactRegistry,
    ComputeScheduler,
    HealthProbe,
    MigrationExecutor,
    ProbeStatus,
    SecretStore,
)
from conveyor.providers.http import HttpHealthProbe
from conveyor.providers.local import CommandMigrationExecutor, EnvSecretStore
from conveyor.providers.memory import (
    InMemoryArtifactRegistry,
    InMemoryComputeScheduler,
    InMemoryHealthProbe,
    InMemoryMigrationExecutor,
    InMemorySecretStore,
)

__all__: list[str] = [
    "ArtifactRegistry",
    "CommandMigrationExecutor",
    "ComputeScheduler",
    "EnvSecretStore",
    "HealthProbe",
    "HttpHealthProbe",
    "InMemoryArtifactRegistry",
    "InMemoryComputeScheduler",
    "InMemoryHealthProbe",
    "InMemoryMigrationExecutor",
    "InMemorySecretStore",
    "MigrationExecutor",
    "ProbeStatus",
    "SecretStore",
]
