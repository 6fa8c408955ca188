"""Abstract interfaces for the control-plane collaborators conveyor drives.

Managed-service behaviour (object storage, container scheduling, load
balancer health checks, secret storage, database migrations) lives behind
these interfaces. Conveyor only sequences calls to them.

Providers signal transient failures by raising ProviderUnavailableError
(or ConnectionError/TimeoutError); callers wrap them in
conveyor.resilience.ResilientCaller.

Example:
    >>> class EcsScheduler(ComputeScheduler):
    ...     def start(self, environment, release_id, count):
    ...         return self._client.run_task(...)
    ...     # ... implement stop() and list_tasks()
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conveyor.schemas.models import ComputeTask, Release


class ProbeStatus(str, Enum):
    """Readiness signal reported by a health probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ArtifactRegistry(ABC):
    """Artifact registry or object store (content- or tag-addressed)."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> str:
        """Store data under key.

        Returns:
            Stored reference (URI) for the object.
        """
        ...

    @abstractmethod
    def get_reference(self, key: str) -> str | None:
        """Return the stored reference for key, or None if absent."""
        ...


class ComputeScheduler(ABC):
    """Container task orchestration for one or more environments."""

    @abstractmethod
    def start(self, environment: str, release_id: str, count: int) -> list[str]:
        """Start count compute units running release_id.

        Returns:
            Task ids of the started units.
        """
        ...

    @abstractmethod
    def stop(self, environment: str, task_ids: list[str]) -> None:
        """Drain and terminate the given units. Unknown ids are ignored."""
        ...

    @abstractmethod
    def list_tasks(self, environment: str) -> list[ComputeTask]:
        """List running units in the environment."""
        ...


class HealthProbe(ABC):
    """Load balancer readiness probe."""

    @abstractmethod
    def status(self, target: str) -> ProbeStatus:
        """Return the readiness of target (a task id or target group)."""
        ...


class SecretStore(ABC):
    """Read-only secret lookup."""

    @abstractmethod
    def get(self, secret_id: str) -> str | None:
        """Return the secret value, or None if it does not exist."""
        ...


class MigrationExecutor(ABC):
    """Runs a schema migration as a one-shot task."""

    @abstractmethod
    def execute(
        self,
        environment: str,
        release: Release,
        secrets: dict[str, str],
        timeout: float,
    ) -> None:
        """Apply the release's migrations to the environment's database.

        Args:
            environment: Target environment name.
            release: Release whose migrations are applied.
            secrets: Credentials resolved from the secret store.
            timeout: Maximum execution time in seconds.

        Raises:
            MigrationFailedError: If the migration fails or times out.
        """
        ...


__all__: list[str] = [
    "ArtifactRegistry",
    "ComputeScheduler",
    "HealthProbe",
    "MigrationExecutor",
    "ProbeStatus",
    "SecretStore",
]
