"""In-memory providers for local runs and tests.

All implementations are thread-safe so concurrent pipeline runs can share
them. They keep call histories that tests and the CLI's local mode inspect.
"""

from __future__ import annotations

import hashlib
import itertools
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from conveyor.errors import MigrationFailedError
from conveyor.providers.base import (
    ArtifactRegistry,
    ComputeScheduler,
    HealthProbe,
    MigrationExecutor,
    ProbeStatus,
    SecretStore,
)
from conveyor.schemas.models import ComputeTask

if TYPE_CHECKING:
    from conveyor.schemas.models import Release

logger = structlog.get_logger(__name__)


class InMemoryArtifactRegistry(ArtifactRegistry):
    """Content-addressed dict store returning ``memory://`` references."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._references: dict[str, str] = {}
        self._lock = threading.Lock()
        self.put_calls = 0

    def put(self, key: str, data: bytes) -> str:
        with self._lock:
            self.put_calls += 1
            digest = hashlib.sha256(data).hexdigest()
            reference = f"memory://{key}@sha256:{digest}"
            self._objects[key] = data
            self._references[key] = reference
            return reference

    def get_reference(self, key: str) -> str | None:
        with self._lock:
            return self._references.get(key)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._objects.get(key)


class InMemoryComputeScheduler(ComputeScheduler):
    """Tracks compute units per environment.

    Attributes:
        started: History of (environment, task_ids) start calls.
        stopped: History of (environment, task_ids) stop calls.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, dict[str, str]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.started: list[tuple[str, list[str]]] = []
        self.stopped: list[tuple[str, list[str]]] = []

    def seed(self, environment: str, release_id: str, count: int) -> list[str]:
        """Create running units without recording a start call."""
        with self._lock:
            return self._create(environment, release_id, count)

    def start(self, environment: str, release_id: str, count: int) -> list[str]:
        with self._lock:
            task_ids = self._create(environment, release_id, count)
            self.started.append((environment, list(task_ids)))
        logger.debug("tasks_started", environment=environment, task_ids=task_ids)
        return task_ids

    def stop(self, environment: str, task_ids: list[str]) -> None:
        with self._lock:
            running = self._tasks.setdefault(environment, {})
            for task_id in task_ids:
                running.pop(task_id, None)
            self.stopped.append((environment, list(task_ids)))
        logger.debug("tasks_stopped", environment=environment, task_ids=task_ids)

    def list_tasks(self, environment: str) -> list[ComputeTask]:
        with self._lock:
            return [
                ComputeTask(task_id=task_id, environment=environment, release_id=release_id)
                for task_id, release_id in self._tasks.get(environment, {}).items()
            ]

    def _create(self, environment: str, release_id: str, count: int) -> list[str]:
        running = self._tasks.setdefault(environment, {})
        task_ids = [f"{environment}-task-{next(self._ids)}" for _ in range(count)]
        for task_id in task_ids:
            running[task_id] = release_id
        return task_ids


class InMemoryHealthProbe(HealthProbe):
    """Probe whose answer is set by the caller.

    Targets are healthy by default. ``mark`` overrides individual targets and
    ``predicate`` decides for everything not explicitly marked.

    Example:
        >>> probe = InMemoryHealthProbe(predicate=lambda target: not target.startswith("bad"))
        >>> probe.status("bad-1").value
        'unhealthy'
    """

    def __init__(self, predicate: Callable[[str], bool] | None = None) -> None:
        self._predicate = predicate
        self._marks: dict[str, bool] = {}
        self._lock = threading.Lock()
        self.calls: list[str] = []

    def mark(self, target: str, healthy: bool) -> None:
        with self._lock:
            self._marks[target] = healthy

    def status(self, target: str) -> ProbeStatus:
        with self._lock:
            self.calls.append(target)
            healthy = self._marks.get(target)
        if healthy is None:
            healthy = self._predicate(target) if self._predicate else True
        return ProbeStatus.HEALTHY if healthy else ProbeStatus.UNHEALTHY


class InMemorySecretStore(SecretStore):
    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def get(self, secret_id: str) -> str | None:
        return self._secrets.get(secret_id)


class InMemoryMigrationExecutor(MigrationExecutor):
    """Records executions; fails for release ids listed in ``failing_releases``."""

    def __init__(self, failing_releases: set[str] | None = None) -> None:
        self.failing_releases = set(failing_releases or ())
        self.executions: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def execute(
        self,
        environment: str,
        release: Release,
        secrets: dict[str, str],
        timeout: float,
    ) -> None:
        with self._lock:
            self.executions.append((environment, release.release_id))
        if release.release_id in self.failing_releases:
            raise MigrationFailedError(environment, release.release_id, "migration script exited 1")


__all__: list[str] = [
    "InMemoryArtifactRegistry",
    "InMemoryComputeScheduler",
    "InMemoryHealthProbe",
    "InMemoryMigrationExecutor",
    "InMemorySecretStore",
]
