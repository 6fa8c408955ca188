"""Migration Runner: run schema migrations once per rollout attempt.

Migrations run before any traffic-affecting change. They are never retried
within an attempt; a failure aborts the attempt and a human-triggered re-run
creates a new RolloutAttempt.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field

from conveyor.errors import MigrationFailedError
from conveyor.telemetry.sanitization import sanitize_error_message
from conveyor.telemetry.tracing import create_span

if TYPE_CHECKING:
    from conveyor.providers.base import MigrationExecutor, SecretStore
    from conveyor.schemas.config import EnvironmentConfig
    from conveyor.schemas.models import Release

logger = structlog.get_logger(__name__)

DATABASE_URL_KEY = "DATABASE_URL"


class MigrationResult(BaseModel):
    """Outcome of a migration run.

    Examples:
        >>> MigrationResult(success=False, reason="exit code 1").success
        False
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    reason: str | None = Field(default=None, description="Failure reason")
    skipped: bool = Field(default=False, description="No migration configured")


class MigrationRunner:
    """Runs an environment's migration executor at most once per attempt id."""

    def __init__(
        self,
        executors: dict[str, MigrationExecutor],
        secrets: SecretStore | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            executors: Executor per environment name. Environments without
                one have nothing to migrate.
            secrets: Store used to resolve ``database_secret_id``.
        """
        self._executors = executors
        self._secrets = secrets
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def run(
        self,
        environment: EnvironmentConfig,
        release: Release,
        attempt_id: str,
        timeout: float | None = None,
    ) -> MigrationResult:
        """Run migrations for one attempt.

        Args:
            environment: Target environment configuration.
            release: Release being rolled out.
            attempt_id: Owning RolloutAttempt id.
            timeout: Execution timeout; defaults to the environment's
                ``migration_timeout_seconds``.

        Returns:
            MigrationResult. Failures are returned, not raised.

        Raises:
            RuntimeError: If migrations already ran for this attempt.
            ValueError: If timeout is not positive.
        """
        with self._lock:
            if attempt_id in self._seen:
                raise RuntimeError(f"Migrations already ran for attempt {attempt_id}")
            self._seen.add(attempt_id)

        effective_timeout = (
            timeout if timeout is not None else environment.rollout.migration_timeout_seconds
        )
        if effective_timeout <= 0:
            raise ValueError("Migration timeout must be positive")

        log = logger.bind(
            environment=environment.name,
            release_id=release.release_id,
            attempt_id=attempt_id,
        )
        executor = self._executors.get(environment.name)
        if executor is None:
            log.debug("migration_skipped")
            return MigrationResult(success=True, skipped=True)

        with create_span(
            "conveyor.migrations.run",
            attributes={
                "environment": environment.name,
                "release_id": release.release_id,
                "timeout_seconds": effective_timeout,
            },
        ) as span:
            log.info("migration_started", timeout_seconds=effective_timeout)
            try:
                secrets = self._resolve_secrets(environment)
                executor.execute(environment.name, release, secrets, effective_timeout)
            except Exception as e:
                reason = e.reason if isinstance(e, MigrationFailedError) else str(e)
                reason = sanitize_error_message(reason)
                span.set_attribute("success", False)
                log.error("migration_failed", reason=reason, error_type=type(e).__name__)
                return MigrationResult(success=False, reason=reason)

            span.set_attribute("success", True)
            log.info("migration_completed")
            return MigrationResult(success=True)

    def _resolve_secrets(self, environment: EnvironmentConfig) -> dict[str, str]:
        secret_id = environment.database_secret_id
        if secret_id is None:
            return {}
        if self._secrets is None:
            raise ValueError(f"No secret store configured for secret '{secret_id}'")
        value = self._secrets.get(secret_id)
        if value is None:
            raise ValueError(f"Secret '{secret_id}' not found")
        return {DATABASE_URL_KEY: value}


__all__: list[str] = ["DATABASE_URL_KEY", "MigrationResult", "MigrationRunner"]
