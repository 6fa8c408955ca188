"""Providers backed by the local process: environment variables and shell commands."""

from __future__ import annotations

import os
import subprocess
import time
from typing import TYPE_CHECKING

import structlog

from conveyor.errors import MigrationFailedError
from conveyor.providers.base import MigrationExecutor, SecretStore
from conveyor.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from conveyor.schemas.models import Release

logger = structlog.get_logger(__name__)


class EnvSecretStore(SecretStore):
    """Resolve secret ids from environment variables.

    ``db/staging-url`` with prefix ``CONVEYOR_SECRET_`` reads
    ``CONVEYOR_SECRET_DB_STAGING_URL``.
    """

    def __init__(self, prefix: str = "CONVEYOR_SECRET_") -> None:
        self.prefix = prefix

    def variable_name(self, secret_id: str) -> str:
        normalized = "".join(c if c.isalnum() else "_" for c in secret_id).upper()
        return f"{self.prefix}{normalized}"

    def get(self, secret_id: str) -> str | None:
        return os.environ.get(self.variable_name(secret_id))


class CommandMigrationExecutor(MigrationExecutor):
    """Run a shell migration command with the database URL in its environment.

    The command sees ``DATABASE_URL`` (when a secret was resolved),
    ``CONVEYOR_ENVIRONMENT`` and ``CONVEYOR_RELEASE``.
    """

    def __init__(self, command: str) -> None:
        self.command = command

    def execute(
        self,
        environment: str,
        release: Release,
        secrets: dict[str, str],
        timeout: float,
    ) -> None:
        env = dict(os.environ)
        env.update(secrets)
        env["CONVEYOR_ENVIRONMENT"] = environment
        env["CONVEYOR_RELEASE"] = release.release_id

        start_time = time.monotonic()
        try:
            result = subprocess.run(
                self.command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise MigrationFailedError(
                environment, release.release_id, f"timed out after {timeout:g}s"
            ) from e
        except OSError as e:
            raise MigrationFailedError(environment, release.release_id, str(e)) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        if result.returncode != 0:
            reason = f"exit code {result.returncode}"
            if result.stderr:
                reason = f"{reason}: {sanitize_error_message(result.stderr.strip())}"
            raise MigrationFailedError(environment, release.release_id, reason)

        logger.info(
            "migration_command_completed",
            environment=environment,
            release_id=release.release_id,
            duration_ms=duration_ms,
        )


__all__: list[str] = ["CommandMigrationExecutor", "EnvSecretStore"]
